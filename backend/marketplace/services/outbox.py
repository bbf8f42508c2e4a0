"""
Outbox

Best-effort side effects of a completed order (entitlement recording) are
written as outbox tasks, dispatched right after the order is committed, and
retried by the scheduler when that first attempt fails.
"""
import logging
import uuid
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import OutboxTaskModel, UserPurchaseModel

logger = logging.getLogger(__name__)

TaskHandler = Callable[[AsyncSession, Dict[str, Any]], Awaitable[None]]

RECORD_PURCHASES = "record_purchases"


# ============================================================================
# Handlers
# ============================================================================

async def record_purchases(db: AsyncSession, payload: Dict[str, Any]) -> None:
    """Insert one user_purchases row per item, skipping agents the user already owns."""
    user_id = payload["user_id"]
    for item in payload.get("items", []):
        result = await db.execute(
            select(UserPurchaseModel).where(
                UserPurchaseModel.user_id == user_id,
                UserPurchaseModel.agent_id == item["item_id"]
            )
        )
        if result.scalar_one_or_none() is not None:
            continue
        db.add(UserPurchaseModel(
            user_id=user_id,
            agent_id=item["item_id"],
            order_id=payload["order_id"],
            price=Decimal(str(item["unit_price"])) if item.get("unit_price") is not None else None,
            currency=payload.get("currency"),
            processor=payload.get("processor"),
            payment_id=payload.get("payment_id"),
        ))
    await db.commit()


TASK_HANDLERS: Dict[str, TaskHandler] = {
    RECORD_PURCHASES: record_purchases,
}


# ============================================================================
# Queue
# ============================================================================

def enqueue(db: AsyncSession, task_type: str, payload: Dict[str, Any]) -> OutboxTaskModel:
    """Add a pending task to the session; it is persisted by the caller's commit."""
    if task_type not in TASK_HANDLERS:
        raise ValueError(f"Unknown outbox task type: {task_type}")
    task = OutboxTaskModel(
        id=f"task_{uuid.uuid4().hex[:16]}",
        task_type=task_type,
        payload=payload,
        status="pending",
        attempts=0,
    )
    db.add(task)
    return task


async def dispatch_task(db: AsyncSession, task_id: str, max_attempts: int = 5) -> bool:
    """
    Run one pending task.

    Handler errors are recorded on the task, not raised; the task is marked
    failed once max_attempts is reached.

    Returns:
        True if the task completed
    """
    task = await db.get(OutboxTaskModel, task_id)
    if task is None or task.status != "pending":
        return False

    handler = TASK_HANDLERS[task.task_type]
    try:
        await handler(db, task.payload)
    except Exception as e:
        await db.rollback()
        task = await db.get(OutboxTaskModel, task_id)
        task.attempts += 1
        task.last_error = str(e)
        if task.attempts >= max_attempts:
            task.status = "failed"
            logger.error(f"Outbox task {task_id} ({task.task_type}) failed permanently: {e}")
        else:
            logger.warning(f"Outbox task {task_id} ({task.task_type}) attempt {task.attempts} failed: {e}")
        await db.commit()
        return False

    task.attempts += 1
    task.status = "done"
    task.last_error = None
    await db.commit()
    logger.info(f"Outbox task {task_id} ({task.task_type}) done")
    return True


async def pending_task_ids(db: AsyncSession, limit: int = 100) -> List[str]:
    result = await db.execute(
        select(OutboxTaskModel.id)
        .where(OutboxTaskModel.status == "pending")
        .order_by(OutboxTaskModel.created_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def drain_pending(db: AsyncSession, max_attempts: int = 5) -> int:
    """
    Retry every pending task once.

    Returns:
        Number of tasks completed
    """
    completed = 0
    for task_id in await pending_task_ids(db):
        if await dispatch_task(db, task_id, max_attempts):
            completed += 1
    if completed:
        logger.info(f"Outbox drain completed {completed} tasks")
    return completed
