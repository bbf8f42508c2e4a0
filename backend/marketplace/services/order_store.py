"""
Order Store

Durable record of completed purchases. One order per successful payment,
created idempotently by the order processor and never deleted.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import OrderModel
from ..exceptions import NotFoundError
from ..models.orders import DeliveryResult, Order, compute_delivery_status
from ..models.payments import PaymentSucceededEvent, RefundResult
from ..providers.pricing import quantize_money
from . import invoice_service, outbox, session_registry, template_service

logger = logging.getLogger(__name__)


# ============================================================================
# Create / Read
# ============================================================================

async def get_order(db: AsyncSession, order_id: str) -> Optional[OrderModel]:
    return await db.get(OrderModel, order_id)


async def require_order(db: AsyncSession, order_id: str) -> OrderModel:
    order = await get_order(db, order_id)
    if order is None:
        raise NotFoundError(f"Order not found: {order_id}", details={"order_id": order_id})
    return order


async def create_order(
    db: AsyncSession,
    order_id: str,
    event: PaymentSucceededEvent,
    email: Optional[str]
) -> Tuple[OrderModel, List[str]]:
    """
    Insert a completed order for a payment event, or return the existing one.

    The entitlement outbox task is committed in the same transaction as the
    order. A concurrent insert of the same order id (webhook racing the
    redirect callback) resolves to the row that won.

    Returns:
        (stored OrderModel, ids of outbox tasks enqueued by this call)
    """
    order = OrderModel(
        id=order_id,
        user_id=event.customer.user_id or event.metadata.user_id,
        user_email=email,
        items=[item.model_dump(mode="json") for item in event.items],
        total=event.amount,
        currency=event.currency,
        status="completed",
        payment_id=event.external_payment_id,
        payment_method=event.payment_method,
        processor=event.provider,
        provider_session_id=event.metadata.provider_session_id,
        delivery_status="pending",
        delivery_results=[],
        template_access_tokens=[],
        vat_info=event.vat_info,
    )
    db.add(order)

    task_ids = []
    if order.user_id:
        task = outbox.enqueue(db, outbox.RECORD_PURCHASES, {
            "user_id": order.user_id,
            "order_id": order_id,
            "items": order.items,
            "currency": order.currency,
            "processor": order.processor,
            "payment_id": order.payment_id,
        })
        task_ids.append(task.id)

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await require_order(db, order_id)
        logger.info(f"Order {order_id} was created concurrently; using stored record")
        return existing, []

    await db.refresh(order)
    logger.info(f"Created order {order_id}: {event.amount} {event.currency} via {event.provider}")
    return order, task_ids


async def get_user_orders(db: AsyncSession, user_id: str, limit: int = 50) -> List[Order]:
    result = await db.execute(
        select(OrderModel)
        .where(OrderModel.user_id == user_id)
        .order_by(OrderModel.created_at.desc())
        .limit(limit)
    )
    return [Order.model_validate(row) for row in result.scalars().all()]


# ============================================================================
# Updates
# ============================================================================

async def save_delivery(
    db: AsyncSession,
    order: OrderModel,
    results: Sequence[DeliveryResult],
    tokens: Sequence[str]
) -> str:
    """
    Persist delivery results and tokens, recomputing delivery_status.

    Returns:
        The new delivery_status
    """
    order.delivery_results = [r.model_dump(mode="json") for r in results]
    order.template_access_tokens = list(tokens)
    order.delivery_status = compute_delivery_status(results)
    await db.commit()
    return order.delivery_status


async def set_delivery_status(db: AsyncSession, order: OrderModel, delivery_status: str) -> None:
    order.delivery_status = delivery_status
    await db.commit()


async def attach_invoice(db: AsyncSession, order: OrderModel, invoice_id: str, invoice_number: str) -> None:
    order.invoice_id = invoice_id
    order.invoice_number = invoice_number
    await db.commit()


# ============================================================================
# Refunds
# ============================================================================

async def refund_in_order_currency(db: AsyncSession, order: OrderModel, refund: RefundResult) -> Decimal:
    """
    Express a provider refund in the order's own currency.

    Providers settling in another currency (UniPay charges GEL, VAT included)
    refund in that currency; the amount is scaled back by the refunded share
    of the settled session.
    """
    total = Decimal(order.total)
    if refund.amount is None:
        return total
    if not refund.currency or refund.currency.upper() == order.currency.upper():
        return quantize_money(refund.amount)

    entry = None
    if order.provider_session_id:
        entry = await session_registry.get_session(db, order.provider_session_id)
    if entry is None or not entry.amount or entry.currency.upper() != refund.currency.upper():
        logger.warning(
            f"Order {order.id}: cannot convert refund of {refund.amount} {refund.currency}; "
            f"recording full order total"
        )
        return total
    share = min(Decimal(refund.amount) / Decimal(entry.amount), Decimal("1"))
    return quantize_money(total * share)


async def process_order_refund(
    db: AsyncSession,
    order_id: str,
    refund: RefundResult,
    reason: Optional[str] = None
) -> Order:
    """
    Refund bookkeeping for an order.

    Marks the order and its invoice refunded, moves its successful sessions
    to refunded and revokes every download token with reason order_refunded.
    The order records the refund in its own currency; the provider-side
    amount goes onto the invoice metadata.

    Raises:
        NotFoundError: If the order does not exist
    """
    order = await require_order(db, order_id)
    refund_amount = await refund_in_order_currency(db, order, refund)

    order.status = "refunded"
    order.refund_id = refund.refund_id
    order.refund_amount = refund_amount
    order.refund_reason = reason
    order.refunded_at = datetime.utcnow()
    await db.commit()

    if order.invoice_id:
        metadata = {
            "refundId": refund.refund_id,
            "refundAmount": str(refund_amount),
            "refundCurrency": order.currency,
            "reason": reason,
        }
        if refund.amount is not None and refund.currency:
            metadata["providerRefundAmount"] = str(refund.amount)
            metadata["providerRefundCurrency"] = refund.currency
        await invoice_service.update_invoice_status(db, order.invoice_id, "refunded", metadata)

    sessions = await session_registry.mark_sessions_refunded(db, order_id, refund.amount, reason)
    revoked = await template_service.revoke_tokens_for_order(db, order_id, reason="order_refunded")

    logger.info(
        f"Refunded order {order_id}: refund={refund.refund_id}, amount={refund_amount}, "
        f"sessions={sessions}, tokens_revoked={revoked}"
    )
    await db.refresh(order)
    return Order.model_validate(order)
