"""
Session Registry

Key-value store of provider checkout sessions, keyed by the provider-issued
session id. Correlated with the Order Store only through internal_order_id;
no transaction spans both.

Status lifecycle:
    created -> confirmed -> success | failed | cancelled
    success -> refunded
Terminal statuses never change except success -> refunded. A conflicting
terminal update is logged as an anomaly and ignored.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import ProviderSessionModel
from ..exceptions import InvalidRequestError, InvalidStatusError, NotFoundError
from ..models.orders import OrderItem
from ..models.payments import (
    CustomerInfo,
    PaymentMetadata,
    SessionResult,
    TERMINAL_SESSION_STATUSES,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    "created": frozenset({"confirmed", "success", "failed", "cancelled"}),
    "confirmed": frozenset({"success", "failed", "cancelled"}),
    "success": frozenset({"refunded"}),
    "failed": frozenset(),
    "cancelled": frozenset(),
    "refunded": frozenset(),
}

STATUS_TIMESTAMPS = {
    "confirmed": "confirmed_at",
    "success": "paid_at",
    "failed": "failed_at",
    "cancelled": "cancelled_at",
    "refunded": "refunded_at",
}

UPDATABLE_FIELDS = frozenset({
    "provider_status",
    "provider_reference",
    "failure_reason",
    "refund_amount",
    "refund_reason",
    "order_processed",
    "invoice_id",
    "last_webhook_at",
    "payment_url",
})


# ============================================================================
# Create / Read
# ============================================================================

async def put_session(
    db: AsyncSession,
    result: SessionResult,
    items: Sequence[OrderItem],
    customer_info: CustomerInfo,
    metadata: PaymentMetadata
) -> ProviderSessionModel:
    """
    Store a new session entry created by a provider adapter.

    Args:
        db: Database session
        result: Adapter output for the new checkout session
        items: Cart snapshot
        customer_info: Allow-listed customer snapshot
        metadata: Allow-listed checkout metadata

    Returns:
        Created ProviderSessionModel

    Raises:
        InvalidRequestError: If the provider session id is already registered
    """
    existing = await db.get(ProviderSessionModel, result.provider_session_id)
    if existing is not None:
        raise InvalidRequestError(
            f"Provider session already registered: {result.provider_session_id}",
            details={"provider_session_id": result.provider_session_id}
        )

    entry = ProviderSessionModel(
        provider_session_id=result.provider_session_id,
        provider=result.provider,
        internal_order_id=result.internal_order_id,
        merchant_order_id=result.merchant_order_id,
        amount=result.normalized_amount,
        currency=result.normalized_currency,
        original_amount=result.original_amount,
        original_currency=result.original_currency,
        vat_info=result.vat_info,
        conversion_info=result.conversion_info,
        items=[item.model_dump(mode="json") for item in items],
        customer_info=customer_info.model_dump(mode="json", exclude_none=True),
        session_metadata=metadata.model_dump(mode="json", exclude_none=True),
        payment_url=result.payment_url,
        status="created",
    )
    db.add(entry)
    await db.commit()
    await db.refresh(entry)

    logger.info(
        f"Registered {result.provider} session {result.provider_session_id} "
        f"for order {result.internal_order_id} ({result.normalized_amount} {result.normalized_currency})"
    )
    return entry


async def get_session(db: AsyncSession, provider_session_id: str) -> Optional[ProviderSessionModel]:
    return await db.get(ProviderSessionModel, provider_session_id)


async def require_session(db: AsyncSession, provider_session_id: str) -> ProviderSessionModel:
    """Get a session entry or raise NotFoundError."""
    entry = await get_session(db, provider_session_id)
    if entry is None:
        raise NotFoundError(
            f"Payment session not found: {provider_session_id}",
            details={"provider_session_id": provider_session_id}
        )
    return entry


async def list_sessions_by_order(db: AsyncSession, internal_order_id: str) -> List[ProviderSessionModel]:
    result = await db.execute(
        select(ProviderSessionModel)
        .where(ProviderSessionModel.internal_order_id == internal_order_id)
        .order_by(ProviderSessionModel.created_at)
    )
    return list(result.scalars().all())


# ============================================================================
# Updates
# ============================================================================

async def update_session_status(
    db: AsyncSession,
    provider_session_id: str,
    status: str,
    provider_status: Optional[str] = None,
    failure_reason: Optional[str] = None,
    provider_reference: Optional[str] = None,
    from_webhook: bool = False
) -> bool:
    """
    Move a session to a new status, stamping the matching timestamp.

    Args:
        db: Database session
        provider_session_id: Provider-issued id
        status: Target status
        provider_status: Raw status string reported by the provider
        failure_reason: Reason for failed sessions
        provider_reference: Provider-side reference (e.g. capture id)
        from_webhook: Stamp last_webhook_at

    Returns:
        True if the transition was applied, False if it was a repeat or a
        rejected terminal conflict

    Raises:
        InvalidStatusError: If status is not a session status
        NotFoundError: If the session does not exist
    """
    if status not in ALLOWED_TRANSITIONS:
        raise InvalidStatusError(f"Invalid session status: {status}", details={"status": status})

    entry = await require_session(db, provider_session_id)
    now = datetime.utcnow()

    if from_webhook:
        entry.last_webhook_at = now

    if entry.status == status:
        if provider_status is not None:
            entry.provider_status = provider_status
        await db.commit()
        return False

    if status not in ALLOWED_TRANSITIONS[entry.status]:
        if entry.status in TERMINAL_SESSION_STATUSES:
            logger.warning(
                f"Session {provider_session_id} anomaly: ignoring {status} after terminal {entry.status}",
                extra={"provider": entry.provider, "provider_status": provider_status}
            )
        else:
            logger.warning(f"Session {provider_session_id}: invalid transition {entry.status} -> {status}")
        await db.commit()
        return False

    previous = entry.status
    entry.status = status
    setattr(entry, STATUS_TIMESTAMPS[status], now)
    if provider_status is not None:
        entry.provider_status = provider_status
    if failure_reason is not None:
        entry.failure_reason = failure_reason
    if provider_reference is not None:
        entry.provider_reference = provider_reference

    await db.commit()
    logger.info(f"Session {provider_session_id}: {previous} -> {status}")
    return True


async def update_session_fields(db: AsyncSession, provider_session_id: str, **fields: Any) -> ProviderSessionModel:
    """
    Update allow-listed non-status fields of a session.

    Raises:
        InvalidRequestError: If a field outside the allow-list is passed
    """
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise InvalidRequestError(
            f"Cannot update session fields: {', '.join(sorted(unknown))}",
            details={"fields": sorted(unknown)}
        )

    entry = await require_session(db, provider_session_id)
    for name, value in fields.items():
        setattr(entry, name, value)
    await db.commit()
    return entry


async def mark_order_processed(
    db: AsyncSession,
    provider_session_id: str,
    invoice_id: Optional[str] = None
) -> None:
    await update_session_fields(db, provider_session_id, order_processed=True, invoice_id=invoice_id)


async def mark_sessions_refunded(
    db: AsyncSession,
    internal_order_id: str,
    refund_amount: Optional[Decimal] = None,
    refund_reason: Optional[str] = None
) -> int:
    """
    Refund every successful session belonging to an order.

    Returns:
        Number of sessions moved to refunded
    """
    count = 0
    for entry in await list_sessions_by_order(db, internal_order_id):
        if entry.status != "success":
            continue
        entry.refund_amount = refund_amount if refund_amount is not None else entry.amount
        entry.refund_reason = refund_reason
        if await update_session_status(db, entry.provider_session_id, "refunded"):
            count += 1
    return count
