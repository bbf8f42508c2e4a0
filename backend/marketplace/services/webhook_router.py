"""
Webhook / Callback Router

Normalizes inbound provider notifications into Session Registry transitions
and, on success, into a canonical PaymentSucceededEvent for the order
processor.

Webhook handling order:
1. parse (400 on failure, nothing recorded)
2. verify signature (401 on failure)
3. dedup on event id through the webhook_events ledger, recorded before any
   state mutation
4. map the provider status and apply it
Once parsed and verified, a webhook is always acknowledged; processing
errors are logged and kept on the ledger row as processing_status=failed.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import ProviderSessionModel, WebhookEventModel
from ..exceptions import InvalidRequestError, NotFoundError, SignatureInvalidError
from ..models.orders import ProcessingResult
from ..models.payments import (
    TERMINAL_SESSION_STATUSES,
    CustomerInfo,
    PaymentMetadata,
    PaymentSucceededEvent,
    RefundResult,
)
from ..providers.base import PaymentProvider, normalize_provider_status
from . import order_store, session_registry
from .order_processor import OrderProcessor

logger = logging.getLogger(__name__)

PAYMENT_METHODS = {
    "unipay": "card",
    "paypal": "paypal",
    "google_direct": "google_pay",
    "apple_direct": "apple_pay",
}


def build_payment_event(entry: ProviderSessionModel) -> PaymentSucceededEvent:
    """
    Canonical event from a stored session snapshot.

    Amounts are the customer-facing original amount and currency; VAT details
    travel separately in vat_info.
    """
    metadata = PaymentMetadata.model_validate(entry.session_metadata or {}).model_copy(update={
        "order_id": entry.internal_order_id,
        "provider_session_id": entry.provider_session_id,
        "merchant_order_id": entry.merchant_order_id,
    })
    return PaymentSucceededEvent(
        external_payment_id=entry.provider_reference or entry.provider_session_id,
        amount=entry.original_amount if entry.original_amount is not None else entry.amount,
        currency=entry.original_currency or entry.currency,
        items=entry.items or [],
        customer=CustomerInfo.model_validate(entry.customer_info or {}),
        metadata=metadata,
        provider=entry.provider,
        payment_method=PAYMENT_METHODS.get(entry.provider, entry.provider),
        vat_info=entry.vat_info,
    )


class WebhookRouter:
    """Dispatches webhooks and redirect callbacks to the right adapter."""

    def __init__(self, providers: Dict[str, PaymentProvider], processor: OrderProcessor):
        self.providers = providers
        self.processor = processor

    def get_provider(self, name: str) -> PaymentProvider:
        provider = self.providers.get(name)
        if provider is None:
            raise NotFoundError(f"Unknown payment provider: {name}", details={"provider": name})
        return provider

    # ========================================================================
    # Webhooks
    # ========================================================================

    async def handle_webhook(
        self,
        db: AsyncSession,
        provider_name: str,
        raw_body: bytes,
        headers: Mapping[str, str]
    ) -> Dict[str, Any]:
        """
        Handle one inbound webhook.

        Returns:
            Acknowledgment body ({received: True, ...})

        Raises:
            NotFoundError: Unknown provider or provider without webhooks
            InvalidRequestError: Body is not a parseable webhook
            SignatureInvalidError: Signature verification failed
        """
        provider = self.get_provider(provider_name)
        if not provider.supports_webhooks:
            raise NotFoundError(f"{provider.display_name} has no webhook channel", details={"provider": provider_name})

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            logger.error(f"Invalid {provider_name} webhook payload: {e}")
            raise InvalidRequestError("Invalid JSON payload") from e
        if not isinstance(payload, dict):
            raise InvalidRequestError("Webhook payload must be a JSON object")

        try:
            event = provider.parse_webhook(payload)
        except ValidationError as e:
            raise InvalidRequestError("Unrecognized webhook payload", details={"errors": e.errors()}) from e

        if not await provider.verify_webhook_signature(raw_body, headers):
            logger.warning(f"Rejected {provider_name} webhook with invalid signature (event {event.event_id})")
            raise SignatureInvalidError("Invalid webhook signature")

        logger.info(
            f"Received {provider_name} webhook",
            extra={"event_id": event.event_id, "provider_session_id": event.provider_session_id}
        )

        if event.event_id:
            if await db.get(WebhookEventModel, event.event_id) is not None:
                logger.info(f"Duplicate webhook event ignored: {event.event_id}")
                return {"received": True, "duplicate": True}

            db.add(WebhookEventModel(
                event_id=event.event_id,
                provider=provider_name,
                event_type=event.event_type or "unknown",
                provider_session_id=event.provider_session_id,
                payload=payload,
                processing_status="received",
            ))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info(f"Duplicate webhook event ignored: {event.event_id}")
                return {"received": True, "duplicate": True}

        try:
            outcome = await self._apply_event(db, provider, event)
        except Exception as e:
            logger.error(f"Error processing {provider_name} webhook {event.event_id}: {e}", exc_info=True)
            await db.rollback()
            await self._mark_event(db, event.event_id, "failed", str(e))
            return {"received": True, "processed": False}

        await self._mark_event(db, event.event_id, "processed")
        return {"received": True, "processed": True, "outcome": outcome}

    async def _mark_event(
        self,
        db: AsyncSession,
        event_id: Optional[str],
        status: str,
        error: Optional[str] = None
    ) -> None:
        if not event_id:
            return
        record = await db.get(WebhookEventModel, event_id)
        if record is None:
            return
        record.processing_status = status
        record.processing_error = error
        record.processed_at = datetime.utcnow()
        await db.commit()

    async def _apply_event(self, db: AsyncSession, provider: PaymentProvider, event) -> str:
        session_id = event.provider_session_id
        if not session_id:
            logger.info(f"{provider.display_name} webhook {event.event_id} has no session id; ignored")
            return "ignored"

        entry = await session_registry.require_session(db, session_id)
        mapped = normalize_provider_status(event.raw_status)
        now = datetime.utcnow()

        if mapped is None or mapped == "pending":
            if mapped is None:
                logger.warning(f"Unknown {provider.display_name} status {event.raw_status!r} for session {session_id}")
            fields = {"last_webhook_at": now}
            # A settled session keeps the raw status that settled it
            if entry.status not in TERMINAL_SESSION_STATUSES:
                fields["provider_status"] = event.raw_status
            await session_registry.update_session_fields(db, session_id, **fields)
            return "unknown_status" if mapped is None else "pending"

        if mapped == "success":
            await session_registry.update_session_status(
                db,
                session_id,
                "success",
                provider_status=event.raw_status,
                provider_reference=event.provider_reference,
                from_webhook=True
            )
            entry = await session_registry.require_session(db, session_id)
            if entry.status != "success":
                return "ignored_terminal"
            await self.handle_payment_success(db, session_id)
            return "success"

        if mapped == "refunded":
            await self._apply_provider_refund(db, entry, event)
            return "refunded"

        await session_registry.update_session_status(
            db,
            session_id,
            mapped,
            provider_status=event.raw_status,
            failure_reason=(event.failure_reason or "Unknown") if mapped == "failed" else None,
            from_webhook=True
        )
        return mapped

    async def _apply_provider_refund(self, db: AsyncSession, entry: ProviderSessionModel, event) -> None:
        """Refund issued on the provider side (e.g. from the PayPal dashboard)."""
        order = await order_store.get_order(db, entry.internal_order_id)
        if order is None or order.status == "refunded":
            await session_registry.update_session_status(
                db, entry.provider_session_id, "refunded", provider_status=event.raw_status, from_webhook=True
            )
            return

        refund = RefundResult(
            success=True,
            refund_id=event.provider_reference or f"{entry.provider}_{entry.provider_session_id}",
            status="COMPLETED",
        )
        await order_store.process_order_refund(db, order.id, refund, reason="provider_refund")

    # ========================================================================
    # Success path
    # ========================================================================

    async def handle_payment_success(self, db: AsyncSession, provider_session_id: str) -> ProcessingResult:
        """
        Run the order processor for a successful session and mark it processed.

        Safe to call repeatedly: the processor is idempotent on the order id.

        Raises:
            InvalidRequestError: If the session is not in success status
        """
        entry = await session_registry.require_session(db, provider_session_id)
        if entry.status != "success":
            raise InvalidRequestError(
                f"Session {provider_session_id} is not paid (status: {entry.status})",
                details={"provider_session_id": provider_session_id, "status": entry.status}
            )
        event = build_payment_event(entry)
        result = await self.processor.process_payment_success(db, event)
        await session_registry.mark_order_processed(db, provider_session_id, result.invoice_id)

        logger.info(
            f"Processed payment for session {provider_session_id}: order={result.order_id}, "
            f"delivery={result.delivery_status}, already_processed={result.already_processed}"
        )
        return result

    # ========================================================================
    # Redirect callbacks
    # ========================================================================

    async def _session_from_redirect(
        self,
        db: AsyncSession,
        provider_name: str,
        params: Mapping[str, str]
    ) -> Optional[ProviderSessionModel]:
        session_id = params.get("token") or params.get("order_hash_id") or params.get("provider_session_id")
        if session_id:
            return await session_registry.get_session(db, session_id)

        order_id = params.get("order_id") or params.get("payment_id")
        if not order_id:
            return None
        sessions = [
            s for s in await session_registry.list_sessions_by_order(db, order_id)
            if s.provider == provider_name
        ]
        return sessions[-1] if sessions else None

    async def handle_redirect_success(
        self,
        db: AsyncSession,
        provider_name: str,
        params: Mapping[str, str]
    ) -> Dict[str, Any]:
        """
        Success redirect from the provider's hosted page.

        PayPal orders are captured here. Other providers' redirects are not
        proof of payment: the order is processed only once the session was
        marked successful by a verified channel.

        Returns:
            Dict with status (success/pending/failed/not_found) and order_id
        """
        provider = self.get_provider(provider_name)
        entry = await self._session_from_redirect(db, provider_name, params)
        if entry is None:
            logger.warning(f"{provider.display_name} success redirect for unknown session: {dict(params)}")
            return {"status": "not_found", "order_id": params.get("order_id")}

        session_id = entry.provider_session_id
        order_id = entry.internal_order_id

        if provider_name == "paypal" and entry.status in ("created", "confirmed"):
            confirmation = await provider.confirm_or_capture(db, session_id)
            if not confirmation.success:
                return {"status": confirmation.status, "order_id": order_id}

        entry = await session_registry.require_session(db, session_id)
        if entry.status != "success":
            return {"status": "pending" if entry.status in ("created", "confirmed") else entry.status, "order_id": order_id}

        result = await self.handle_payment_success(db, session_id)
        return {"status": "success", "order_id": result.order_id, "delivery_status": result.delivery_status}

    async def handle_redirect_cancel(
        self,
        db: AsyncSession,
        provider_name: str,
        params: Mapping[str, str]
    ) -> Dict[str, Any]:
        provider = self.get_provider(provider_name)
        entry = await self._session_from_redirect(db, provider_name, params)
        if entry is None:
            return {"status": "not_found", "order_id": params.get("order_id")}

        if entry.status in ("created", "confirmed"):
            await session_registry.update_session_status(
                db, entry.provider_session_id, "cancelled", provider_status="customer_cancelled"
            )
        logger.info(f"{provider.display_name} checkout cancelled for session {entry.provider_session_id}")
        return {"status": "cancelled", "order_id": entry.internal_order_id}

    # ========================================================================
    # Dead letters
    # ========================================================================

    @staticmethod
    async def list_failed_events(db: AsyncSession, limit: int = 50) -> List[WebhookEventModel]:
        result = await db.execute(
            select(WebhookEventModel)
            .where(WebhookEventModel.processing_status == "failed")
            .order_by(WebhookEventModel.received_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
