"""
Order Processor

Turns a canonical PaymentSucceededEvent into a completed order: creates the
order idempotently, issues the invoice, records entitlements through the
outbox and delivers each purchased template by email.

Idempotence is keyed on the order id:
- delivery completed / skipped / skipped_by_flag: stored outcome returned,
  nothing re-sent
- delivery pending / partial / failed: only items without a successful
  result are attempted again
"""
import logging
import re
from typing import Any, Callable, List, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import OrderModel
from ..models.orders import (
    DeliveredTemplate,
    DeliveryResult,
    FINAL_DELIVERY_STATUSES,
    OrderItem,
    ProcessingResult,
)
from ..models.payments import PaymentSucceededEvent
from ..providers.base import generate_order_id
from . import invoice_service, order_store, outbox, template_service

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class EmailSender(Protocol):
    async def send_agent_purchase_email(
        self,
        to_email: str,
        agent_name: str,
        download_url: str,
        order_id: str,
        customer_name: Optional[str] = None,
        price: Optional[str] = None,
        template_content: Optional[str] = None,
        valid_days: int = template_service.DEFAULT_TOKEN_TTL_DAYS
    ) -> str:
        ...


def resolve_email(event: PaymentSucceededEvent) -> Optional[str]:
    """Customer email, else metadata email; malformed addresses count as absent."""
    for candidate in (event.customer.email, event.metadata.email):
        if candidate and EMAIL_PATTERN.match(candidate.strip()):
            return candidate.strip()
    return None


class OrderProcessor:
    """
    Order processing pipeline shared by webhooks, redirect callbacks and
    synchronous capture endpoints.
    """

    def __init__(
        self,
        email_sender: EmailSender,
        api_url: str,
        token_ttl_days: int = template_service.DEFAULT_TOKEN_TTL_DAYS,
        session_factory: Optional[Callable[[], Any]] = None,
        outbox_max_attempts: int = 5
    ):
        self.email_sender = email_sender
        self.api_url = api_url
        self.token_ttl_days = token_ttl_days
        self.session_factory = session_factory
        self.outbox_max_attempts = outbox_max_attempts

    async def process_payment_success(self, db: AsyncSession, event: PaymentSucceededEvent) -> ProcessingResult:
        """
        Process a successful payment.

        Args:
            db: Database session
            event: Canonical payment event

        Returns:
            ProcessingResult describing the order, invoice and deliveries
        """
        order_id = event.metadata.order_id or generate_order_id()
        email = resolve_email(event)

        order = await order_store.get_order(db, order_id)
        task_ids: List[str] = []
        if order is None:
            order, task_ids = await order_store.create_order(db, order_id, event, email)

        if order.delivery_status in FINAL_DELIVERY_STATUSES:
            logger.info(f"Order {order_id} already processed (delivery={order.delivery_status}); not re-sending")
            return self._stored_result(order, already_processed=True)

        if not order.invoice_id:
            await self._create_invoice(db, order, event)

        if event.metadata.skip_email_sending:
            await order_store.set_delivery_status(db, order, "skipped_by_flag")
            logger.info(f"Order {order_id}: email delivery skipped by flag")
            result = self._stored_result(order)
        elif not email:
            await order_store.set_delivery_status(db, order, "skipped")
            logger.warning(f"Order {order_id}: no valid customer email, delivery skipped")
            result = self._stored_result(order)
        else:
            result = await self._deliver(db, order, email, event)

        for task_id in task_ids:
            await self._dispatch_outbox(task_id)

        return result

    # ========================================================================
    # Steps
    # ========================================================================

    async def _create_invoice(self, db: AsyncSession, order: OrderModel, event: PaymentSucceededEvent) -> None:
        customer = event.customer.model_copy(update={
            "email": order.user_email,
            "user_id": order.user_id,
        })
        try:
            created = await invoice_service.create_invoice(
                db,
                payment_data={
                    "id": event.external_payment_id,
                    "processor": event.provider,
                    "payment_method": event.payment_method,
                    "session_id": event.metadata.provider_session_id,
                    "vat_info": event.vat_info,
                },
                order_data={
                    "order_id": order.id,
                    "items": [OrderItem.model_validate(item) for item in order.items],
                    "total": order.total,
                    "currency": order.currency,
                },
                customer_info=customer
            )
        except Exception as e:
            logger.error(f"Invoice creation failed for order {order.id}: {e}", exc_info=True)
            await db.rollback()
            await db.refresh(order)
            return

        await order_store.attach_invoice(db, order, created["invoice_id"], created["invoice_number"])

    async def _deliver(
        self,
        db: AsyncSession,
        order: OrderModel,
        email: str,
        event: PaymentSucceededEvent
    ) -> ProcessingResult:
        previous = {
            result.item_id: result
            for result in (DeliveryResult.model_validate(r) for r in order.delivery_results or [])
            if result.success
        }
        tokens: List[str] = list(order.template_access_tokens or [])
        results: List[DeliveryResult] = []
        templates: List[DeliveredTemplate] = []

        for raw_item in order.items:
            item = OrderItem.model_validate(raw_item)
            if item.item_id in previous:
                results.append(previous[item.item_id])
                continue

            result, template = await self._deliver_item(db, order, item, email, event)
            results.append(result)
            if template is not None:
                tokens.append(template.access_token)
                templates.append(template)

        delivery_status = await order_store.save_delivery(db, order, results, tokens)
        logger.info(
            f"Order {order.id} delivery {delivery_status}: "
            f"{sum(1 for r in results if r.success)}/{len(results)} items delivered"
        )
        return ProcessingResult(
            order_id=order.id,
            invoice_id=order.invoice_id,
            invoice_number=order.invoice_number,
            delivery_status=delivery_status,
            delivery_results=results,
            templates=templates,
        )

    async def _deliver_item(
        self,
        db: AsyncSession,
        order: OrderModel,
        item: OrderItem,
        email: str,
        event: PaymentSucceededEvent
    ):
        """Resolve, mint a token and email one item; failures are returned, not raised."""
        access = None
        try:
            content = await template_service.get_agent_template(db, item.item_id)
            agent = await template_service.get_agent(db, item.item_id)
            agent_name = (agent.title if agent and agent.title else None) or item.title

            access = await template_service.create_access_token(
                db,
                order_id=order.id,
                agent_id=item.item_id,
                email=email,
                user_id=order.user_id,
                invoice_id=order.invoice_id,
                ttl_days=self.token_ttl_days
            )
            download_url = template_service.build_download_url(self.api_url, item.item_id, order.id, access.token)

            message_id = await self.email_sender.send_agent_purchase_email(
                to_email=email,
                agent_name=agent_name,
                download_url=download_url,
                order_id=order.id,
                customer_name=event.customer.name,
                price=f"{item.unit_price} {order.currency}",
                template_content=content,
                valid_days=self.token_ttl_days
            )
        except Exception as e:
            logger.error(f"Delivery failed for order {order.id}, item {item.item_id}: {e}")
            if access is not None:
                await template_service.revoke_token(db, access.token, reason="delivery_failed", revoked_by="system")
            return DeliveryResult(item_id=item.item_id, success=False, error=str(e)), None

        template = DeliveredTemplate(
            agent_id=item.item_id,
            agent_name=agent_name,
            access_token=access.token,
            download_url=download_url,
        )
        return DeliveryResult(item_id=item.item_id, success=True, message_id=message_id or None), template

    async def _dispatch_outbox(self, task_id: str) -> None:
        if self.session_factory is None:
            return
        async with self.session_factory() as outbox_db:
            await outbox.dispatch_task(outbox_db, task_id, self.outbox_max_attempts)

    @staticmethod
    def _stored_result(order: OrderModel, already_processed: bool = False) -> ProcessingResult:
        return ProcessingResult(
            order_id=order.id,
            invoice_id=order.invoice_id,
            invoice_number=order.invoice_number,
            delivery_status=order.delivery_status,
            delivery_results=[DeliveryResult.model_validate(r) for r in order.delivery_results or []],
            already_processed=already_processed,
        )
