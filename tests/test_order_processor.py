import json
from decimal import Decimal

from sqlalchemy import func, select

from marketplace.db.models import InvoiceModel, OrderModel, TemplateAccessModel, UserPurchaseModel
from marketplace.services import order_store, template_service
from marketplace.services.order_processor import OrderProcessor, resolve_email

from conftest import API_URL, FakeEmailSender, make_event

TWO_ITEMS = [
    {"id": "agent_1", "title": "Sales Agent", "price": "25.99"},
    {"id": "agent_2", "title": "Support Agent", "price": "10.00"},
]


async def count(db, model, *where):
    return (await db.execute(select(func.count()).select_from(model).where(*where))).scalar_one()


async def test_successful_payment_creates_order_invoice_and_delivery(db, agents, processor, email_sender):
    result = await processor.process_payment_success(db, make_event())

    assert result.success is True
    assert result.order_id == "order_test_1"
    assert result.delivery_status == "completed"
    assert result.invoice_number.startswith("INV-")
    assert len(result.templates) == 1
    assert result.templates[0].agent_name == "Sales Agent"
    assert result.templates[0].download_url.startswith(f"{API_URL}/api/templates/download/agent_1?orderId=order_test_1")

    order = await order_store.require_order(db, "order_test_1")
    assert order.status == "completed"
    assert order.total == Decimal("25.99")
    assert order.invoice_id == result.invoice_id
    assert order.template_access_tokens == [result.templates[0].access_token]

    assert len(email_sender.sent) == 1
    assert email_sender.sent[0]["to_email"] == "buyer@example.com"


async def test_email_bundles_template_and_token_lifetime(db, agents, email_sender, session_factory):
    processor = OrderProcessor(email_sender, api_url=API_URL, token_ttl_days=7, session_factory=session_factory)

    await processor.process_payment_success(db, make_event())

    sent = email_sender.sent[0]
    document = json.loads(sent["template_content"])
    assert document["id"] == "agent_1"
    assert document["templateContent"] == {"nodes": [{"name": "start"}]}
    assert sent["valid_days"] == 7


async def test_processing_is_idempotent(db, agents, processor, email_sender):
    first = await processor.process_payment_success(db, make_event())
    second = await processor.process_payment_success(db, make_event())

    assert second.already_processed is True
    assert second.invoice_id == first.invoice_id
    assert second.delivery_status == "completed"
    assert len(email_sender.sent) == 1
    assert await count(db, OrderModel) == 1
    assert await count(db, InvoiceModel) == 1
    assert await count(db, TemplateAccessModel) == 1


async def test_missing_email_skips_delivery(db, agents, processor, email_sender):
    result = await processor.process_payment_success(db, make_event(email=None))

    assert result.delivery_status == "skipped"
    assert result.invoice_id is not None
    assert email_sender.sent == []


async def test_malformed_email_counts_as_missing(db, agents, processor, email_sender):
    result = await processor.process_payment_success(db, make_event(email="not-an-email"))

    assert result.delivery_status == "skipped"
    assert email_sender.sent == []


async def test_metadata_email_used_as_fallback():
    event = make_event(email=None)
    event.metadata.email = "fallback@example.com"

    assert resolve_email(event) == "fallback@example.com"


async def test_skip_flag(db, agents, processor, email_sender):
    result = await processor.process_payment_success(db, make_event(skip_email_sending=True))

    assert result.delivery_status == "skipped_by_flag"
    assert email_sender.sent == []
    assert await count(db, TemplateAccessModel) == 0


async def test_partial_delivery_then_retry(db, agents, session_factory):
    failing = FakeEmailSender(fail_for={"Support Agent"})
    processor = OrderProcessor(failing, api_url=API_URL, session_factory=session_factory)

    first = await processor.process_payment_success(db, make_event(items=TWO_ITEMS))

    assert first.delivery_status == "partial"
    assert [r.success for r in first.delivery_results] == [True, False]
    assert "Support Agent" in first.delivery_results[1].error

    # The token minted for the failed email is revoked
    revoked = await count(db, TemplateAccessModel, TemplateAccessModel.revoked.is_(True))
    assert revoked == 1
    revoked_reason = (await db.execute(
        select(TemplateAccessModel.revoked_reason).where(TemplateAccessModel.agent_id == "agent_2")
    )).scalar_one()
    assert revoked_reason == "delivery_failed"

    working = FakeEmailSender()
    retry = OrderProcessor(working, api_url=API_URL, session_factory=session_factory)
    second = await retry.process_payment_success(db, make_event(items=TWO_ITEMS))

    assert second.delivery_status == "completed"
    assert [t["agent_name"] for t in working.sent] == ["Support Agent"]
    assert len(await template_service.list_order_templates(db, "order_test_1")) == 2


async def test_unknown_agent_fails_delivery(db, agents, processor, email_sender):
    result = await processor.process_payment_success(
        db, make_event(items=[{"id": "agent_404", "price": "5.00"}])
    )

    assert result.delivery_status == "failed"
    assert result.delivery_results[0].success is False
    assert email_sender.sent == []


async def test_vat_carried_to_invoice(db, agents, processor):
    vat_info = {"net_amount": "25.99", "vat_rate": "0.19", "vat_amount": "4.94", "gross_amount": "30.93"}

    result = await processor.process_payment_success(db, make_event(vat_info=vat_info))
    invoice = await db.get(InvoiceModel, result.invoice_id)

    assert invoice.subtotal == Decimal("25.99")
    assert invoice.vat_amount == Decimal("4.94")
    assert invoice.total_amount == Decimal("30.93")


async def test_purchases_recorded_through_outbox(db, agents, processor, session_factory):
    await processor.process_payment_success(db, make_event(items=TWO_ITEMS))

    async with session_factory() as fresh:
        purchases = (await fresh.execute(
            select(UserPurchaseModel).order_by(UserPurchaseModel.agent_id)
        )).scalars().all()

    assert [p.agent_id for p in purchases] == ["agent_1", "agent_2"]
    assert purchases[0].price == Decimal("25.99")
    assert purchases[0].order_id == "order_test_1"


async def test_guest_order_records_no_purchases(db, agents, processor):
    await processor.process_payment_success(db, make_event(user_id=None))

    assert await count(db, UserPurchaseModel) == 0
