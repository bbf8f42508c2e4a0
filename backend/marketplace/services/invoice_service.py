"""
Invoice Service

Creates paid invoices for completed orders and serves read-only invoice
projections. Invoice numbers are INV-YYYYMM-NNNNNN, monotonic within a month.

Invoice creation is idempotent per order: a second call for the same order
returns the invoice created by the first.
"""
import csv
import io
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import CompanyInfo, settings
from ..db.models import InvoiceModel, InvoiceSequenceModel
from ..exceptions import InvalidStatusError, NotFoundError
from ..models.invoices import INVOICE_STATUSES, Invoice, InvoiceStats
from ..models.orders import OrderItem
from ..models.payments import CustomerInfo
from ..providers.pricing import quantize_money
from .template_service import period_start

logger = logging.getLogger(__name__)

PAYMENT_TERMS_DAYS = 30


# ============================================================================
# Invoice Numbers
# ============================================================================

async def next_invoice_number(db: AsyncSession, now: Optional[datetime] = None) -> str:
    """Reserve the next invoice number for the month of `now`."""
    period = (now or datetime.utcnow()).strftime("%Y%m")
    sequence = await db.get(InvoiceSequenceModel, period)
    if sequence is None:
        sequence = InvoiceSequenceModel(period=period, last_value=0)
        db.add(sequence)
    sequence.last_value += 1
    await db.flush()
    return f"INV-{period}-{sequence.last_value:06d}"


# ============================================================================
# Creation
# ============================================================================

async def create_invoice(
    db: AsyncSession,
    payment_data: Dict[str, Any],
    order_data: Dict[str, Any],
    customer_info: CustomerInfo,
    company: Optional[CompanyInfo] = None
) -> Dict[str, Any]:
    """
    Create a paid invoice for an order.

    Args:
        db: Database session
        payment_data: {id, processor, payment_method, session_id?, vat_info?}
        order_data: {order_id, items, total, currency, created_at?}
        customer_info: Customer snapshot for the billing block
        company: Seller block (defaults to the configured company)

    Returns:
        Dict with invoice (Invoice), invoice_id and invoice_number
    """
    order_id = order_data["order_id"]
    existing = await get_invoices_by_order(db, order_id)
    if existing:
        invoice = existing[0]
        logger.info(f"Invoice {invoice.invoice_number} already exists for order {order_id}")
        return {"invoice": invoice, "invoice_id": invoice.id, "invoice_number": invoice.invoice_number}

    now = datetime.utcnow()
    items: Sequence[OrderItem] = order_data.get("items") or []
    currency = (order_data.get("currency") or "USD").upper()

    if items:
        subtotal = sum((quantize_money(item.line_total) for item in items), Decimal("0"))
        line_items = [
            {
                "item_id": item.item_id,
                "description": item.title,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
                "total": str(quantize_money(item.line_total)),
            }
            for item in items
        ]
    else:
        subtotal = quantize_money(Decimal(order_data.get("total") or 0))
        line_items = [{
            "item_id": "default_item",
            "description": "AI Agent Template Purchase",
            "quantity": 1,
            "unit_price": str(subtotal),
            "total": str(subtotal),
        }]

    vat_info = payment_data.get("vat_info") or {}
    vat_rate = Decimal(str(vat_info.get("vat_rate", "0")))
    vat_amount = quantize_money(Decimal(str(vat_info.get("vat_amount", "0"))))
    total_amount = subtotal + vat_amount

    customer = {
        "id": customer_info.user_id,
        "name": customer_info.name or "Valued Customer",
        "email": customer_info.email,
        "phone": customer_info.phone,
        "address": customer_info.address,
        "city": customer_info.city,
        "country": customer_info.country,
        "postalCode": customer_info.postal_code,
        "isRegistered": bool(customer_info.user_id),
    }

    invoice_number = await next_invoice_number(db, now)
    db_invoice = InvoiceModel(
        id=str(uuid.uuid4()),
        invoice_number=invoice_number,
        order_id=order_id,
        customer_id=customer_info.user_id,
        customer_email=customer_info.email,
        status="paid",
        currency=currency,
        subtotal=subtotal,
        vat_rate=vat_rate,
        vat_amount=vat_amount,
        total_amount=total_amount,
        paid_amount=total_amount,
        company=(company or settings.company_info()).to_dict(),
        customer=customer,
        line_items=line_items,
        payment={
            "id": payment_data.get("id"),
            "method": payment_data.get("payment_method") or "card",
            "processor": payment_data.get("processor"),
            "sessionId": payment_data.get("session_id"),
            "paidAt": now.isoformat(),
        },
        status_metadata={"vatInfo": vat_info or None},
        issue_date=now,
        due_date=now + timedelta(days=PAYMENT_TERMS_DAYS),
        paid_date=now,
    )
    db.add(db_invoice)
    await db.commit()
    await db.refresh(db_invoice)

    logger.info(f"Created invoice {invoice_number} for order {order_id}: {total_amount} {currency}")

    invoice = Invoice.model_validate(db_invoice)
    return {"invoice": invoice, "invoice_id": invoice.id, "invoice_number": invoice.invoice_number}


# ============================================================================
# Status
# ============================================================================

async def update_invoice_status(
    db: AsyncSession,
    invoice_id: str,
    status: str,
    metadata: Optional[Dict[str, Any]] = None
) -> Invoice:
    """
    Set an invoice's status.

    Raises:
        InvalidStatusError: If status is not one of the invoice statuses
        NotFoundError: If the invoice does not exist
    """
    if status not in INVOICE_STATUSES:
        raise InvalidStatusError(
            f"Invalid invoice status: {status}",
            details={"status": status, "allowed": list(INVOICE_STATUSES)}
        )

    db_invoice = await db.get(InvoiceModel, invoice_id)
    if db_invoice is None:
        raise NotFoundError(f"Invoice not found: {invoice_id}")

    now = datetime.utcnow()
    status_metadata = dict(db_invoice.status_metadata or {})
    status_metadata.update(metadata or {})
    status_metadata[f"{status}At"] = now.isoformat()

    db_invoice.status = status
    db_invoice.status_metadata = status_metadata
    if status == "paid" and db_invoice.paid_date is None:
        db_invoice.paid_date = now
    await db.commit()
    await db.refresh(db_invoice)

    logger.info(f"Updated invoice status: {invoice_id} -> {status}")
    return Invoice.model_validate(db_invoice)


# ============================================================================
# Queries
# ============================================================================

async def get_invoice(db: AsyncSession, invoice_id: str) -> Invoice:
    db_invoice = await db.get(InvoiceModel, invoice_id)
    if db_invoice is None:
        raise NotFoundError(f"Invoice not found: {invoice_id}")
    return Invoice.model_validate(db_invoice)


async def get_invoice_by_number(db: AsyncSession, invoice_number: str) -> Invoice:
    result = await db.execute(select(InvoiceModel).where(InvoiceModel.invoice_number == invoice_number))
    db_invoice = result.scalar_one_or_none()
    if db_invoice is None:
        raise NotFoundError(f"Invoice not found: {invoice_number}")
    return Invoice.model_validate(db_invoice)


async def get_invoices_by_order(db: AsyncSession, order_id: str) -> List[Invoice]:
    result = await db.execute(
        select(InvoiceModel).where(InvoiceModel.order_id == order_id).order_by(InvoiceModel.created_at)
    )
    return [Invoice.model_validate(row) for row in result.scalars().all()]


async def get_customer_invoices(db: AsyncSession, customer_id: str, limit: int = 20) -> List[Invoice]:
    result = await db.execute(
        select(InvoiceModel)
        .where(InvoiceModel.customer_id == customer_id)
        .order_by(InvoiceModel.created_at.desc())
        .limit(limit)
    )
    return [Invoice.model_validate(row) for row in result.scalars().all()]


async def search_invoices(
    db: AsyncSession,
    customer_email: Optional[str] = None,
    invoice_number: Optional[str] = None,
    order_id: Optional[str] = None,
    status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = 20
) -> List[Invoice]:
    query = select(InvoiceModel)
    if customer_email:
        query = query.where(InvoiceModel.customer_email == customer_email)
    if invoice_number:
        query = query.where(InvoiceModel.invoice_number == invoice_number)
    if order_id:
        query = query.where(InvoiceModel.order_id == order_id)
    if status:
        query = query.where(InvoiceModel.status == status)
    if start_date:
        query = query.where(InvoiceModel.created_at >= start_date)
    if end_date:
        query = query.where(InvoiceModel.created_at <= end_date)

    result = await db.execute(query.order_by(InvoiceModel.created_at.desc()).limit(limit))
    return [Invoice.model_validate(row) for row in result.scalars().all()]


async def get_invoice_stats(db: AsyncSession, period: str = "month") -> InvoiceStats:
    start = period_start(period, datetime.utcnow())
    result = await db.execute(select(InvoiceModel).where(InvoiceModel.created_at >= start))

    total_revenue = Decimal("0")
    count = 0
    by_status = {status: 0 for status in INVOICE_STATUSES}
    by_currency: Dict[str, Decimal] = {}

    for invoice in result.scalars().all():
        count += 1
        total_revenue += invoice.total_amount
        by_status[invoice.status] = by_status.get(invoice.status, 0) + 1
        by_currency[invoice.currency] = by_currency.get(invoice.currency, Decimal("0")) + invoice.total_amount

    return InvoiceStats(
        period=period,
        total_invoices=count,
        total_revenue=total_revenue,
        average_order_value=quantize_money(total_revenue / count) if count else Decimal("0"),
        by_status=by_status,
        by_currency=by_currency,
    )


EXPORT_COLUMNS = [
    "invoice_number", "issue_date", "status", "customer_email", "order_id",
    "currency", "subtotal", "vat_amount", "total_amount", "paid_amount",
]


async def export_invoices_csv(db: AsyncSession, **filters: Any) -> str:
    """Render matching invoices as CSV (search_invoices filters apply)."""
    filters.setdefault("limit", 1000)
    invoices = await search_invoices(db, **filters)

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_COLUMNS)
    for invoice in invoices:
        writer.writerow([
            invoice.invoice_number,
            invoice.issue_date.date().isoformat(),
            invoice.status,
            invoice.customer_email or "",
            invoice.order_id or "",
            invoice.currency,
            invoice.subtotal,
            invoice.vat_amount,
            invoice.total_amount,
            invoice.paid_amount,
        ])
    return buffer.getvalue()
