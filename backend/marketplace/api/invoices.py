"""
Invoices API Endpoints

Invoice lookup, search, revenue statistics, CSV export and status updates.
Static paths are declared before /{invoice_id} so they are not captured by it.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.init_db import get_db
from ..models.invoices import Invoice, InvoiceStatusUpdate
from ..services import invoice_service
from .deps import require_admin_key

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("")
async def search_invoices_endpoint(
    customer_email: Optional[str] = Query(None, description="Exact customer email"),
    invoice_number: Optional[str] = Query(None, description="Exact invoice number"),
    order_id: Optional[str] = Query(None, description="Order id"),
    status: Optional[str] = Query(None, description="Invoice status"),
    start_date: Optional[datetime] = Query(None, description="Created on or after"),
    end_date: Optional[datetime] = Query(None, description="Created on or before"),
    limit: int = Query(20, ge=1, le=100, description="Max results"),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """
    Search invoices.

    Example:
        GET /api/invoices?customer_email=buyer@example.com&status=paid
    """
    invoices = await invoice_service.search_invoices(
        db,
        customer_email=customer_email,
        invoice_number=invoice_number,
        order_id=order_id,
        status=status,
        start_date=start_date,
        end_date=end_date,
        limit=limit
    )
    return {
        "invoices": [i.model_dump(mode="json") for i in invoices],
        "count": len(invoices),
    }


@router.get("/stats", dependencies=[Depends(require_admin_key)])
async def get_invoice_stats_endpoint(
    period: Literal["week", "month", "year", "30days"] = Query("month", description="Reporting period"),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    stats = await invoice_service.get_invoice_stats(db, period)
    return stats.model_dump(mode="json")


@router.get("/export", dependencies=[Depends(require_admin_key)])
async def export_invoices_endpoint(
    customer_email: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    db: AsyncSession = Depends(get_db)
) -> Response:
    """Export matching invoices as a CSV attachment."""
    content = await invoice_service.export_invoices_csv(
        db,
        customer_email=customer_email,
        status=status,
        start_date=start_date,
        end_date=end_date
    )
    filename = f"invoices-{datetime.utcnow().strftime('%Y%m%d')}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )


@router.get("/number/{invoice_number}")
async def get_invoice_by_number_endpoint(
    invoice_number: str,
    db: AsyncSession = Depends(get_db)
) -> Invoice:
    return await invoice_service.get_invoice_by_number(db, invoice_number)


@router.get("/order/{order_id}")
async def get_order_invoices_endpoint(
    order_id: str,
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    invoices = await invoice_service.get_invoices_by_order(db, order_id)
    return {
        "order_id": order_id,
        "invoices": [i.model_dump(mode="json") for i in invoices],
        "count": len(invoices),
    }


@router.get("/customer/{customer_id}")
async def get_customer_invoices_endpoint(
    customer_id: str,
    limit: int = Query(20, ge=1, le=100, description="Max results"),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    invoices = await invoice_service.get_customer_invoices(db, customer_id, limit)
    return {
        "customer_id": customer_id,
        "invoices": [i.model_dump(mode="json") for i in invoices],
        "count": len(invoices),
    }


@router.get("/{invoice_id}")
async def get_invoice_endpoint(
    invoice_id: str,
    db: AsyncSession = Depends(get_db)
) -> Invoice:
    """
    Get invoice details.

    Example:
        GET /api/invoices/inv_3f2a9c1d4e5b
    """
    logger.debug(f"Retrieving invoice: {invoice_id}")
    return await invoice_service.get_invoice(db, invoice_id)


@router.patch("/{invoice_id}/status", dependencies=[Depends(require_admin_key)])
async def update_invoice_status_endpoint(
    invoice_id: str,
    body: InvoiceStatusUpdate,
    db: AsyncSession = Depends(get_db)
) -> Invoice:
    """
    Move an invoice to another status (paid, pending, overdue, cancelled,
    refunded, disputed).
    """
    return await invoice_service.update_invoice_status(db, invoice_id, body.status, body.metadata)
