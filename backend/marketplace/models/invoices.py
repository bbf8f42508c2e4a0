"""
Pydantic Invoice Models
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

InvoiceStatus = Literal["paid", "pending", "overdue", "cancelled", "refunded", "disputed"]
INVOICE_STATUSES = ("paid", "pending", "overdue", "cancelled", "refunded", "disputed")


class InvoiceLineItem(BaseModel):
    item_id: str
    description: str
    quantity: int = 1
    unit_price: Decimal
    total: Decimal


class Invoice(BaseModel):
    """Invoice as returned by the API."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    invoice_number: str
    order_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    status: InvoiceStatus
    currency: str
    subtotal: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    company: Dict[str, Any]
    customer: Dict[str, Any]
    line_items: List[InvoiceLineItem]
    payment: Dict[str, Any]
    status_metadata: Dict[str, Any] = Field(default_factory=dict)
    issue_date: datetime
    due_date: datetime
    paid_date: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class InvoiceStatusUpdate(BaseModel):
    """Body of PATCH /invoices/{id}/status."""
    status: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class InvoiceStats(BaseModel):
    period: str
    total_invoices: int
    total_revenue: Decimal
    average_order_value: Decimal
    by_status: Dict[str, int]
    by_currency: Dict[str, Decimal]
