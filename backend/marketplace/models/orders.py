"""
Pydantic Order Models

Order Store records, their line items and per-item delivery results.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Sequence

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

OrderStatus = Literal["pending", "completed", "refunded"]
DeliveryStatus = Literal["pending", "skipped", "skipped_by_flag", "completed", "partial", "failed"]

# Statuses after which the processor never re-sends delivery email.
FINAL_DELIVERY_STATUSES = frozenset({"completed", "skipped", "skipped_by_flag"})


class OrderItem(BaseModel):
    """
    One purchased item.

    Accepts the storefront's loose shapes ({id, title, price}, {agentId, name,
    unitPrice}) and always serializes with the canonical field names.
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    item_id: str = Field(validation_alias=AliasChoices("item_id", "itemId", "id", "agentId", "productId"))
    title: str = Field(default="AI Agent Template", validation_alias=AliasChoices("title", "name"))
    unit_price: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        validation_alias=AliasChoices("unit_price", "unitPrice", "price")
    )
    quantity: int = Field(default=1, gt=0)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class DeliveryResult(BaseModel):
    """Outcome of delivering one item by email."""
    item_id: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


def compute_delivery_status(results: Sequence[DeliveryResult]) -> DeliveryStatus:
    """
    Derive an order's delivery status from its per-item results.

    completed: every result succeeded (also for an empty result list)
    partial: at least one, but not all, succeeded
    failed: none succeeded
    """
    successes = sum(1 for r in results if r.success)
    if successes == len(results):
        return "completed"
    if successes > 0:
        return "partial"
    return "failed"


class Order(BaseModel):
    """Order Store record as returned by the API."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    items: List[OrderItem] = Field(default_factory=list)
    total: Decimal
    currency: str
    status: OrderStatus
    payment_id: Optional[str] = None
    payment_method: Optional[str] = None
    processor: str
    provider_session_id: Optional[str] = None
    delivery_status: DeliveryStatus
    delivery_results: List[DeliveryResult] = Field(default_factory=list)
    # Download tokens only travel in delivery emails
    template_access_tokens: List[str] = Field(default_factory=list, exclude=True)
    vat_info: Optional[Dict[str, Any]] = None
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    refund_id: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    refund_reason: Optional[str] = None
    refunded_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class DeliveredTemplate(BaseModel):
    """Template access handed back to the caller after processing."""
    agent_id: str
    agent_name: str
    # Excluded from serialization; only the delivery email carries them
    access_token: str = Field(exclude=True)
    download_url: str = Field(exclude=True)


class ProcessingResult(BaseModel):
    """Output of the order processor."""
    success: bool = True
    order_id: str
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    delivery_status: DeliveryStatus
    delivery_results: List[DeliveryResult] = Field(default_factory=list)
    templates: List[DeliveredTemplate] = Field(default_factory=list)
    already_processed: bool = False
