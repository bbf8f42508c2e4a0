"""
Pydantic Payment Models

Request bodies, session registry entries, provider adapter results and the
canonical payment-succeeded event. Every model that is persisted or forwarded
ignores unknown fields so provider-internal data is never carried along.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .orders import OrderItem

SessionStatus = Literal["created", "confirmed", "success", "failed", "cancelled", "refunded"]
TERMINAL_SESSION_STATUSES = frozenset({"success", "failed", "cancelled", "refunded"})

ProviderName = Literal["paypal", "unipay", "google_direct", "apple_direct"]


class CustomerInfo(BaseModel):
    """Allow-listed customer snapshot."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("user_id", "userId", "id"))
    email: Optional[str] = None
    name: Optional[str] = Field(default=None, validation_alias=AliasChoices("name", "firstName", "customerName"))
    phone: Optional[str] = None
    country: Optional[str] = Field(default=None, validation_alias=AliasChoices("country", "countryCode"))
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = Field(default=None, validation_alias=AliasChoices("postal_code", "postalCode"))

    @field_validator("country")
    @classmethod
    def upper_country(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


class PaymentMetadata(BaseModel):
    """Allow-listed checkout metadata."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    order_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("order_id", "orderId"))
    email: Optional[str] = None
    user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("user_id", "userId"))
    skip_email_sending: bool = Field(
        default=False,
        validation_alias=AliasChoices("skip_email_sending", "skipEmailSending")
    )
    provider_session_id: Optional[str] = None
    merchant_order_id: Optional[str] = None
    source: Optional[str] = None


class CreateSessionRequest(BaseModel):
    """Body of POST /payments/create-session and the provider create endpoints."""
    model_config = ConfigDict(populate_by_name=True)

    amount: Decimal = Field(gt=0)
    currency: str = "USD"
    items: List[OrderItem] = Field(min_length=1)
    customer_info: CustomerInfo = Field(
        default_factory=CustomerInfo,
        validation_alias=AliasChoices("customer_info", "customerInfo")
    )
    metadata: PaymentMetadata = Field(default_factory=PaymentMetadata)
    preferred_provider: Optional[ProviderName] = Field(
        default=None,
        validation_alias=AliasChoices("preferred_provider", "preferredProvider")
    )

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class SessionResult(BaseModel):
    """What every adapter returns from create_session."""
    provider: str
    provider_session_id: str
    internal_order_id: str
    provider_order_id: str
    merchant_order_id: Optional[str] = None
    payment_url: Optional[str] = None
    normalized_amount: Decimal
    normalized_currency: str
    original_amount: Decimal
    original_currency: str
    vat_info: Optional[Dict[str, Any]] = None
    conversion_info: Optional[Dict[str, Any]] = None
    redirect: bool = False


class ConfirmResult(BaseModel):
    """Outcome of confirm/capture."""
    success: bool
    status: SessionStatus
    provider_reference: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class RefundResult(BaseModel):
    """Outcome of a provider-side refund."""
    success: bool
    refund_id: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    status: str
    raw: Dict[str, Any] = Field(default_factory=dict)


class SessionEntry(BaseModel):
    """Session Registry entry as returned by the API."""
    model_config = ConfigDict(from_attributes=True)

    provider_session_id: str
    provider: str
    internal_order_id: str
    merchant_order_id: Optional[str] = None
    amount: Decimal
    currency: str
    original_amount: Optional[Decimal] = None
    original_currency: Optional[str] = None
    vat_info: Optional[Dict[str, Any]] = None
    conversion_info: Optional[Dict[str, Any]] = None
    items: List[OrderItem] = Field(default_factory=list)
    customer_info: CustomerInfo = Field(default_factory=CustomerInfo)
    session_metadata: PaymentMetadata = Field(default_factory=PaymentMetadata)
    payment_url: Optional[str] = None
    status: SessionStatus
    provider_status: Optional[str] = None
    provider_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    refund_reason: Optional[str] = None
    order_processed: bool = False
    invoice_id: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    last_webhook_at: Optional[datetime] = None
    updated_at: datetime


class PaymentSucceededEvent(BaseModel):
    """
    Canonical, provider-agnostic payment-succeeded event.

    Built at the adapter/router boundary from a Session Registry snapshot; the
    order processor never branches on which provider produced it.
    """
    external_payment_id: str
    amount: Decimal = Field(ge=0)
    currency: str
    items: List[OrderItem] = Field(default_factory=list)
    customer: CustomerInfo = Field(default_factory=CustomerInfo)
    metadata: PaymentMetadata = Field(default_factory=PaymentMetadata)
    provider: str
    payment_method: str
    vat_info: Optional[Dict[str, Any]] = None

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class RefundRequest(BaseModel):
    """Body of POST /payments/{provider}/refund."""
    model_config = ConfigDict(populate_by_name=True)

    provider_session_id: str = Field(
        validation_alias=AliasChoices("provider_session_id", "providerSessionId", "orderHashId", "paymentId", "sessionId")
    )
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: Optional[str] = None


class WalletPaymentRequest(BaseModel):
    """Body of POST /payments/wallet/{wallet}/process."""
    model_config = ConfigDict(populate_by_name=True)

    payment_data: Dict[str, Any] = Field(validation_alias=AliasChoices("payment_data", "paymentData"))
    amount: Decimal = Field(gt=0)
    currency: str = "USD"
    items: List[OrderItem] = Field(default_factory=list)
    customer_info: CustomerInfo = Field(
        default_factory=CustomerInfo,
        validation_alias=AliasChoices("customer_info", "customerInfo")
    )
    metadata: PaymentMetadata = Field(default_factory=PaymentMetadata)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class CaptureRequest(BaseModel):
    """Body of POST /payments/paypal/capture and /payments/unipay/confirm-order."""
    model_config = ConfigDict(populate_by_name=True)

    provider_session_id: str = Field(
        validation_alias=AliasChoices("provider_session_id", "orderId", "orderID", "orderHashId", "token")
    )
    amount: Optional[Decimal] = Field(default=None, gt=0)
