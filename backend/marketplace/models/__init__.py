"""
Pydantic models for the marketplace payment pipeline.
"""
from .orders import (
    OrderItem,
    DeliveryResult,
    DeliveredTemplate,
    Order,
    ProcessingResult,
    compute_delivery_status,
    FINAL_DELIVERY_STATUSES,
)
from .payments import (
    CustomerInfo,
    PaymentMetadata,
    CreateSessionRequest,
    SessionResult,
    ConfirmResult,
    RefundResult,
    SessionEntry,
    PaymentSucceededEvent,
    RefundRequest,
    WalletPaymentRequest,
    CaptureRequest,
    TERMINAL_SESSION_STATUSES,
)
from .webhooks import UniPayWebhook, PayPalWebhook, ProviderWebhook
from .invoices import Invoice, InvoiceLineItem, InvoiceStatusUpdate, InvoiceStats, INVOICE_STATUSES
from .templates import TemplateAccess, RevokeRequest

__all__ = [
    "OrderItem",
    "DeliveryResult",
    "DeliveredTemplate",
    "Order",
    "ProcessingResult",
    "compute_delivery_status",
    "FINAL_DELIVERY_STATUSES",
    "CustomerInfo",
    "PaymentMetadata",
    "CreateSessionRequest",
    "SessionResult",
    "ConfirmResult",
    "RefundResult",
    "SessionEntry",
    "PaymentSucceededEvent",
    "RefundRequest",
    "WalletPaymentRequest",
    "CaptureRequest",
    "TERMINAL_SESSION_STATUSES",
    "UniPayWebhook",
    "PayPalWebhook",
    "ProviderWebhook",
    "Invoice",
    "InvoiceLineItem",
    "InvoiceStatusUpdate",
    "InvoiceStats",
    "INVOICE_STATUSES",
    "TemplateAccess",
    "RevokeRequest",
]
