"""
SQLAlchemy ORM Models for the Marketplace Payment Pipeline

Order Store and Session Registry are independent tables correlated only by
order id / provider session id: there are no foreign keys between them.
Snapshots (items, customer info, delivery results) are JSON columns.
"""
from datetime import datetime
from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Numeric, Text, JSON,
    CheckConstraint, UniqueConstraint
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class OrderModel(Base):
    """
    ORM model for orders table.

    One row per successful payment; created idempotently by the order processor.
    """
    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    user_id = Column(String, index=True)
    user_email = Column(String, index=True)
    items = Column(JSON, nullable=False, default=list)
    total = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String, nullable=False, default="pending", index=True)
    payment_id = Column(String, index=True)
    payment_method = Column(String)
    processor = Column(String, nullable=False)
    provider_session_id = Column(String, index=True)
    delivery_status = Column(String, nullable=False, default="pending")
    delivery_results = Column(JSON, nullable=False, default=list)
    template_access_tokens = Column(JSON, nullable=False, default=list)
    vat_info = Column(JSON)
    invoice_id = Column(String)
    invoice_number = Column(String)
    refund_id = Column(String)
    refund_amount = Column(Numeric(12, 2))
    refund_reason = Column(String)
    refunded_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'completed', 'refunded')", name="order_status_check"),
        CheckConstraint(
            "delivery_status IN ('pending', 'skipped', 'skipped_by_flag', 'completed', 'partial', 'failed')",
            name="order_delivery_status_check"
        ),
    )


class ProviderSessionModel(Base):
    """
    ORM model for provider_sessions table (Session Registry).

    Keyed by the provider-issued session/order id.
    """
    __tablename__ = "provider_sessions"

    provider_session_id = Column(String, primary_key=True)
    provider = Column(String, nullable=False, index=True)
    internal_order_id = Column(String, nullable=False, index=True)
    merchant_order_id = Column(String)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    original_amount = Column(Numeric(12, 2))
    original_currency = Column(String(3))
    vat_info = Column(JSON)
    conversion_info = Column(JSON)
    items = Column(JSON, nullable=False, default=list)
    customer_info = Column(JSON, nullable=False, default=dict)
    session_metadata = Column(JSON, nullable=False, default=dict)
    payment_url = Column(String)
    status = Column(String, nullable=False, default="created", index=True)
    provider_status = Column(String)
    provider_reference = Column(String)
    failure_reason = Column(String)
    refund_amount = Column(Numeric(12, 2))
    refund_reason = Column(String)
    order_processed = Column(Boolean, nullable=False, default=False)
    invoice_id = Column(String)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    confirmed_at = Column(DateTime)
    paid_at = Column(DateTime)
    failed_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    refunded_at = Column(DateTime)
    last_webhook_at = Column(DateTime)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('created', 'confirmed', 'success', 'failed', 'cancelled', 'refunded')",
            name="session_status_check"
        ),
    )


class WebhookEventModel(Base):
    """
    ORM model for webhook_events table (dedup ledger).

    Written once per provider event id before any state mutation.
    """
    __tablename__ = "webhook_events"

    event_id = Column(String, primary_key=True)
    provider = Column(String, nullable=False)
    event_type = Column(String)
    provider_session_id = Column(String, index=True)
    payload = Column(JSON)
    processing_status = Column(String, nullable=False, default="received", index=True)
    processing_error = Column(Text)
    received_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    processed_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint(
            "processing_status IN ('received', 'processed', 'failed')",
            name="webhook_processing_status_check"
        ),
    )


class TemplateAccessModel(Base):
    """
    ORM model for template_access table.

    Capability tokens scoped to one order, one agent and one recipient email.
    """
    __tablename__ = "template_access"

    token = Column(String, primary_key=True)
    order_id = Column(String, nullable=False, index=True)
    agent_id = Column(String, nullable=False, index=True)
    user_id = Column(String)
    email = Column(String, nullable=False)
    invoice_id = Column(String)
    used = Column(Boolean, nullable=False, default=False)
    use_count = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime)
    revoked = Column(Boolean, nullable=False, default=False)
    revoked_at = Column(DateTime)
    revoked_by = Column(String)
    revoked_reason = Column(String)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    expires_at = Column(DateTime, nullable=False)


class InvoiceModel(Base):
    """ORM model for invoices table."""
    __tablename__ = "invoices"

    id = Column(String, primary_key=True)
    invoice_number = Column(String, nullable=False, unique=True)
    order_id = Column(String, index=True)
    customer_id = Column(String, index=True)
    customer_email = Column(String, index=True)
    status = Column(String, nullable=False, default="paid", index=True)
    currency = Column(String(3), nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)
    vat_rate = Column(Numeric(5, 4), nullable=False, default=0)
    vat_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False)
    paid_amount = Column(Numeric(12, 2), nullable=False, default=0)
    company = Column(JSON, nullable=False)
    customer = Column(JSON, nullable=False)
    line_items = Column(JSON, nullable=False)
    payment = Column(JSON, nullable=False)
    status_metadata = Column(JSON, nullable=False, default=dict)
    issue_date = Column(DateTime, nullable=False)
    due_date = Column(DateTime, nullable=False)
    paid_date = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('paid', 'pending', 'overdue', 'cancelled', 'refunded', 'disputed')",
            name="invoice_status_check"
        ),
    )


class InvoiceSequenceModel(Base):
    """Per-month counter backing monotonic invoice numbers."""
    __tablename__ = "invoice_sequences"

    period = Column(String, primary_key=True)  # YYYYMM
    last_value = Column(Integer, nullable=False, default=0)


class AgentModel(Base):
    """
    ORM model for agents table.

    Read-only from the pipeline's point of view: the content resolver turns a
    row into the deliverable template document.
    """
    __tablename__ = "agents"

    id = Column(String, primary_key=True)
    title = Column(String)
    description = Column(Text)
    category = Column(String)
    tags = Column(JSON, nullable=False, default=list)
    features = Column(JSON, nullable=False, default=list)
    template = Column(Text)
    template_url = Column(String)
    price = Column(Numeric(12, 2))
    image = Column(String)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class UserPurchaseModel(Base):
    """Entitlement rows recorded after a successful order."""
    __tablename__ = "user_purchases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    agent_id = Column(String, nullable=False)
    order_id = Column(String, nullable=False)
    price = Column(Numeric(12, 2))
    currency = Column(String(3))
    processor = Column(String)
    payment_id = Column(String)
    purchased_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "agent_id", name="uq_user_purchase_agent"),
    )


class OutboxTaskModel(Base):
    """
    ORM model for outbox_tasks table.

    Best-effort side effects enqueued in the same transaction as the order and
    dispatched after commit; failed tasks are retried by the scheduler.
    """
    __tablename__ = "outbox_tasks"

    id = Column(String, primary_key=True)
    task_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'done', 'failed')", name="outbox_status_check"),
    )
