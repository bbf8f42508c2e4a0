"""
Database package for the marketplace.

Exports database initialization, models, and session management.
"""
from .init_db import initialize_database, create_tables, build_engine, get_db, get_async_session, AsyncSessionLocal
from .models import (
    Base,
    OrderModel,
    ProviderSessionModel,
    WebhookEventModel,
    TemplateAccessModel,
    InvoiceModel,
    InvoiceSequenceModel,
    AgentModel,
    UserPurchaseModel,
    OutboxTaskModel,
)

__all__ = [
    "initialize_database",
    "create_tables",
    "build_engine",
    "get_db",
    "get_async_session",
    "AsyncSessionLocal",
    "Base",
    "OrderModel",
    "ProviderSessionModel",
    "WebhookEventModel",
    "TemplateAccessModel",
    "InvoiceModel",
    "InvoiceSequenceModel",
    "AgentModel",
    "UserPurchaseModel",
    "OutboxTaskModel",
]
