"""
Shared FastAPI dependencies.

Provider adapters, the order processor and the webhook router are built once
in create_app() and kept on app.state.
"""
from typing import Dict, Optional

from fastapi import Header, Request

from ..config import settings
from ..exceptions import NotFoundError, UnauthorizedError
from ..providers.base import PaymentProvider
from ..services.webhook_router import WebhookRouter


def get_providers(request: Request) -> Dict[str, PaymentProvider]:
    return request.app.state.providers


def get_webhook_router(request: Request) -> WebhookRouter:
    return request.app.state.webhook_router


def lookup_provider(providers: Dict[str, PaymentProvider], name: str) -> PaymentProvider:
    provider = providers.get(name)
    if provider is None:
        raise NotFoundError(f"Unknown payment provider: {name}", details={"provider": name})
    return provider


async def require_admin_key(x_admin_key: Optional[str] = Header(default=None)) -> None:
    """Reject the request unless X-Admin-Key matches the configured ADMIN_KEY."""
    if not settings.admin_key or x_admin_key != settings.admin_key:
        raise UnauthorizedError()
