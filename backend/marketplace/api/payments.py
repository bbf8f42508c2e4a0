"""
Payments API Endpoints

Checkout session creation, synchronous capture/confirm, provider webhooks,
hosted-page redirects and refunds for every payment provider.
"""
import logging
from typing import Any, Dict, Literal, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..db.init_db import get_db
from ..exceptions import InvalidRequestError, MarketplaceError, NotFoundError
from ..models.orders import Order
from ..models.payments import (
    CaptureRequest,
    CreateSessionRequest,
    RefundRequest,
    SessionEntry,
    WalletPaymentRequest,
)
from ..providers import DEFAULT_PROVIDER
from ..providers.base import PaymentProvider
from ..providers.pricing import EU_COUNTRIES
from ..services import order_store, session_registry
from ..services.webhook_router import WebhookRouter
from .deps import get_providers, get_webhook_router, lookup_provider, require_admin_key

logger = logging.getLogger(__name__)

router = APIRouter()


async def _create_session(
    db: AsyncSession,
    provider: PaymentProvider,
    body: CreateSessionRequest
) -> Dict[str, Any]:
    logger.info(
        f"Creating {provider.display_name} session: {body.amount} {body.currency}, {len(body.items)} items"
    )
    result = await provider.create_session(
        db, body.amount, body.currency, body.items, body.customer_info, body.metadata
    )
    return {"success": True, **result.model_dump(mode="json")}


# ============================================================================
# Session creation
# ============================================================================

@router.post("/create-session")
async def create_session_endpoint(
    body: CreateSessionRequest,
    db: AsyncSession = Depends(get_db),
    providers: Dict[str, PaymentProvider] = Depends(get_providers)
) -> Dict[str, Any]:
    """
    Create a checkout session with the preferred provider (UniPay by default).

    Returns:
        SessionResult fields: provider_session_id, internal_order_id,
        payment_url, normalized and original amounts, VAT and conversion info

    Example:
        POST /api/payments/create-session
        {"amount": 25.99, "currency": "USD", "items": [{"id": "agent_1", "price": 25.99}]}
    """
    provider = lookup_provider(providers, body.preferred_provider or DEFAULT_PROVIDER)
    return await _create_session(db, provider, body)


@router.post("/paypal/create-order")
async def create_paypal_order_endpoint(
    body: CreateSessionRequest,
    db: AsyncSession = Depends(get_db),
    providers: Dict[str, PaymentProvider] = Depends(get_providers)
) -> Dict[str, Any]:
    return await _create_session(db, lookup_provider(providers, "paypal"), body)


# ============================================================================
# Synchronous confirmation
# ============================================================================

@router.post("/paypal/capture")
async def capture_paypal_order_endpoint(
    body: CaptureRequest,
    db: AsyncSession = Depends(get_db),
    providers: Dict[str, PaymentProvider] = Depends(get_providers),
    webhook_router: WebhookRouter = Depends(get_webhook_router)
) -> Dict[str, Any]:
    """
    Capture an approved PayPal order and process it when the capture completed.

    Example:
        POST /api/payments/paypal/capture
        {"orderId": "5O190127TN364715T"}
    """
    provider = lookup_provider(providers, "paypal")
    confirmation = await provider.confirm_or_capture(db, body.provider_session_id)

    response: Dict[str, Any] = {
        "success": confirmation.success,
        "status": confirmation.status,
        "capture_id": confirmation.provider_reference,
    }
    if confirmation.status == "success":
        result = await webhook_router.handle_payment_success(db, body.provider_session_id)
        response["order"] = result.model_dump(mode="json")
    return response


@router.post("/unipay/confirm-order")
async def confirm_unipay_order_endpoint(
    body: CaptureRequest,
    db: AsyncSession = Depends(get_db),
    providers: Dict[str, PaymentProvider] = Depends(get_providers)
) -> Dict[str, Any]:
    """
    Confirm a UniPay order. Completion still arrives through the webhook.
    """
    provider = lookup_provider(providers, "unipay")
    confirmation = await provider.confirm_or_capture(db, body.provider_session_id, amount=body.amount)
    return {
        "success": confirmation.success,
        "status": confirmation.status,
        "provider_session_id": body.provider_session_id,
    }


@router.post("/wallet/{wallet}/process")
async def process_wallet_payment_endpoint(
    wallet: Literal["google", "apple"],
    body: WalletPaymentRequest,
    db: AsyncSession = Depends(get_db),
    providers: Dict[str, PaymentProvider] = Depends(get_providers),
    webhook_router: WebhookRouter = Depends(get_webhook_router)
) -> Dict[str, Any]:
    """
    Accept a Google Pay / Apple Pay payload validated client-side and process
    the order in the same request.

    A session created earlier through create-session for the same order id is
    reused.
    """
    provider = lookup_provider(providers, f"{wallet}_direct")
    provider.validate_payment_data(body.payment_data)

    entry = None
    if body.metadata.order_id:
        entry = await session_registry.get_session(db, f"{provider.prefix}_{body.metadata.order_id}")

    if entry is None:
        session = await provider.create_session(
            db, body.amount, body.currency, body.items, body.customer_info, body.metadata
        )
        session_id = session.provider_session_id
    else:
        session_id = entry.provider_session_id

    confirmation = await provider.confirm_or_capture(db, session_id, payment_data=body.payment_data)
    if not confirmation.success:
        raise InvalidRequestError(
            f"{provider.display_name} payment was not accepted",
            details={"provider_session_id": session_id, "status": confirmation.status}
        )
    result = await webhook_router.handle_payment_success(db, session_id)

    return {
        "success": True,
        "provider": provider.name,
        "provider_session_id": session_id,
        "transaction_id": confirmation.provider_reference,
        "order": result.model_dump(mode="json"),
    }


# ============================================================================
# Status and discovery
# ============================================================================

@router.get("/status/{payment_id}")
async def get_payment_status_endpoint(
    payment_id: str,
    type: Literal["auto", "session", "order"] = Query("auto", description="What the id refers to"),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """
    Payment status by provider session id or internal order id.

    Example:
        GET /api/payments/status/order_3f2a9c1d4e5b6a7c?type=order
    """
    sessions = []
    if type in ("auto", "session"):
        entry = await session_registry.get_session(db, payment_id)
        if entry is not None:
            sessions = [entry]

    order_id = sessions[0].internal_order_id if sessions else payment_id
    if not sessions and type in ("auto", "order"):
        sessions = await session_registry.list_sessions_by_order(db, order_id)

    order = await order_store.get_order(db, order_id) if type != "session" or sessions else None
    if not sessions and order is None:
        raise NotFoundError(f"No payment found with ID: {payment_id}", details={"payment_id": payment_id})

    return {
        "payment_id": payment_id,
        "order_id": order_id,
        "sessions": [SessionEntry.model_validate(s).model_dump(mode="json") for s in sessions],
        "order": Order.model_validate(order).model_dump(mode="json") if order else None,
    }


@router.get("/health")
async def payments_health_endpoint(
    providers: Dict[str, PaymentProvider] = Depends(get_providers)
) -> Dict[str, Any]:
    checks = {name: await provider.health_check() for name, provider in providers.items()}
    return {
        "status": "healthy" if all(c.get("success") for c in checks.values()) else "degraded",
        "providers": checks,
    }


@router.get("/methods")
async def get_payment_methods_endpoint(
    country_code: Optional[str] = Query(None, description="ISO 3166 country code"),
    providers: Dict[str, PaymentProvider] = Depends(get_providers)
) -> Dict[str, Any]:
    """
    Available payment methods for a buyer.

    UniPay is recommended for Georgian and EU buyers, PayPal elsewhere.
    """
    country = (country_code or "").upper()
    recommended = "unipay" if country == "GE" or country in EU_COUNTRIES else "paypal"
    methods = [
        {
            "id": name,
            "name": provider.display_name,
            "available": provider.configured,
            "currencies": list(provider.supported_currencies) if provider.supported_currencies else None,
            "recommended": name == recommended,
        }
        for name, provider in providers.items()
    ]
    return {"country_code": country or None, "methods": methods, "count": len(methods)}


@router.get("/webhooks/failed", dependencies=[Depends(require_admin_key)])
async def list_failed_webhooks_endpoint(
    limit: int = Query(50, ge=1, le=500, description="Max results"),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """Webhook events whose processing failed (dead letters)."""
    events = await WebhookRouter.list_failed_events(db, limit)
    return {
        "events": [
            {
                "event_id": e.event_id,
                "provider": e.provider,
                "event_type": e.event_type,
                "provider_session_id": e.provider_session_id,
                "processing_error": e.processing_error,
                "received_at": e.received_at.isoformat() if e.received_at else None,
                "processed_at": e.processed_at.isoformat() if e.processed_at else None,
            }
            for e in events
        ],
        "count": len(events),
    }


# ============================================================================
# Provider callbacks
# ============================================================================

@router.post("/{provider}/webhook")
async def provider_webhook_endpoint(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    webhook_router: WebhookRouter = Depends(get_webhook_router)
) -> Dict[str, Any]:
    """
    Inbound provider webhook. The raw body is needed for signature checks.
    """
    raw_body = await request.body()
    return await webhook_router.handle_webhook(db, provider, raw_body, request.headers)


@router.get("/{provider}/success")
async def provider_success_redirect_endpoint(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    webhook_router: WebhookRouter = Depends(get_webhook_router)
) -> RedirectResponse:
    """
    Customer returns from the provider's hosted page; forwarded to the
    frontend success page with the resulting status.
    """
    params = dict(request.query_params)
    try:
        outcome = await webhook_router.handle_redirect_success(db, provider, params)
    except MarketplaceError as e:
        logger.error(f"{provider} success redirect failed: {e.message}")
        query = urlencode({"error": e.error_code, "order_id": params.get("order_id", "")})
        return RedirectResponse(f"{settings.frontend_url}/checkout?{query}", status_code=303)

    query = urlencode({
        "order_id": outcome.get("order_id") or "",
        "status": outcome["status"],
        "provider": provider,
    })
    return RedirectResponse(f"{settings.frontend_url}/checkout/success?{query}", status_code=303)


@router.get("/{provider}/cancel")
async def provider_cancel_redirect_endpoint(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    webhook_router: WebhookRouter = Depends(get_webhook_router)
) -> RedirectResponse:
    try:
        await webhook_router.handle_redirect_cancel(db, provider, dict(request.query_params))
    except MarketplaceError as e:
        logger.error(f"{provider} cancel redirect failed: {e.message}")
    return RedirectResponse(f"{settings.frontend_url}/checkout?canceled=true", status_code=303)


@router.post("/{provider}/refund", dependencies=[Depends(require_admin_key)])
async def refund_payment_endpoint(
    provider: str,
    body: RefundRequest,
    db: AsyncSession = Depends(get_db),
    providers: Dict[str, PaymentProvider] = Depends(get_providers)
) -> Dict[str, Any]:
    """
    Refund a payment and run the refund bookkeeping for its order.

    Example:
        POST /api/payments/unipay/refund
        {"orderHashId": "A1B2C3", "reason": "customer_request"}
    """
    adapter = lookup_provider(providers, provider)
    entry = await session_registry.require_session(db, body.provider_session_id)
    if entry.provider != adapter.name:
        raise InvalidRequestError(
            f"Session {body.provider_session_id} belongs to {entry.provider}",
            details={"provider": entry.provider}
        )
    if entry.status != "success":
        raise InvalidRequestError(
            f"Only successful payments can be refunded (status: {entry.status})",
            details={"status": entry.status}
        )

    order_id = entry.internal_order_id
    refund = await adapter.create_refund(db, body.provider_session_id, body.amount, body.reason)

    if await order_store.get_order(db, order_id) is not None:
        order = await order_store.process_order_refund(db, order_id, refund, body.reason)
        order_status = order.status
    else:
        await session_registry.mark_sessions_refunded(db, order_id, refund.amount, body.reason)
        order_status = None

    return {
        "success": refund.success,
        "refund_id": refund.refund_id,
        "amount": str(refund.amount) if refund.amount is not None else None,
        "currency": refund.currency,
        "status": refund.status,
        "order_id": order_id,
        "order_status": order_status,
    }
