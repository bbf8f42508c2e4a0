"""
Template Access API Endpoints

Token-gated template downloads plus token inspection, revocation and usage
statistics.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..db.init_db import get_db
from ..exceptions import InvalidRequestError, TokenAccessError
from ..models.templates import RevokeRequest, TemplateAccess
from ..services import order_store, template_service
from .deps import require_admin_key

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/download/{agent_id}")
async def download_template_endpoint(
    agent_id: str,
    order_id: Optional[str] = Query(None, alias="orderId", description="Order the token was issued for"),
    token: Optional[str] = Query(None, description="Download access token"),
    format: Literal["json", "download", "file", "text", "txt"] = Query("json", description="Response format"),
    db: AsyncSession = Depends(get_db)
) -> Any:
    """
    Download a purchased template.

    Query Parameters:
        orderId: Order id (required)
        token: Access token from the delivery email (required)
        format: json (wrapped), download/file (attachment) or text/txt

    Example:
        GET /api/templates/download/agent_1?orderId=order_abc&token=...&format=download
    """
    if not order_id or not token:
        raise InvalidRequestError("Order ID and access token are required")

    access = await template_service.validate_access(db, token, order_id, agent_id)
    content = await template_service.get_agent_template(db, agent_id)
    await template_service.record_download(db, access)

    agent = await template_service.get_agent(db, agent_id)
    agent_name = agent.title if agent and agent.title else "AI Agent"
    logger.info(f"Template {agent_id} downloaded for order {order_id} ({format})")

    if format in ("download", "file"):
        filename = f"{template_service.agent_slug(agent_name)}-template.json"
        return Response(
            content=content,
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'}
        )

    if format in ("text", "txt"):
        return PlainTextResponse(content)

    document = json.loads(content)
    return {
        "success": True,
        "agent_id": agent_id,
        "agent_name": agent_name,
        "order_id": order_id,
        "template": document,
        "downloaded_at": datetime.utcnow().isoformat(),
    }


@router.get("/access/{token}")
async def get_access_info_endpoint(
    token: str,
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """Inspect a token: its scope, usage and whether it is still valid."""
    access = await template_service.get_access_info(db, token)
    agent = await template_service.get_agent(db, access.agent_id)
    now = datetime.utcnow()
    is_expired = access.expires_at < now

    return {
        "success": True,
        "access": TemplateAccess.model_validate(access).model_dump(mode="json"),
        "agent": {
            "id": access.agent_id,
            "title": agent.title if agent else "Unknown Agent",
            "description": agent.description if agent else None,
            "category": agent.category if agent else None,
        },
        "is_expired": is_expired,
        "is_valid": not is_expired and not access.revoked,
    }


@router.get("/order/{order_id}")
async def get_order_templates_endpoint(
    order_id: str,
    email: Optional[str] = Query(None, description="Email the order was placed with"),
    user_id: Optional[str] = Query(None, alias="userId", description="Purchasing user"),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """
    Templates of an order. The caller proves ownership with the order's email
    or user id.
    """
    order = await order_store.require_order(db, order_id)

    if email and (order.user_email or "").lower() != email.lower():
        raise TokenAccessError("Email does not match order", details={"reason": "email_mismatch"})
    if user_id and order.user_id != user_id:
        raise TokenAccessError("User does not match order", details={"reason": "user_mismatch"})
    if not email and not user_id:
        raise InvalidRequestError("Email or user ID is required")

    templates = await template_service.list_order_templates(db, order_id, settings.api_url)
    return {
        "success": True,
        "order_id": order_id,
        "order_status": order.status,
        "order_date": order.created_at.isoformat(),
        "templates": templates,
        "template_count": len(templates),
    }


@router.post("/revoke/{token}", dependencies=[Depends(require_admin_key)])
async def revoke_token_endpoint(
    token: str,
    body: RevokeRequest,
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    access = await template_service.revoke_token(db, token, reason=body.reason, revoked_by=body.revoked_by)
    return {
        "success": True,
        "token": f"{token[:8]}...",
        "revoked_at": access.revoked_at.isoformat(),
        "reason": access.revoked_reason,
    }


@router.get("/stats", dependencies=[Depends(require_admin_key)])
async def get_template_stats_endpoint(
    period: Literal["week", "month", "year", "30days"] = Query("month", description="Reporting period"),
    agent_id: Optional[str] = Query(None, alias="agentId", description="Restrict to one agent"),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    stats = await template_service.get_template_stats(db, period, agent_id)
    return {"success": True, **stats}
