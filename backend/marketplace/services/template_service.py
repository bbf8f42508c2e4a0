"""
Template Service

Resolves an agent into its deliverable template document and manages the
capability tokens that grant time-limited download access to it.

Token checks run in a fixed order: exists, matches order/agent, not expired,
not revoked. Every failure is a TokenAccessError (403).
"""
import json
import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import AgentModel, TemplateAccessModel
from ..exceptions import NotFoundError, TokenAccessError

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_DAYS = 30


# ============================================================================
# Content Resolver
# ============================================================================

async def get_agent(db: AsyncSession, agent_id: str) -> Optional[AgentModel]:
    return await db.get(AgentModel, agent_id)


def agent_slug(title: Optional[str]) -> str:
    """Filename-safe agent name: lowercase, non-alphanumerics collapsed to '-'."""
    slug = re.sub(r"[^a-z0-9]+", "-", (title or "ai-agent").lower()).strip("-")
    return slug or "ai-agent"


def generate_basic_template(agent: AgentModel) -> str:
    features = "\n".join(f"- {feature}" for feature in (agent.features or [])) or "- General assistance"
    return (
        f"# {agent.title} - AI Agent Template\n\n"
        f"## Description\n{agent.description or 'An AI agent to assist with your tasks.'}\n\n"
        f"## Features\n{features}\n\n"
        f"## Instructions\n"
        f"1. Import this template into your agent platform.\n"
        f"2. Configure credentials for any connected services.\n"
        f"3. Run a test execution before enabling it in production.\n"
    )


async def get_agent_template(db: AsyncSession, agent_id: str) -> str:
    """
    Build the JSON template document for an agent.

    The agent's own template is embedded (parsed when it is a JSON object);
    otherwise its template URL is referenced; a basic markdown template is
    generated only as a last resort.

    Returns:
        Pretty-printed JSON string

    Raises:
        NotFoundError: If the agent does not exist
    """
    agent = await get_agent(db, agent_id)
    if agent is None:
        raise NotFoundError(f"Agent not found: {agent_id}", details={"agent_id": agent_id})

    document: Dict[str, Any] = {
        "id": agent.id,
        "name": agent.title or "AI Agent",
        "description": agent.description or "No description available",
        "version": "1.0",
        "created": datetime.utcnow().isoformat(),
        "type": "agent_template",
        "category": agent.category or "AI Agent",
        "tags": agent.tags or [],
        "features": agent.features or [],
    }

    if agent.template:
        content: Any = agent.template
        if agent.template.strip().startswith("{"):
            try:
                content = json.loads(agent.template)
            except ValueError:
                logger.debug(f"Agent {agent_id} template is not valid JSON, embedding as text")
        document["templateContent"] = content
    elif agent.template_url:
        document["templateUrl"] = agent.template_url
    else:
        document["templateContent"] = generate_basic_template(agent)
        document["isGenerated"] = True

    return json.dumps(document, indent=2)


# ============================================================================
# Access Tokens
# ============================================================================

def build_download_url(api_url: str, agent_id: str, order_id: str, token: str) -> str:
    query = urlencode({"orderId": order_id, "token": token})
    return f"{api_url}/api/templates/download/{agent_id}?{query}"


async def create_access_token(
    db: AsyncSession,
    order_id: str,
    agent_id: str,
    email: str,
    user_id: Optional[str] = None,
    invoice_id: Optional[str] = None,
    ttl_days: int = DEFAULT_TOKEN_TTL_DAYS
) -> TemplateAccessModel:
    """
    Mint a download token for one agent of one order.

    Args:
        db: Database session
        order_id: Order the token belongs to
        agent_id: Agent the token unlocks
        email: Recipient the token was delivered to
        user_id: Purchasing user if known
        invoice_id: Invoice of the order if already created
        ttl_days: Validity window

    Returns:
        Created TemplateAccessModel
    """
    now = datetime.utcnow()
    access = TemplateAccessModel(
        token=secrets.token_urlsafe(32),
        order_id=order_id,
        agent_id=agent_id,
        user_id=user_id,
        email=email,
        invoice_id=invoice_id,
        created_at=now,
        expires_at=now + timedelta(days=ttl_days),
    )
    db.add(access)
    await db.commit()
    await db.refresh(access)

    logger.info(f"Created template access token {access.token[:8]}... for order {order_id}, agent {agent_id}")
    return access


async def validate_access(db: AsyncSession, token: str, order_id: str, agent_id: str) -> TemplateAccessModel:
    """
    Check a token against a download request.

    Raises:
        TokenAccessError: With details.reason in
            invalid_token / mismatch / expired / revoked
    """
    access = await db.get(TemplateAccessModel, token)
    if access is None:
        raise TokenAccessError("Invalid or expired access token", details={"reason": "invalid_token"})

    if access.order_id != order_id or access.agent_id != agent_id:
        logger.warning(f"Token {token[:8]}... used for order {order_id}, agent {agent_id}: mismatch")
        raise TokenAccessError("Access token does not match request parameters", details={"reason": "mismatch"})

    if datetime.utcnow() >= access.expires_at:
        raise TokenAccessError(
            "Access token has expired",
            details={"reason": "expired", "expiredAt": access.expires_at.isoformat()}
        )

    if access.revoked:
        raise TokenAccessError(
            "Access token has been revoked",
            details={"reason": "revoked", "revokedReason": access.revoked_reason or "Unknown"}
        )

    return access


async def record_download(db: AsyncSession, access: TemplateAccessModel) -> None:
    access.used = True
    access.use_count = (access.use_count or 0) + 1
    access.last_used_at = datetime.utcnow()
    await db.commit()


async def get_access_info(db: AsyncSession, token: str) -> TemplateAccessModel:
    access = await db.get(TemplateAccessModel, token)
    if access is None:
        raise NotFoundError("Access token not found")
    return access


async def revoke_token(
    db: AsyncSession,
    token: str,
    reason: str = "admin_revocation",
    revoked_by: str = "admin"
) -> TemplateAccessModel:
    """
    Revoke a single token.

    Raises:
        NotFoundError: If the token does not exist
    """
    access = await get_access_info(db, token)
    access.revoked = True
    access.revoked_at = datetime.utcnow()
    access.revoked_by = revoked_by
    access.revoked_reason = reason
    await db.commit()

    logger.info(f"Revoked template access {token[:8]}... ({reason})")
    return access


async def revoke_tokens_for_order(
    db: AsyncSession,
    order_id: str,
    reason: str = "order_refunded",
    revoked_by: str = "system"
) -> int:
    """
    Revoke every still-active token of an order.

    Returns:
        Number of tokens revoked
    """
    result = await db.execute(
        select(TemplateAccessModel).where(
            TemplateAccessModel.order_id == order_id,
            TemplateAccessModel.revoked.is_(False)
        )
    )
    now = datetime.utcnow()
    count = 0
    for access in result.scalars().all():
        access.revoked = True
        access.revoked_at = now
        access.revoked_by = revoked_by
        access.revoked_reason = reason
        count += 1
    await db.commit()

    logger.info(f"Revoked {count} template access tokens for order {order_id} ({reason})")
    return count


async def list_order_templates(db: AsyncSession, order_id: str, api_url: str = "") -> List[Dict[str, Any]]:
    """Active (non-revoked) templates of an order with agent details and download links."""
    result = await db.execute(
        select(TemplateAccessModel)
        .where(TemplateAccessModel.order_id == order_id, TemplateAccessModel.revoked.is_(False))
        .order_by(TemplateAccessModel.created_at)
    )
    now = datetime.utcnow()
    templates = []
    for access in result.scalars().all():
        agent = await get_agent(db, access.agent_id)
        templates.append({
            "id": access.agent_id,
            "title": agent.title if agent else "Unknown Agent",
            "description": agent.description if agent else None,
            "category": agent.category if agent else None,
            "image": agent.image if agent else None,
            "accessToken": access.token,
            "createdAt": access.created_at.isoformat(),
            "expiresAt": access.expires_at.isoformat(),
            "isExpired": access.expires_at < now,
            "lastUsed": access.last_used_at.isoformat() if access.last_used_at else None,
            "useCount": access.use_count,
            "downloadUrl": build_download_url(api_url, access.agent_id, order_id, access.token),
        })
    return templates


def period_start(period: str, now: datetime) -> datetime:
    """Start of a reporting period: week, month, year, or the last 30 days."""
    if period == "week":
        return now - timedelta(days=7)
    if period == "month":
        return datetime(now.year, now.month, 1)
    if period == "year":
        return datetime(now.year, 1, 1)
    return now - timedelta(days=30)


async def get_template_stats(db: AsyncSession, period: str = "month", agent_id: Optional[str] = None) -> Dict[str, Any]:
    now = datetime.utcnow()
    start = period_start(period, now)

    query = select(TemplateAccessModel).where(TemplateAccessModel.created_at >= start)
    if agent_id:
        query = query.where(TemplateAccessModel.agent_id == agent_id)
    result = await db.execute(query)

    total_accesses = 0
    total_downloads = 0
    revoked_count = 0
    expired_count = 0
    users = set()
    agent_breakdown: Dict[str, Dict[str, int]] = {}

    for access in result.scalars().all():
        total_accesses += 1
        total_downloads += access.use_count or 0
        users.add(access.email)
        bucket = agent_breakdown.setdefault(access.agent_id, {"count": 0, "downloads": 0})
        bucket["count"] += 1
        bucket["downloads"] += access.use_count or 0
        if access.revoked:
            revoked_count += 1
        if access.expires_at < now:
            expired_count += 1

    return {
        "period": period,
        "agentId": agent_id or "all",
        "dateRange": {"start": start.isoformat(), "end": now.isoformat()},
        "stats": {
            "totalAccesses": total_accesses,
            "totalDownloads": total_downloads,
            "uniqueUsers": len(users),
            "agentBreakdown": agent_breakdown,
            "revokedCount": revoked_count,
            "expiredCount": expired_count,
        },
    }
