"""
Orders API Endpoints

Read access to the Order Store. Download tokens are never included; they
only travel in delivery emails.
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.init_db import get_db
from ..models.orders import Order
from ..services import order_store, session_registry

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/user/{user_id}")
async def get_user_orders_endpoint(
    user_id: str,
    limit: int = Query(50, ge=1, le=100, description="Max results"),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """
    Orders placed by a user, newest first.

    Example:
        GET /api/orders/user/user_123?limit=10
    """
    orders = await order_store.get_user_orders(db, user_id, limit)
    return {
        "user_id": user_id,
        "orders": [o.model_dump(mode="json") for o in orders],
        "count": len(orders),
    }


@router.get("/{order_id}")
async def get_order_endpoint(
    order_id: str,
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """Order details with the provider sessions that paid for it."""
    logger.debug(f"Retrieving order: {order_id}")
    order = await order_store.require_order(db, order_id)
    sessions = await session_registry.list_sessions_by_order(db, order_id)
    return {
        "order": Order.model_validate(order).model_dump(mode="json"),
        "sessions": [
            {
                "provider": s.provider,
                "provider_session_id": s.provider_session_id,
                "status": s.status,
                "amount": str(s.amount),
                "currency": s.currency,
                "created_at": s.created_at.isoformat(),
            }
            for s in sessions
        ],
    }
