"""
Orders API Endpoint

Order history for the signed-in customer.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict, List
import logging

from ..auth import AuthenticatedUser, get_current_user
from ..db.init_db import get_db
from ..services.order_service import get_user_orders

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/orders")
async def list_orders_endpoint(
    limit: int = Query(50, ge=1, le=100, description="Max results"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
) -> List[Dict[str, Any]]:
    """
    Get the caller's orders, most recent first.

    Returns:
        List of orders with items, totals, status and payment status
    """
    logger.debug(f"Retrieving orders for user: {user.user_id}, limit={limit}, offset={offset}")

    orders = await get_user_orders(db, user.user_id, limit, offset)
    return [order.model_dump(mode="json", by_alias=True) for order in orders]
