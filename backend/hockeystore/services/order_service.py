"""
Order Service

Creates orders and moves them through their lifecycle:
pending -> paid | payment_failed
payment_failed -> paid when a payment given up on turns out to be paid

Mutating functions run inside the caller's transaction and never commit.
Transitions are conditional updates on the expected current status.
"""
import logging
import uuid
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import OrderModel, OrderItemModel, ProductModel, utcnow
from ..exceptions import OrderStateError
from ..models.orders import CartLine, CheckoutRequest, CustomerInfo, Order, OrderItem

logger = logging.getLogger(__name__)


# ============================================================================
# Order Creation
# ============================================================================

def compute_total_cents(lines: Sequence[Tuple[CartLine, ProductModel]]) -> int:
    """Order total from server-side prices only."""
    return sum(product.price_cents * line.quantity for line, product in lines)


async def create_order(
    db: AsyncSession,
    user_id: str,
    request: CheckoutRequest,
    lines: Sequence[Tuple[CartLine, ProductModel]]
) -> OrderModel:
    """
    Insert a pending order with name/price snapshots of every line.

    Args:
        db: Database session (inside an open transaction)
        user_id: Authenticated owner
        request: Checkout request (contact snapshot)
        lines: Validated (cart line, product) pairs
    """
    order_id = f"ord_{uuid.uuid4().hex[:16]}"
    now = utcnow()

    order = OrderModel(
        id=order_id,
        user_id=user_id,
        total_cents=compute_total_cents(lines),
        status="pending",
        payment_status="pending",
        customer_name=request.name,
        customer_email=request.email,
        customer_phone=request.phone_number,
        created_at=now,
        updated_at=now,
    )
    order.items = [
        OrderItemModel(
            position=position,
            product_id=product.id,
            name=product.name,
            unit_price_cents=product.price_cents,
            quantity=line.quantity,
        )
        for position, (line, product) in enumerate(lines)
    ]

    db.add(order)
    await db.flush()

    logger.info(f"Created order {order_id} for user {user_id}: total_cents={order.total_cents}, items={len(lines)}")
    return order


async def delete_order(db: AsyncSession, order_id: str) -> None:
    """Remove an order that never got a payment off the ground."""
    await db.execute(delete(OrderItemModel).where(OrderItemModel.order_id == order_id))
    await db.execute(delete(OrderModel).where(OrderModel.id == order_id))


# ============================================================================
# Lifecycle Transitions
# ============================================================================

async def mark_paid(
    db: AsyncSession,
    order_id: str,
    phone: Optional[str] = None,
    from_status: str = "pending"
) -> None:
    """
    pending -> paid / completed, stamping payment_completed_at.

    Args:
        phone: Paying phone number from the callback, replaces the snapshot
        from_status: "payment_failed" when recovering a late payment

    Raises:
        OrderStateError: Order is not in from_status
    """
    now = utcnow()
    values = {
        "status": "paid",
        "payment_status": "completed",
        "payment_completed_at": now,
        "updated_at": now,
    }
    if phone:
        values["customer_phone"] = phone

    await _transition(db, order_id, values, from_status)
    logger.info(f"Order {order_id} marked paid (was {from_status})")


async def mark_payment_failed(db: AsyncSession, order_id: str) -> None:
    """
    pending -> payment_failed / failed.

    Raises:
        OrderStateError: Order is not pending
    """
    await _transition(db, order_id, {
        "status": "payment_failed",
        "payment_status": "failed",
        "updated_at": utcnow(),
    })
    logger.info(f"Order {order_id} marked payment_failed")


async def _transition(db: AsyncSession, order_id: str, values: dict, from_status: str = "pending") -> None:
    result = await db.execute(
        update(OrderModel)
        .where(OrderModel.id == order_id, OrderModel.status == from_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise OrderStateError(
            f"Order {order_id} is not {from_status}",
            details={"order_id": order_id, "expected_status": from_status, "target_status": values["status"]}
        )


# ============================================================================
# Order Retrieval
# ============================================================================

def to_order(order: OrderModel) -> Order:
    """Convert ORM row to the Pydantic read model."""
    return Order(
        id=order.id,
        user_id=order.user_id,
        items=[
            OrderItem(
                product_id=item.product_id,
                name=item.name,
                unit_price_cents=item.unit_price_cents,
                quantity=item.quantity,
            )
            for item in order.items
        ],
        total_cents=order.total_cents,
        total=order.total_cents / 100,
        status=order.status,
        payment_status=order.payment_status,
        customer=CustomerInfo(
            name=order.customer_name,
            email=order.customer_email,
            phone=order.customer_phone,
        ),
        created_at=order.created_at,
        updated_at=order.updated_at,
        payment_completed_at=order.payment_completed_at,
    )


async def get_order(db: AsyncSession, order_id: str) -> Optional[Order]:
    result = await db.execute(
        select(OrderModel)
        .where(OrderModel.id == order_id)
        .execution_options(populate_existing=True)
    )
    order = result.scalar_one_or_none()
    return to_order(order) if order else None


async def get_user_orders(
    db: AsyncSession,
    user_id: str,
    limit: int = 50,
    offset: int = 0
) -> List[Order]:
    """
    Get orders for a user.

    Returns:
        List of orders (most recent first)
    """
    result = await db.execute(
        select(OrderModel)
        .where(OrderModel.user_id == user_id)
        .order_by(OrderModel.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return [to_order(order) for order in result.scalars().all()]
