"""
Inventory Service

Per-product stock counters. All functions run inside the caller's transaction
and never commit.

Invariants:
- stock never goes negative; every decrement is conditional on stock >= qty
  inside the same transaction that performs it
- restoration adds back exactly the quantities recorded on the order items
"""
import logging
from typing import Dict, Iterable, List, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import ProductModel, OrderItemModel, utcnow
from ..exceptions import InsufficientStockError, ProductNotFoundError
from ..models.orders import CartLine

logger = logging.getLogger(__name__)


async def load_cart_products(
    db: AsyncSession,
    cart: Iterable[CartLine]
) -> List[Tuple[CartLine, ProductModel]]:
    """
    Re-read the authoritative product for every cart line and check stock.

    Runs before any mutation, so a failure here leaves nothing to undo.
    Repeated lines for the same product are checked against their combined
    quantity.

    Raises:
        ProductNotFoundError: A product does not exist
        InsufficientStockError: Requested quantity exceeds available stock
    """
    lines = list(cart)
    product_ids = {line.product_id for line in lines}
    result = await db.execute(select(ProductModel).where(ProductModel.id.in_(product_ids)))
    products: Dict[str, ProductModel] = {p.id: p for p in result.scalars().all()}

    requested: Dict[str, int] = {}
    validated = []
    for line in lines:
        product = products.get(line.product_id)
        if product is None:
            raise ProductNotFoundError(
                f"Product {line.product_id} not available",
                details={"product_id": line.product_id}
            )

        requested[product.id] = requested.get(product.id, 0) + line.quantity
        if product.stock < requested[product.id]:
            raise InsufficientStockError(
                f"Product {product.name} not available or insufficient stock",
                details={
                    "product_id": product.id,
                    "requested": requested[product.id],
                    "available": product.stock,
                }
            )
        validated.append((line, product))

    return validated


async def reserve_stock(db: AsyncSession, product_id: str, quantity: int) -> None:
    """
    Conditionally decrement stock.

    Raises:
        InsufficientStockError: No row matched stock >= quantity
    """
    result = await db.execute(
        update(ProductModel)
        .where(ProductModel.id == product_id, ProductModel.stock >= quantity)
        .values(stock=ProductModel.stock - quantity, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientStockError(
            f"Insufficient stock for product {product_id}",
            details={"product_id": product_id, "requested": quantity}
        )
    logger.debug(f"Reserved {quantity} x {product_id}")


async def restore_stock(db: AsyncSession, product_id: str, quantity: int) -> None:
    """Add quantity back to a product's stock."""
    await db.execute(
        update(ProductModel)
        .where(ProductModel.id == product_id)
        .values(stock=ProductModel.stock + quantity, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def restore_order_items(db: AsyncSession, order_id: str) -> int:
    """
    Compensate every reservation made for an order.

    Callers guarantee this runs at most once per order (terminal transition
    or release guard).

    Returns:
        Total units restored
    """
    result = await db.execute(
        select(OrderItemModel.product_id, OrderItemModel.quantity)
        .where(OrderItemModel.order_id == order_id)
    )
    restored = 0
    for product_id, quantity in result.all():
        await restore_stock(db, product_id, quantity)
        restored += quantity

    logger.info(f"Restored {restored} units of stock for order {order_id}")
    return restored


async def reserve_order_items(db: AsyncSession, order_id: str) -> int:
    """
    Take the stock for an order's items again after it was restored.

    Raises:
        InsufficientStockError: An item can no longer be covered; the caller's
            transaction must be rolled back
    """
    result = await db.execute(
        select(OrderItemModel.product_id, OrderItemModel.quantity)
        .where(OrderItemModel.order_id == order_id)
        .order_by(OrderItemModel.position)
    )
    reserved = 0
    for product_id, quantity in result.all():
        await reserve_stock(db, product_id, quantity)
        reserved += quantity

    logger.info(f"Re-reserved {reserved} units of stock for order {order_id}")
    return reserved
