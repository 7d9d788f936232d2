"""
SQLAlchemy ORM Models for the Hockey Store

Products carry the inventory counters; orders and payments are created together
at checkout and reconciled later by the M-Pesa callback.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text, CheckConstraint
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ProductModel(Base):
    """
    ORM model for products table.

    stock is the inventory counter; it is only ever adjusted, never reset.
    """
    __tablename__ = "products"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    image = Column(String)
    price_cents = Column(Integer, nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("stock >= 0", name="stock_non_negative"),
        CheckConstraint("price_cents >= 0", name="price_non_negative"),
    )


class OrderModel(Base):
    """
    ORM model for orders table.

    Customer contact fields are a snapshot taken at checkout.
    """
    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    total_cents = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    payment_status = Column(String, nullable=False, default="pending")
    customer_name = Column(String)
    customer_email = Column(String)
    customer_phone = Column(String)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    payment_completed_at = Column(DateTime)

    items = relationship(
        "OrderItemModel",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="OrderItemModel.position",
    )

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'paid', 'payment_failed')", name="order_status_check"),
        CheckConstraint("payment_status IN ('pending', 'completed', 'failed')", name="order_payment_status_check"),
    )


class OrderItemModel(Base):
    """ORM model for order_items table. Name and price are snapshots."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    name = Column(String, nullable=False)
    unit_price_cents = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)

    order = relationship("OrderModel", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="quantity_positive"),
    )


class PaymentModel(Base):
    """
    ORM model for payments table.

    One payment per order. correlation_id is the M-Pesa CheckoutRequestID; it
    stays NULL while the payment is 'initiated' and is written exactly once.
    """
    __tablename__ = "payments"

    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True)
    payment_method = Column(String, nullable=False, default="mpesa")
    amount_cents = Column(Integer, nullable=False)
    correlation_id = Column(String, unique=True, index=True)
    phone_number = Column(String, nullable=False)
    status = Column(String, nullable=False, default="initiated", index=True)
    initiation_response = Column(Text)  # JSON blob (InitiationResponse)
    callback_payload = Column(Text)  # JSON blob (CallbackPayload)
    result_description = Column(String)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('initiated', 'pending', 'completed', 'failed')",
            name="payment_status_check"
        ),
        CheckConstraint("payment_method = 'mpesa'", name="payment_method_check"),
    )
