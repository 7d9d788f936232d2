"""
Pydantic Order and Checkout Models

Checkout request/response bodies and the order read model.
Monetary values are integer KES cents unless the field name says otherwise.
"""
import re
from datetime import datetime
from typing import Optional, Literal, List

from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator
from pydantic.alias_generators import to_camel

# Safaricom / Airtel Kenya mobile numbers in international form
PHONE_PATTERN = re.compile(r"^254[17]\d{8}$")

OrderStatus = Literal["pending", "paid", "payment_failed"]
OrderPaymentStatus = Literal["pending", "completed", "failed"]


def validate_phone_number(value: str) -> str:
    """Normalize whitespace and enforce the 2547XXXXXXXX / 2541XXXXXXXX format."""
    value = value.strip()
    if not PHONE_PATTERN.match(value):
        raise ValueError("Please enter a valid Kenyan phone number (e.g., 2547XXXXXXXX)")
    return value


class CartLine(BaseModel):
    """
    One cart line as submitted by the storefront.

    Any price or name the client sends along is ignored.
    """
    product_id: str = Field(validation_alias=AliasChoices("product_id", "productId", "_id"))
    quantity: int = Field(default=1, ge=1)

    model_config = {"extra": "ignore"}


class CheckoutRequest(BaseModel):
    """Checkout submission: cart plus customer contact snapshot."""
    cart: List[CartLine] = Field(min_length=1)
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    phone_number: str = Field(validation_alias=AliasChoices("phone_number", "phoneNumber"))

    @field_validator("phone_number")
    @classmethod
    def check_phone_number(cls, value: str) -> str:
        return validate_phone_number(value)


class CheckoutResult(BaseModel):
    """Returned to the storefront after the STK push has been sent."""
    success: bool = True
    message: str
    order_id: str
    payment_id: str
    correlation_id: str

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderItem(BaseModel):
    product_id: str
    name: str
    unit_price_cents: int = Field(ge=0)
    quantity: int = Field(ge=1)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CustomerInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class Order(BaseModel):
    """
    Order read model.

    total_cents always equals the sum of unit_price_cents * quantity over items.
    """
    id: str
    user_id: str
    items: List[OrderItem]
    total_cents: int = Field(ge=0)
    total: float
    status: OrderStatus
    payment_status: OrderPaymentStatus
    customer: CustomerInfo
    created_at: datetime
    updated_at: datetime
    payment_completed_at: Optional[datetime] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
