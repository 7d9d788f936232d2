"""
Database package for the Hockey Store.

Exports the store handle, session dependencies and ORM models.
"""
from .init_db import Database, get_db, get_database
from .models import (
    Base,
    ProductModel,
    OrderModel,
    OrderItemModel,
    PaymentModel,
    utcnow
)

__all__ = [
    "Database",
    "get_db",
    "get_database",
    "Base",
    "ProductModel",
    "OrderModel",
    "OrderItemModel",
    "PaymentModel",
    "utcnow",
]
