"""Database package for the commerce backend."""
from .connection import get_db, get_session_factory, init_db
from .models import (
    Base,
    Order,
    Product,
    WebhookEvent,
)

__all__ = [
    "Base",
    "Order",
    "Product",
    "WebhookEvent",
    "get_db",
    "get_session_factory",
    "init_db",
]
