"""Database package for POS payment reconciliation."""
from .connection import close_db, create_engine, create_session_factory, init_db
from .models import (
    Base,
    Order,
    OrderPaymentStatus,
    OrderStatus,
    Payment,
    PaymentEvent,
    PaymentStatus,
)
from .repository import PaymentRepository

__all__ = [
    "Base",
    "Order",
    "OrderPaymentStatus",
    "OrderStatus",
    "Payment",
    "PaymentEvent",
    "PaymentRepository",
    "PaymentStatus",
    "close_db",
    "create_engine",
    "create_session_factory",
    "init_db",
]
