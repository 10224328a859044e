"""Database package for box office payments."""
from .connection import close_db, create_session_factory, get_engine, get_session_factory, init_db
from .models import (
    Attendee,
    Base,
    CashSession,
    CashSessionStatus,
    Event,
    EventVisitor,
    Order,
    PaymentStatus,
    Product,
    PromoCode,
    SalesChannel,
    TempRegistration,
    Ticket,
    utcnow,
)

__all__ = [
    "Attendee",
    "Base",
    "CashSession",
    "CashSessionStatus",
    "Event",
    "EventVisitor",
    "Order",
    "PaymentStatus",
    "Product",
    "PromoCode",
    "SalesChannel",
    "TempRegistration",
    "Ticket",
    "close_db",
    "create_session_factory",
    "get_engine",
    "get_session_factory",
    "init_db",
    "utcnow",
]
