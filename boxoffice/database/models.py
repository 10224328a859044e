"""SQLAlchemy database models for checkout sessions, orders and cash drawers."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column.

    Values are stored in UTC and always come back aware, including on
    backends without native timezone support.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class PaymentStatus(str, Enum):
    """Payment status of an order or a draft checkout session."""

    PENDING = "pending"
    PAID = "paid"
    FREE = "free"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SalesChannel(str, Enum):
    """Where an order was sold."""

    ONLINE = "online"
    COUNTER = "counter"


class CashSessionStatus(str, Enum):
    """Cash drawer session state. ``closed`` is terminal."""

    OPEN = "open"
    CLOSED = "closed"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class TempRegistration(Base):
    """
    Draft checkout session.

    Holds the cart until the payment is confirmed. The embedded ``orders``
    document carries the draft totals and the gateway tokens needed to
    verify the payment later. Lookup columns (gateway, transaction id,
    notification token, payment status, primary email) mirror the embedded
    document and are refreshed on every write.
    """

    __tablename__ = "temp_registrations"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    event_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    attendees: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    registration: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    selected_tickets: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    selected_products: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    orders: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    primary_email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    gateway: Mapped[str | None] = mapped_column(String(50), nullable=True)
    gateway_transaction_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    notification_token: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow
    )
    last_activity_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    reminder_email_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("idx_temp_registrations_gateway_status", "gateway", "payment_status"),
    )

    @property
    def total_amount(self) -> int:
        """Draft total in minor currency units."""
        return int(self.orders.get("total_amount") or 0)

    @property
    def currency(self) -> str:
        return self.orders.get("currency") or "XOF"

    @property
    def gateway_metadata(self) -> Dict[str, Any]:
        return dict(self.orders.get("gateway_metadata") or {})

    @property
    def pay_token(self) -> Optional[str]:
        """Payment authorization token retained for polling verification."""
        return self.gateway_metadata.get("pay_token")

    def __repr__(self) -> str:
        """String representation of TempRegistration."""
        return (
            f"<TempRegistration(session_id={self.session_id}, event_id={self.event_id}, "
            f"gateway={self.gateway}, status={self.payment_status})>"
        )


class Order(Base):
    """
    Finalized sale.

    ``gateway_transaction_id`` is unique: at most one order exists per real
    world payment, whichever notification path finalizes it first.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    event_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    registration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), nullable=False, default=uuid.uuid4
    )
    session_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="XOF")
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payment_gateway: Mapped[str | None] = mapped_column(String(50), nullable=True)
    gateway_transaction_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    gateway_metadata: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    sales_channel: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SalesChannel.ONLINE.value
    )
    cash_session_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("cash_sessions.id"), nullable=True, index=True
    )
    ticket_counter_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cashier_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    items_ticket: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    items_product: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    shipping_address: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    shipping_option: Mapped[str | None] = mapped_column(String(50), nullable=True)
    shipping_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    shipment_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="non_negative_total"),
        CheckConstraint(
            "payment_status IN ('pending', 'paid', 'free', 'failed')",
            name="valid_payment_status",
        ),
        CheckConstraint("sales_channel IN ('online', 'counter')", name="valid_sales_channel"),
        Index("idx_orders_cash_session_status", "cash_session_id", "payment_status"),
    )

    @property
    def is_paid(self) -> bool:
        return self.payment_status in (PaymentStatus.PAID.value, PaymentStatus.FREE.value)

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, number={self.order_number}, "
            f"amount={self.total_amount}, status={self.payment_status})>"
        )


class Attendee(Base):
    """
    Ticket holder created when an order is finalized.

    ``session_id`` points back at the draft session the attendee came from
    and must be cleared before that draft is deleted.
    """

    __tablename__ = "attendees"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("orders.id"), nullable=True, index=True
    )
    registration_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    event_id: Mapped[int] = mapped_column(Integer, nullable=False)
    session_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("temp_registrations.session_id"), nullable=True, index=True
    )
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ticket_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        """String representation of Attendee."""
        return f"<Attendee(id={self.id}, order_id={self.order_id}, email={self.email})>"


class CashSession(Base):
    """
    Physical cash drawer session at a ticket counter.

    At most one open session per cashier and per counter, enforced by
    partial unique indexes.
    """

    __tablename__ = "cash_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    cashier_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    ticket_counter_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    organization_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    opening_cash: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    closing_cash: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CashSessionStatus.OPEN.value
    )
    opening_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    closing_time: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('open', 'closed')", name="valid_cash_session_status"),
        CheckConstraint("opening_cash >= 0", name="non_negative_opening_cash"),
        Index(
            "uq_cash_sessions_open_cashier",
            "cashier_id",
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
        Index(
            "uq_cash_sessions_open_counter",
            "ticket_counter_id",
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
    )

    def __repr__(self) -> str:
        """String representation of CashSession."""
        return (
            f"<CashSession(id={self.id}, cashier={self.cashier_id}, "
            f"counter={self.ticket_counter_id}, status={self.status})>"
        )


class Event(Base):
    """Read-only event context (owned by the catalogue service)."""

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="XOF")
    tax_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    tax_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    config: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    @property
    def abandoned_cart_emails_enabled(self) -> bool:
        return (self.config or {}).get("enableAbandonedCartEmails") is True

    @property
    def shipping_fee(self) -> int:
        """Delivery fee in minor units."""
        return int((self.config or {}).get("shippingFee") or 0)


class Ticket(Base):
    """Read-only ticket type of an event, with its price in minor units."""

    __tablename__ = "tickets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    current_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Product(Base):
    """Read-only merchandise sold alongside an event's tickets."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class PromoCode(Base):
    """Read-only promo code. ``discount_type`` is ``percentage`` or ``fixed`` (minor units)."""

    __tablename__ = "promo_codes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(Integer, nullable=False)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    discount_type: Mapped[str] = mapped_column(String(20), nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (Index("idx_promo_codes_event_code", "event_id", "code", unique=True),)


class EventVisitor(Base):
    """Read-only visitor tracking row, flagged once the visitor bought."""

    __tablename__ = "event_visitors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    converted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    converted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (Index("idx_event_visitors_event_email", "event_id", "email"),)
