"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
OPEN_ONLY = sa.text("status = 'open'")


def upgrade() -> None:
    """Upgrade database schema. Catalogue tables (events, tickets, products, promo codes, visitors) are not managed here."""
    # Create temp_registrations table
    op.create_table(
        "temp_registrations",
        sa.Column("session_id", sa.String(length=64), nullable=False),
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("attendees", JSONType, nullable=False),
        sa.Column("registration", JSONType, nullable=False),
        sa.Column("selected_tickets", JSONType, nullable=False),
        sa.Column("selected_products", JSONType, nullable=False),
        sa.Column("orders", JSONType, nullable=False),
        sa.Column("primary_email", sa.String(length=255), nullable=True),
        sa.Column("gateway", sa.String(length=50), nullable=True),
        sa.Column("gateway_transaction_id", sa.String(length=255), nullable=True),
        sa.Column("notification_token", sa.String(length=255), nullable=True),
        sa.Column("payment_status", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reminder_email_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("session_id"),
    )
    op.create_index(
        "idx_temp_registrations_gateway_status",
        "temp_registrations",
        ["gateway", "payment_status"],
        unique=False,
    )
    for column in (
        "event_id",
        "primary_email",
        "gateway_transaction_id",
        "notification_token",
        "created_at",
        "expires_at",
    ):
        op.create_index(
            op.f(f"ix_temp_registrations_{column}"), "temp_registrations", [column], unique=False
        )

    # Create cash_sessions table
    op.create_table(
        "cash_sessions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("cashier_id", sa.String(length=64), nullable=False),
        sa.Column("ticket_counter_id", sa.String(length=64), nullable=False),
        sa.Column("event_id", sa.Integer(), nullable=True),
        sa.Column("organization_id", sa.Integer(), nullable=True),
        sa.Column("opening_cash", sa.Integer(), nullable=False),
        sa.Column("closing_cash", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("opening_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("closing_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.CheckConstraint("status IN ('open', 'closed')", name="valid_cash_session_status"),
        sa.CheckConstraint("opening_cash >= 0", name="non_negative_opening_cash"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_cash_sessions_cashier_id"), "cash_sessions", ["cashier_id"], unique=False
    )
    op.create_index(
        op.f("ix_cash_sessions_ticket_counter_id"),
        "cash_sessions",
        ["ticket_counter_id"],
        unique=False,
    )
    op.create_index(
        "uq_cash_sessions_open_cashier",
        "cash_sessions",
        ["cashier_id"],
        unique=True,
        postgresql_where=OPEN_ONLY,
        sqlite_where=OPEN_ONLY,
    )
    op.create_index(
        "uq_cash_sessions_open_counter",
        "cash_sessions",
        ["ticket_counter_id"],
        unique=True,
        postgresql_where=OPEN_ONLY,
        sqlite_where=OPEN_ONLY,
    )

    # Create orders table
    op.create_table(
        "orders",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("order_number", sa.String(length=50), nullable=False),
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("registration_id", sa.Uuid(), nullable=False),
        sa.Column("session_id", sa.String(length=64), nullable=True),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("payment_status", sa.String(length=20), nullable=False),
        sa.Column("payment_method", sa.String(length=50), nullable=True),
        sa.Column("payment_gateway", sa.String(length=50), nullable=True),
        sa.Column("gateway_transaction_id", sa.String(length=255), nullable=True),
        sa.Column("gateway_metadata", JSONType, nullable=True),
        sa.Column("sales_channel", sa.String(length=20), nullable=False),
        sa.Column("cash_session_id", sa.Uuid(), nullable=True),
        sa.Column("ticket_counter_id", sa.String(length=64), nullable=True),
        sa.Column("cashier_id", sa.String(length=64), nullable=True),
        sa.Column("items_ticket", JSONType, nullable=False),
        sa.Column("items_product", JSONType, nullable=False),
        sa.Column("shipping_address", JSONType, nullable=True),
        sa.Column("shipping_option", sa.String(length=50), nullable=True),
        sa.Column("shipping_amount", sa.Integer(), nullable=False),
        sa.Column("shipment_status", sa.String(length=30), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("total_amount >= 0", name="non_negative_total"),
        sa.CheckConstraint(
            "payment_status IN ('pending', 'paid', 'free', 'failed')",
            name="valid_payment_status",
        ),
        sa.CheckConstraint("sales_channel IN ('online', 'counter')", name="valid_sales_channel"),
        sa.ForeignKeyConstraint(["cash_session_id"], ["cash_sessions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_number"),
        sa.UniqueConstraint("gateway_transaction_id"),
    )
    op.create_index(
        "idx_orders_cash_session_status",
        "orders",
        ["cash_session_id", "payment_status"],
        unique=False,
    )
    for column in ("event_id", "session_id", "payment_status", "cash_session_id", "created_at"):
        op.create_index(op.f(f"ix_orders_{column}"), "orders", [column], unique=False)

    # Create attendees table
    op.create_table(
        "attendees",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("order_id", sa.Uuid(), nullable=True),
        sa.Column("registration_id", sa.Uuid(), nullable=True),
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(length=64), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("first_name", sa.String(length=100), nullable=True),
        sa.Column("last_name", sa.String(length=100), nullable=True),
        sa.Column("ticket_type", sa.String(length=100), nullable=True),
        sa.Column("is_primary", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["session_id"], ["temp_registrations.session_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_attendees_order_id"), "attendees", ["order_id"], unique=False)
    op.create_index(op.f("ix_attendees_session_id"), "attendees", ["session_id"], unique=False)


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index(op.f("ix_attendees_session_id"), table_name="attendees")
    op.drop_index(op.f("ix_attendees_order_id"), table_name="attendees")
    op.drop_table("attendees")
    for column in ("event_id", "session_id", "payment_status", "cash_session_id", "created_at"):
        op.drop_index(op.f(f"ix_orders_{column}"), table_name="orders")
    op.drop_index("idx_orders_cash_session_status", table_name="orders")
    op.drop_table("orders")
    op.drop_index("uq_cash_sessions_open_counter", table_name="cash_sessions")
    op.drop_index("uq_cash_sessions_open_cashier", table_name="cash_sessions")
    op.drop_index(op.f("ix_cash_sessions_ticket_counter_id"), table_name="cash_sessions")
    op.drop_index(op.f("ix_cash_sessions_cashier_id"), table_name="cash_sessions")
    op.drop_table("cash_sessions")
    for column in (
        "event_id",
        "primary_email",
        "gateway_transaction_id",
        "notification_token",
        "created_at",
        "expires_at",
    ):
        op.drop_index(op.f(f"ix_temp_registrations_{column}"), table_name="temp_registrations")
    op.drop_index("idx_temp_registrations_gateway_status", table_name="temp_registrations")
    op.drop_table("temp_registrations")
