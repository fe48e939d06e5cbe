"""booking_schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Creates the group booking tables: owners, events, payments,
payment_transitions and waiting_list, with the partial unique indexes
that keep one live payment and one open waiting-list entry per guest.
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LIVE_PAYMENT = "status IN ('pending', 'paid', 'capturing', 'confirmed', 'cancelling')"
OPEN_ENTRY = "notified_at IS NULL"


def upgrade() -> None:
    # --- owners ---
    op.create_table(
        "owners",
        sa.Column("owner_id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("stripe_account_id", sa.String(255), nullable=False, unique=True),
        sa.Column("onboarding_complete", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # --- events ---
    op.create_table(
        "events",
        sa.Column("event_id", sa.String(36), primary_key=True),
        sa.Column("owner_id", sa.String(36), sa.ForeignKey("owners.owner_id"), nullable=False),
        sa.Column("slug", sa.String(32), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("price_cents", sa.Integer, nullable=False),
        sa.Column("service_fee_cents", sa.Integer, nullable=False),
        sa.Column("min_participants", sa.Integer, nullable=False),
        sa.Column("max_participants", sa.Integer, nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payment_deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_events_slug", "events", ["slug"], unique=True)

    # --- payments ---
    op.create_table(
        "payments",
        sa.Column("payment_id", sa.String(36), primary_key=True),
        sa.Column("event_id", sa.String(36), sa.ForeignKey("events.event_id"), nullable=False),
        sa.Column("guest_name", sa.String(100), nullable=False),
        sa.Column("guest_email", sa.String(255), nullable=False),
        sa.Column("authorization_ref", sa.String(255), nullable=True, unique=True),
        sa.Column("charge_ref", sa.String(255), nullable=True),
        sa.Column("total_cents", sa.Integer, nullable=False),
        sa.Column("owner_share_cents", sa.Integer, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("cancel_token", sa.String(64), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_payments_event_id", "payments", ["event_id"])
    op.create_index(
        "uq_payments_live_guest", "payments", ["event_id", "guest_email"], unique=True,
        sqlite_where=sa.text(LIVE_PAYMENT), postgresql_where=sa.text(LIVE_PAYMENT),
    )

    # --- payment_transitions ---
    op.create_table(
        "payment_transitions",
        sa.Column("transition_id", sa.String(36), primary_key=True),
        sa.Column("payment_id", sa.String(36), sa.ForeignKey("payments.payment_id"), nullable=False),
        sa.Column("from_statuses", sa.JSON, nullable=False),
        sa.Column("to_status", sa.String(20), nullable=False),
        sa.Column("trigger", sa.String(20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_payment_transitions_payment_id", "payment_transitions", ["payment_id"])

    # --- waiting_list ---
    op.create_table(
        "waiting_list",
        sa.Column("entry_id", sa.String(36), primary_key=True),
        sa.Column("event_id", sa.String(36), sa.ForeignKey("events.event_id"), nullable=False),
        sa.Column("guest_name", sa.String(100), nullable=False),
        sa.Column("guest_email", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("notify_whatsapp", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("notify_viber", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("notified_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_waiting_list_event_id", "waiting_list", ["event_id"])
    op.create_index(
        "uq_waiting_list_open_guest", "waiting_list", ["event_id", "guest_email"], unique=True,
        sqlite_where=sa.text(OPEN_ENTRY), postgresql_where=sa.text(OPEN_ENTRY),
    )


def downgrade() -> None:
    op.drop_table("waiting_list")
    op.drop_table("payment_transitions")
    op.drop_table("payments")
    op.drop_table("events")
    op.drop_table("owners")
