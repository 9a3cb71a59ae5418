"""Initial billing schema.

Creates the customer mapping, subscription, invoice and processed-event
tables.

Revision ID: 001
Revises:
Create Date: 2026-10-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "billing_customers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False, unique=True),
        sa.Column("stripe_customer_id", sa.String(256), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("name", sa.String(256), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_billing_customers_stripe_customer", "billing_customers", ["stripe_customer_id"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False, unique=True),
        sa.Column("external_id", sa.String(256), nullable=True, unique=True),
        sa.Column("customer_id", sa.String(256), nullable=True),
        sa.Column("price_id", sa.String(256), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="none"),
        sa.Column("billing_interval", sa.String(16), nullable=False, server_default="month"),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("auto_debit", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "status IN ('none','incomplete','trialing','active','past_due','canceled','expired')",
            name="ck_subscriptions_status",
        ),
        sa.CheckConstraint("billing_interval IN ('month','year')", name="ck_subscriptions_interval"),
        sa.CheckConstraint(
            "status <> 'active' OR current_period_end IS NOT NULL",
            name="ck_subscriptions_active_period_end",
        ),
    )
    op.create_index("ix_subscriptions_customer", "subscriptions", ["customer_id"])

    op.create_table(
        "invoices",
        sa.Column("invoice_id", sa.String(64), primary_key=True),
        sa.Column("invoice_number", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("subscription_id", sa.String(256), nullable=True),
        sa.Column("payment_reference", sa.String(256), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(8), nullable=False, server_default="usd"),
        sa.Column("status", sa.String(16), nullable=False, server_default="paid"),
        sa.Column("customer_name", sa.String(256), nullable=True),
        sa.Column("customer_email", sa.String(320), nullable=True),
        sa.Column("pdf_storage_key", sa.String(1024), nullable=True),
        sa.Column("email_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("email_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivery_error", sa.Text(), nullable=True),
        sa.Column("delivery_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("status IN ('paid','pending','failed')", name="ck_invoices_status"),
    )
    op.create_index("ix_invoices_payment_reference", "invoices", ["payment_reference"], unique=True)
    op.create_index("ix_invoices_number", "invoices", ["invoice_number"], unique=True)
    op.create_index("ix_invoices_user_created", "invoices", ["user_id", "created_at"])

    op.create_table(
        "processed_webhook_events",
        sa.Column("event_id", sa.String(256), primary_key=True),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("processed_webhook_events")
    op.drop_index("ix_invoices_user_created")
    op.drop_index("ix_invoices_number")
    op.drop_index("ix_invoices_payment_reference")
    op.drop_table("invoices")
    op.drop_index("ix_subscriptions_customer")
    op.drop_table("subscriptions")
    op.drop_index("ix_billing_customers_stripe_customer")
    op.drop_table("billing_customers")
