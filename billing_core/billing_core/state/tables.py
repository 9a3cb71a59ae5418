"""SQLAlchemy 2.0 ORM table definitions for the billing state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that always reads back as UTC.

    PostgreSQL returns aware values already.  SQLite stores no offset, so
    naive values read from it are tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all billing tables."""


# ---------------------------------------------------------------------------
# Billing customers
# ---------------------------------------------------------------------------


class BillingCustomerTable(Base):
    """Mapping between a local user and the provider's customer record.

    The email and display name are copied onto invoices at issue time.
    """

    __tablename__ = "billing_customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    stripe_customer_id: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (Index("ix_billing_customers_stripe_customer", "stripe_customer_id"),)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionTable(Base):
    """One subscription record per user.

    Rows are never deleted: canceled and expired subscriptions keep their
    row with ``status`` reflecting the terminal state.  ``version`` is
    incremented on every flush and checked on update, so a writer holding a
    stale copy of the row fails instead of silently overwriting a newer one.
    """

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    external_id: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    price_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    billing_interval: Mapped[str] = mapped_column(String(16), nullable=False, default="month")
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_debit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    payment_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Provider timestamp of the newest subscription snapshot applied.
    last_event_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "status IN ('none','incomplete','trialing','active','past_due','canceled','expired')",
            name="ck_subscriptions_status",
        ),
        CheckConstraint("billing_interval IN ('month','year')", name="ck_subscriptions_interval"),
        CheckConstraint(
            "status <> 'active' OR current_period_end IS NOT NULL",
            name="ck_subscriptions_active_period_end",
        ),
        Index("ix_subscriptions_customer", "customer_id"),
    )


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class InvoiceTable(Base):
    """Invoice issued for one successful payment occurrence.

    ``payment_reference`` is the provider's reference for the payment (its
    invoice id, or the charge / payment intent id when no invoice is
    linked).  Its unique index is the dedup key that keeps redelivered or
    concurrent events from issuing a second invoice for the same payment.
    Only the delivery columns change after creation.
    """

    __tablename__ = "invoices"

    invoice_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    payment_reference: Mapped[str] = mapped_column(String(256), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="paid")
    customer_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    pdf_storage_key: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    email_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    delivery_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('paid','pending','failed')", name="ck_invoices_status"),
        Index("ix_invoices_payment_reference", "payment_reference", unique=True),
        Index("ix_invoices_number", "invoice_number", unique=True),
        Index("ix_invoices_user_created", "user_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# Processed webhook events
# ---------------------------------------------------------------------------


class ProcessedWebhookEventTable(Base):
    """Provider event ids whose handler has already been applied."""

    __tablename__ = "processed_webhook_events"

    event_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
