"""Repository classes providing access to the billing state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from billing_core.state.tables import (
    BillingCustomerTable,
    InvoiceTable,
    ProcessedWebhookEventTable,
    SubscriptionTable,
)

logger = logging.getLogger(__name__)


class StaleSubscriptionError(RuntimeError):
    """Raised when a subscription row changed between load and save."""


def _escape_like(value: str) -> str:
    """Escape SQL LIKE metacharacters so they are treated as literal characters."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique index used for conflict detection.

    Returns
    -------
    The execution result from ``session.execute()``.  Its ``rowcount`` is
    ``1`` when the row was inserted and ``0`` when it already existed.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# BillingCustomerRepository
# ---------------------------------------------------------------------------


class BillingCustomerRepository:
    """Lookup and upsert of the user-to-provider-customer mapping."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, user_id: str) -> BillingCustomerTable | None:
        """Return the customer mapping for *user_id*, if any."""
        stmt = select(BillingCustomerTable).where(BillingCustomerTable.user_id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_stripe_customer(self, stripe_customer_id: str) -> BillingCustomerTable | None:
        """Return the mapping that points at *stripe_customer_id*, if any."""
        stmt = select(BillingCustomerTable).where(BillingCustomerTable.stripe_customer_id == stripe_customer_id)
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def upsert(
        self,
        user_id: str,
        stripe_customer_id: str,
        *,
        email: str | None = None,
        name: str | None = None,
    ) -> BillingCustomerTable:
        """Create or update the mapping for *user_id*."""
        row = await self.get(user_id)
        if row is None:
            row = BillingCustomerTable(
                user_id=user_id,
                stripe_customer_id=stripe_customer_id,
                email=email,
                name=name,
            )
            self._session.add(row)
        else:
            row.stripe_customer_id = stripe_customer_id
            if email is not None:
                row.email = email
            if name is not None:
                row.name = name
        await self._session.flush()
        return row


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Whole-record access to the ``subscriptions`` table.

    There is no partial-field update: callers load the record, change
    fields on it, and pass it back to :meth:`save`.  Concurrent writers for
    the same subscription are serialised by
    :class:`~billing_core.state.locks.SubscriptionLocks`; the version
    column turns any writer that slipped past the lock into a
    :class:`StaleSubscriptionError` instead of a lost update.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def load(self, user_id: str) -> SubscriptionTable | None:
        """Return the subscription owned by *user_id*, if any."""
        stmt = select(SubscriptionTable).where(SubscriptionTable.user_id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def load_by_external_id(self, external_id: str) -> SubscriptionTable | None:
        """Return the subscription with the provider id *external_id*, if any."""
        stmt = select(SubscriptionTable).where(SubscriptionTable.external_id == external_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def load_by_customer(self, customer_id: str) -> SubscriptionTable | None:
        """Return the subscription billed to the provider customer *customer_id*."""
        stmt = (
            select(SubscriptionTable)
            .where(SubscriptionTable.customer_id == customer_id)
            .order_by(SubscriptionTable.updated_at.desc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def load_for_update(
        self,
        *,
        user_id: str | None = None,
        external_id: str | None = None,
    ) -> SubscriptionTable | None:
        """Load a subscription and take a row lock for the current transaction.

        The row lock is a no-op on SQLite, whose single-writer semantics
        already serialise the transaction.
        """
        if (user_id is None) == (external_id is None):
            raise ValueError("Exactly one of user_id or external_id is required")
        stmt = select(SubscriptionTable)
        if user_id is not None:
            stmt = stmt.where(SubscriptionTable.user_id == user_id)
        else:
            stmt = stmt.where(SubscriptionTable.external_id == external_id)
        # populate_existing overwrites any copy already in the identity map.
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, user_id: str, *, customer_id: str | None = None) -> SubscriptionTable:
        """Insert the initial record for *user_id* with status ``none``."""
        row = SubscriptionTable(
            user_id=user_id,
            customer_id=customer_id,
            status="none",
            billing_interval="month",
            cancel_at_period_end=False,
            auto_debit=True,
        )
        self._session.add(row)
        await self._session.flush()
        logger.info("Created subscription record for user=%s", user_id)
        return row

    async def save(self, row: SubscriptionTable) -> SubscriptionTable:
        """Persist the whole record.

        Raises
        ------
        StaleSubscriptionError
            If another writer saved the same row after it was loaded.
        """
        self._session.add(row)
        try:
            await self._session.flush()
        except StaleDataError as exc:
            logger.warning("Stale write rejected for subscription user=%s", row.user_id)
            raise StaleSubscriptionError(f"Subscription for user {row.user_id} was modified concurrently") from exc
        return row


# ---------------------------------------------------------------------------
# InvoiceRepository
# ---------------------------------------------------------------------------


class InvoiceRepository:
    """CRUD operations for the ``invoices`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_if_absent(
        self,
        *,
        user_id: str,
        payment_reference: str,
        amount: Decimal,
        currency: str = "usd",
        subscription_id: str | None = None,
        customer_name: str | None = None,
        customer_email: str | None = None,
    ) -> tuple[InvoiceTable, bool]:
        """Insert an invoice for *payment_reference* unless one already exists.

        Returns
        -------
        tuple
            ``(row, created)`` where *created* is ``False`` when an invoice
            for the same payment reference was already on record.
        """
        existing = await self.get_by_payment_reference(payment_reference)
        if existing is not None:
            return existing, False

        invoice_id = uuid.uuid4().hex
        values: dict[str, Any] = {
            "invoice_id": invoice_id,
            "invoice_number": await self.get_next_invoice_number(),
            "user_id": user_id,
            "subscription_id": subscription_id,
            "payment_reference": payment_reference,
            "amount": amount,
            "currency": currency,
            "status": "paid",
            "customer_name": customer_name,
            "customer_email": customer_email,
            "email_sent": False,
            "delivery_attempts": 0,
            "created_at": datetime.now(UTC),
        }
        result = await _dialect_insert_nothing(self._session, InvoiceTable, values, ["payment_reference"])
        await self._session.flush()

        row = await self.get_by_payment_reference(payment_reference)
        if row is None:
            raise RuntimeError(f"Invoice for payment {payment_reference} vanished after insert")
        created = bool(result.rowcount)  # type: ignore[attr-defined]
        return row, created

    async def get(self, invoice_id: str, *, user_id: str | None = None) -> InvoiceTable | None:
        """Fetch a single invoice, optionally restricted to its owner."""
        stmt = select(InvoiceTable).where(InvoiceTable.invoice_id == invoice_id)
        if user_id is not None:
            stmt = stmt.where(InvoiceTable.user_id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_payment_reference(self, payment_reference: str) -> InvoiceTable | None:
        """Fetch the invoice issued for *payment_reference*, if any."""
        stmt = select(InvoiceTable).where(InvoiceTable.payment_reference == payment_reference)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[InvoiceTable], int]:
        """List invoices owned by *user_id*, newest first.

        Returns
        -------
        tuple
            ``(rows, total_count)`` for pagination support.
        """
        count_r = await self._session.execute(
            select(func.count()).select_from(InvoiceTable).where(InvoiceTable.user_id == user_id)
        )
        total = count_r.scalar_one()

        stmt = (
            select(InvoiceTable)
            .where(InvoiceTable.user_id == user_id)
            .order_by(InvoiceTable.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total

    async def list_recent(self, limit: int = 100) -> list[InvoiceTable]:
        """List the newest invoices across all users."""
        stmt = select(InvoiceTable).order_by(InvoiceTable.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update_pdf_key(self, invoice_id: str, key: str) -> bool:
        """Set the PDF storage key for an invoice.  Returns True if updated."""
        stmt = update(InvoiceTable).where(InvoiceTable.invoice_id == invoice_id).values(pdf_storage_key=key)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def record_delivery(
        self,
        invoice_id: str,
        *,
        sent: bool,
        error: str | None = None,
        attempts: int = 1,
    ) -> bool:
        """Record the outcome of an email delivery attempt.

        A successful delivery sets ``email_sent`` and ``email_sent_at`` and
        clears any earlier error.  A failure leaves ``email_sent`` false
        and stores the error text.
        """
        values: dict[str, Any] = {
            "delivery_attempts": InvoiceTable.delivery_attempts + attempts,
        }
        if sent:
            values.update(email_sent=True, email_sent_at=datetime.now(UTC), delivery_error=None)
        else:
            values.update(email_sent=False, delivery_error=(error or "unknown error")[:2000])
        stmt = update(InvoiceTable).where(InvoiceTable.invoice_id == invoice_id).values(**values)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def get_next_invoice_number(self) -> str:
        """Generate the next sequential invoice number.

        Format: ``INV-YYYYMM-XXXX`` where XXXX is a zero-padded sequence
        number for the current month.

        Acquires an advisory lock (PostgreSQL) before the COUNT query to
        prevent two concurrent requests from generating the same number.
        """
        if "postgresql" in _dialect_name(self._session):
            lock_id = hash("invoice_number") & 0x7FFFFFFF
            await self._session.execute(
                text("SELECT pg_advisory_xact_lock(:id)"),
                {"id": lock_id},
            )

        now = datetime.now(UTC)
        prefix = f"INV-{now.strftime('%Y%m')}-"
        stmt = (
            select(func.count())
            .select_from(InvoiceTable)
            .where(InvoiceTable.invoice_number.like(f"{_escape_like(prefix)}%", escape="\\"))
        )
        result = await self._session.execute(stmt)
        count = result.scalar_one()
        return f"{prefix}{count + 1:04d}"


# ---------------------------------------------------------------------------
# WebhookEventRepository
# ---------------------------------------------------------------------------


class WebhookEventRepository:
    """Ledger of provider webhook events already applied."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def mark_processed(self, event_id: str, event_type: str) -> bool:
        """Record *event_id* as processed.

        Returns ``False`` when the event was already recorded, meaning the
        current delivery is a redelivery.  The record shares the caller's
        transaction, so a handler failure that rolls back also forgets it.
        """
        result = await _dialect_insert_nothing(
            self._session,
            ProcessedWebhookEventTable,
            {"event_id": event_id, "event_type": event_type, "processed_at": datetime.now(UTC)},
            ["event_id"],
        )
        await self._session.flush()
        return bool(result.rowcount)  # type: ignore[attr-defined]

    async def is_processed(self, event_id: str) -> bool:
        """Return ``True`` if *event_id* has been recorded."""
        stmt = select(ProcessedWebhookEventTable.event_id).where(ProcessedWebhookEventTable.event_id == event_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None
