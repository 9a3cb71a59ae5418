"""Exactly-once-per-payment side effects.

:class:`SideEffectTrigger` records the invoice for a successful payment
inside the caller's transaction, so the caller can rely on it existing.
The invoice's unique payment reference makes the insert idempotent:
redelivered or concurrent events for the same payment find the existing
row instead of creating another.

Document generation and email delivery run later on
:class:`SideEffectQueue`, an in-process queue drained by one background
worker with its own retry policy.  Callers submit jobs only after their
transaction has committed and their subscription lock is released, and a
delivery failure is recorded on the invoice rather than raised.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal

from billing_core.state.repository import BillingCustomerRepository, InvoiceRepository
from billing_core.state.tables import InvoiceTable
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_api.services.email_service import DeliveryResult, InvoiceEmailSender
from billing_api.services.invoice_service import render_invoice_pdf, store_invoice_pdf

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Trigger
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentOccurrence:
    """One successful payment, identified by the provider's reference."""

    user_id: str
    payment_reference: str
    amount: Decimal
    currency: str = "usd"
    subscription_id: str | None = None


@dataclass(frozen=True)
class InvoiceDeliveryJob:
    """Render, store and email the PDF for one invoice."""

    invoice_id: str


def cents_to_amount(cents: int | None) -> Decimal:
    """Convert a provider minor-unit amount to a two-decimal value."""
    return (Decimal(cents or 0) / 100).quantize(Decimal("0.01"))


class SideEffectTrigger:
    """Record invoices for successful payments in the caller's transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._invoices = InvoiceRepository(session)
        self._customers = BillingCustomerRepository(session)

    async def record_payment(self, occurrence: PaymentOccurrence) -> tuple[InvoiceTable, bool]:
        """Create the invoice for *occurrence* unless it already exists.

        Returns
        -------
        tuple
            ``(invoice, created)``.  Only a ``created`` invoice should be
            submitted for delivery.
        """
        customer = await self._customers.get(occurrence.user_id)
        row, created = await self._invoices.create_if_absent(
            user_id=occurrence.user_id,
            payment_reference=occurrence.payment_reference,
            amount=occurrence.amount,
            currency=occurrence.currency,
            subscription_id=occurrence.subscription_id,
            customer_name=customer.name if customer is not None else None,
            customer_email=customer.email if customer is not None else None,
        )
        if created:
            logger.info(
                "Recorded invoice %s for payment %s (user=%s, %s %s)",
                row.invoice_number,
                occurrence.payment_reference,
                occurrence.user_id,
                occurrence.amount,
                occurrence.currency.upper(),
            )
        else:
            logger.info(
                "Invoice for payment %s already recorded as %s; skipping",
                occurrence.payment_reference,
                row.invoice_number,
            )
        return row, created


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


class SideEffectQueue:
    """Background delivery of invoice documents.

    Parameters
    ----------
    session_factory:
        Factory for the sessions each job opens.
    email_sender:
        Delivers the rendered PDF.
    storage_path:
        Root directory for stored PDFs.
    max_attempts:
        Delivery attempts per job before giving up.
    backoff_seconds:
        Base of the exponential backoff between attempts (1x, 2x, 4x, ...).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        email_sender: InvoiceEmailSender,
        *,
        storage_path: str,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
    ) -> None:
        self._session_factory = session_factory
        self._email_sender = email_sender
        self._storage_path = storage_path
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._queue: asyncio.Queue[InvoiceDeliveryJob] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    # -- Lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Launch the worker coroutine."""
        if self._worker is not None:
            return
        self._worker = asyncio.ensure_future(self._run())
        logger.info("Side-effect worker started")

    async def stop(self) -> None:
        """Cancel the worker and wait for it to finish.  Pending jobs are dropped."""
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        if self._queue.qsize():
            logger.warning("Side-effect worker stopped with %d job(s) pending", self._queue.qsize())

    @property
    def running(self) -> bool:
        return self._worker is not None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # -- Core API ------------------------------------------------------------

    def submit(self, job: InvoiceDeliveryJob) -> None:
        """Queue *job* without waiting for it."""
        self._queue.put_nowait(job)
        logger.debug("Queued delivery for invoice %s", job.invoice_id)

    async def join(self) -> None:
        """Wait until every submitted job has been processed."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self.deliver(job)
            except Exception:
                logger.exception("Delivery job for invoice %s failed", job.invoice_id)
            finally:
                self._queue.task_done()

    async def deliver(self, job: InvoiceDeliveryJob) -> DeliveryResult:
        """Render, store and email one invoice, recording the outcome on it."""
        async with self._session_factory() as session:
            repo = InvoiceRepository(session)
            row = await repo.get(job.invoice_id)
            if row is None:
                logger.warning("Delivery skipped: invoice %s not found", job.invoice_id)
                return DeliveryResult(success=False, error="Invoice not found", retryable=False)

            pdf_bytes = await asyncio.to_thread(render_invoice_pdf, row)
            if not row.pdf_storage_key:
                try:
                    key = await asyncio.to_thread(store_invoice_pdf, self._storage_path, row, pdf_bytes)
                except (OSError, ValueError) as exc:
                    logger.warning("Could not store PDF for invoice %s: %s", row.invoice_id, exc)
                else:
                    await repo.update_pdf_key(row.invoice_id, key)

            result = DeliveryResult(success=False, error="not attempted")
            attempt = 0
            for attempt in range(1, self._max_attempts + 1):
                result = await self._email_sender.send_invoice(
                    to_email=row.customer_email,
                    customer_name=row.customer_name,
                    invoice_number=row.invoice_number,
                    amount=row.amount,
                    currency=row.currency,
                    pdf_bytes=pdf_bytes,
                )
                if result.success or not result.retryable:
                    break
                logger.warning(
                    "Invoice %s delivery failed attempt=%d/%d: %s",
                    row.invoice_number,
                    attempt,
                    self._max_attempts,
                    result.error,
                )
                if attempt < self._max_attempts:
                    await asyncio.sleep(self._backoff_seconds * (2 ** (attempt - 1)))

            if not result.success and result.retryable:
                logger.error(
                    "Invoice %s delivery exhausted retries: %s",
                    row.invoice_number,
                    result.error,
                )

            await repo.record_delivery(row.invoice_id, sent=result.success, error=result.error, attempts=attempt)
            await session.commit()
            return result
