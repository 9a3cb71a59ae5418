"""Manual repairs for subscriptions that webhook processing left stuck.

Every operation acts only on the caller's own subscription and is a
no-op returning the current state when the subscription is already
active.  Provider reads and the single bounded wait happen outside the
subscription lock; the local write happens under it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from billing_core.models import (
    SubscriptionStatus,
    fallback_period_end,
    is_entitled,
)
from billing_core.state.locks import SubscriptionLocks
from billing_core.state.repository import SubscriptionRepository
from billing_core.state.tables import SubscriptionTable
from sqlalchemy.ext.asyncio import AsyncSession

from billing_api.services.billing_client import (
    RESOURCE_ALREADY_EXISTS,
    BillingClient,
    expandable_id,
    payment_reference,
    subscription_interval,
    subscription_period_end,
)
from billing_api.services.errors import (
    BillingProviderError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from billing_api.services.reconciler import record_summary
from billing_api.services.side_effects import (
    InvoiceDeliveryJob,
    PaymentOccurrence,
    SideEffectQueue,
    SideEffectTrigger,
    cents_to_amount,
)
from billing_api.services.subscription_service import lock_key, locked_record

logger = logging.getLogger(__name__)

_READY_INTENT_STATUSES = frozenset({"succeeded", "processing", "requires_confirmation"})

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _charge_matches(charge: dict[str, Any], subscription_id: str) -> bool:
    """A successful charge tagged with, linked to, or describing *subscription_id*."""
    if charge.get("status") != "succeeded":
        return False
    return (
        (charge.get("metadata") or {}).get("subscription_id") == subscription_id
        or expandable_id(charge.get("subscription")) == subscription_id
        or subscription_id in (charge.get("description") or "")
    )


def _intent_matches(intent: dict[str, Any], subscription_id: str) -> bool:
    if intent.get("status") != "succeeded":
        return False
    return (intent.get("metadata") or {}).get("subscription_id") == subscription_id or subscription_id in (
        intent.get("description") or ""
    )


def _latest_payment_intent(sub: dict[str, Any]) -> dict[str, Any] | None:
    invoice = sub.get("latest_invoice")
    if not isinstance(invoice, dict):
        return None
    intent = invoice.get("payment_intent")
    return intent if isinstance(intent, dict) else None


def _is_settled(row: SubscriptionTable, now: datetime) -> bool:
    """Locally active with a period that has not ended."""
    return (
        row.status == SubscriptionStatus.ACTIVE.value
        and row.current_period_end is not None
        and row.current_period_end > now
    )


def _activate(row: SubscriptionTable, sub: dict[str, Any], status: SubscriptionStatus, now: datetime) -> None:
    """Write an entitled *status* onto *row* from the provider snapshot *sub*.

    The provider period end is used while it lies in the future.  Otherwise
    an unexpired local period end is kept, and failing that the interval
    fallback applies.  The payment date moves only when the record becomes
    entitled.
    """
    interval = subscription_interval(sub)
    provider_end = subscription_period_end(sub)
    was_entitled = is_entitled(SubscriptionStatus(row.status))

    row.status = status.value
    row.billing_interval = interval.value
    if provider_end is not None and provider_end > now:
        row.current_period_end = provider_end
    elif row.current_period_end is None or row.current_period_end <= now:
        row.current_period_end = fallback_period_end(interval, now)
    if not was_entitled or row.payment_date is None:
        row.payment_date = now


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class RecoveryService:
    """Confirm, fix-status, force-activate and update-payment-method.

    Parameters
    ----------
    session:
        Active database session.
    client:
        Billing provider capability.
    locks:
        Per-subscription lock registry shared with the webhook dispatcher.
    queue:
        Receives invoice deliveries for payments recorded during a repair.
    confirm_wait_seconds:
        Single wait before Confirm re-checks an incomplete subscription.
    payment_method_wait_seconds:
        Single wait before Update-payment-method re-checks an incomplete
        subscription.
    """

    def __init__(
        self,
        session: AsyncSession,
        client: BillingClient,
        locks: SubscriptionLocks,
        queue: SideEffectQueue,
        *,
        confirm_wait_seconds: float = 2.0,
        payment_method_wait_seconds: float = 3.0,
    ) -> None:
        self._session = session
        self._client = client
        self._locks = locks
        self._queue = queue
        self._confirm_wait = confirm_wait_seconds
        self._payment_method_wait = payment_method_wait_seconds
        self._subscriptions = SubscriptionRepository(session)

    async def _require_record(self, user_id: str) -> SubscriptionTable:
        row = await self._subscriptions.load(user_id)
        if row is None or not row.external_id:
            raise SubscriptionNotFoundError("No subscription found")
        return row

    # -- Confirm -------------------------------------------------------------

    async def confirm(self, user_id: str) -> dict[str, Any]:
        """Sync an entitled provider subscription into the local record.

        An ``incomplete`` subscription whose latest payment already
        succeeded is re-checked once after ``confirm_wait_seconds``.

        Raises
        ------
        SubscriptionStateError
            If the subscription is still not active after the wait.
        """
        row = await self._require_record(user_id)
        logger.info("Confirm requested by user=%s for %s", user_id, row.external_id)
        sub = await self._client.retrieve_subscription(row.external_id, expand=["latest_invoice.payment_intent"])
        status = SubscriptionStatus.from_provider(sub.get("status"))

        if status is SubscriptionStatus.INCOMPLETE:
            intent = _latest_payment_intent(sub)
            if intent is not None and intent.get("status") == "succeeded":
                await asyncio.sleep(self._confirm_wait)
                sub = await self._client.retrieve_subscription(row.external_id)
                status = SubscriptionStatus.from_provider(sub.get("status"))

        if not is_entitled(status):
            logger.info("Confirm for %s did not converge: provider status %s", row.external_id, status.value)
            raise SubscriptionStateError("Subscription is not active yet", status=status.value)

        now = datetime.now(UTC)
        async with locked_record(
            self._session,
            self._locks,
            user_id,
            lock_key(user_id, row.external_id),
            external_id=row.external_id,
        ) as row:
            _activate(row, sub, status, now)
        return {"message": "Subscription confirmed and activated", "subscription": record_summary(row)}

    # -- Fix status ----------------------------------------------------------

    async def _find_payment(self, sub: dict[str, Any], customer_id: str) -> dict[str, Any] | None:
        subscription_id = sub["id"]
        charges = await self._client.list_charges(customer_id, limit=10)
        for charge in charges:
            if _charge_matches(charge, subscription_id):
                return charge

        intent = _latest_payment_intent(sub)
        if intent is not None and intent.get("status") == "succeeded":
            # Recorded under the invoice it paid, as the invoice webhook does.
            invoice_id = expandable_id(intent.get("invoice")) or expandable_id(sub.get("latest_invoice"))
            return {**intent, "invoice": invoice_id}

        intents = await self._client.list_payment_intents(customer_id, limit=5)
        for intent in intents:
            if _intent_matches(intent, subscription_id):
                return intent
        return None

    async def fix_status(self, user_id: str) -> dict[str, Any]:
        """Activate the subscription if provider payment history shows it was paid.

        Raises
        ------
        SubscriptionStateError
            If no successful payment for the subscription can be found.
        """
        row = await self._require_record(user_id)
        logger.info("Fix-status requested by user=%s for %s", user_id, row.external_id)
        if _is_settled(row, datetime.now(UTC)):
            return {"message": "Subscription is already active", "subscription": record_summary(row)}

        sub = await self._client.retrieve_subscription(row.external_id, expand=["latest_invoice.payment_intent"])
        provider_status = SubscriptionStatus.from_provider(sub.get("status"))
        customer_id = row.customer_id or expandable_id(sub.get("customer"))
        payment = await self._find_payment(sub, customer_id) if customer_id else None

        if payment is None:
            if not is_entitled(provider_status):
                raise SubscriptionStateError("No successful payment found for this subscription", status=row.status)
            now = datetime.now(UTC)
            async with locked_record(
                self._session,
                self._locks,
                user_id,
                lock_key(user_id, row.external_id),
                external_id=row.external_id,
            ) as row:
                _activate(row, sub, provider_status, now)
            return {"message": "Subscription is already active", "subscription": record_summary(row)}

        logger.info("Found successful payment %s for subscription %s", payment.get("id"), row.external_id)
        sub = await self._client.retrieve_subscription(row.external_id)
        provider_status = SubscriptionStatus.from_provider(sub.get("status"))
        status = provider_status if is_entitled(provider_status) else SubscriptionStatus.ACTIVE

        now = datetime.now(UTC)
        trigger = SideEffectTrigger(self._session)
        async with locked_record(
            self._session,
            self._locks,
            user_id,
            lock_key(user_id, row.external_id),
            external_id=row.external_id,
        ) as row:
            _activate(row, sub, status, now)
            invoice_row, created = await trigger.record_payment(
                PaymentOccurrence(
                    user_id=user_id,
                    subscription_id=row.external_id,
                    payment_reference=payment_reference(payment),
                    amount=cents_to_amount(payment.get("amount_received") or payment.get("amount")),
                    currency=payment.get("currency") or "usd",
                )
            )
        if created:
            self._queue.submit(InvoiceDeliveryJob(invoice_row.invoice_id))
        return {"message": "Subscription activated - payment was successful", "subscription": record_summary(row)}

    # -- Force activate ------------------------------------------------------

    async def force_activate(self, user_id: str) -> dict[str, Any]:
        """Set the subscription active and clear any pending cancellation.

        Clearing the provider's cancel-at-period-end flag is best effort; a
        provider failure there is logged and does not stop the local write.
        """
        row = await self._require_record(user_id)
        logger.warning("Force-activate requested by user=%s for %s", user_id, row.external_id)
        if _is_settled(row, datetime.now(UTC)) and not row.cancel_at_period_end:
            return {
                "message": "Subscription is already active",
                "provider_status": None,
                "subscription": record_summary(row),
            }

        sub = await self._client.retrieve_subscription(row.external_id)
        if sub.get("cancel_at_period_end"):
            try:
                await self._client.update_subscription(row.external_id, cancel_at_period_end=False)
            except BillingProviderError as exc:
                logger.warning("Could not clear provider cancel flag on %s: %s", row.external_id, exc)

        now = datetime.now(UTC)
        async with locked_record(
            self._session,
            self._locks,
            user_id,
            lock_key(user_id, row.external_id),
            external_id=row.external_id,
        ) as row:
            _activate(row, sub, SubscriptionStatus.ACTIVE, now)
            row.cancel_at_period_end = False
            row.auto_debit = True
        return {
            "message": "Subscription force-activated",
            "provider_status": SubscriptionStatus.from_provider(sub.get("status")).value,
            "subscription": record_summary(row),
        }

    # -- Update payment method -----------------------------------------------

    async def _payment_method_from_intent(self, payment_intent_id: str) -> dict[str, Any]:
        intent = await self._client.retrieve_payment_intent(payment_intent_id)
        status = intent.get("status")
        if status == "requires_payment_method":
            raise SubscriptionStateError("Payment intent requires payment method", status=status)
        if status == "canceled":
            raise SubscriptionStateError("Payment intent was canceled", status=status)
        if status not in _READY_INTENT_STATUSES:
            raise SubscriptionStateError("Payment intent is not ready yet", status=status)

        if status == "requires_confirmation":
            try:
                confirmed = await self._client.confirm_payment_intent(payment_intent_id)
            except BillingProviderError as exc:
                logger.warning("Could not confirm payment intent %s: %s", payment_intent_id, exc)
            else:
                if confirmed.get("status") == "succeeded":
                    intent = confirmed
        return intent

    async def _attach(self, payment_method_id: str, customer_id: str) -> None:
        try:
            await self._client.attach_payment_method(payment_method_id, customer_id=customer_id)
        except BillingProviderError as exc:
            if exc.code != RESOURCE_ALREADY_EXISTS:
                logger.warning("Attaching %s to %s failed: %s", payment_method_id, customer_id, exc)
                try:
                    await self._client.update_customer(
                        customer_id, invoice_settings={"default_payment_method": payment_method_id}
                    )
                except BillingProviderError:
                    raise exc from None
                return
        await self._client.update_customer(customer_id, invoice_settings={"default_payment_method": payment_method_id})

    async def _apply_to_subscription(self, external_id: str, payment_method_id: str) -> dict[str, Any]:
        """Make *payment_method_id* the subscription's default, or pay its latest invoice with it."""
        try:
            return await self._client.update_subscription(
                external_id,
                default_payment_method=payment_method_id,
                collection_method="charge_automatically",
            )
        except BillingProviderError as update_error:
            logger.warning("Updating %s with payment method failed; paying latest invoice: %s", external_id, update_error)
            try:
                current = await self._client.retrieve_subscription(external_id, expand=["latest_invoice"])
                invoice = current.get("latest_invoice")
                invoice_id = expandable_id(invoice)
                if not invoice_id:
                    raise update_error
                if isinstance(invoice, dict) and invoice.get("status") == "draft":
                    await self._client.finalize_invoice(invoice_id)
                await self._client.pay_invoice(invoice_id, payment_method=payment_method_id)
                return await self._client.retrieve_subscription(external_id)
            except BillingProviderError as exc:
                if exc is update_error:
                    raise
                logger.error("Paying latest invoice of %s failed: %s", external_id, exc)
                raise update_error from exc

    async def update_payment_method(
        self,
        user_id: str,
        *,
        payment_intent_id: str | None = None,
        payment_method_id: str | None = None,
    ) -> dict[str, Any]:
        """Attach a newly collected payment method and push the subscription to active.

        Raises
        ------
        ValueError
            If neither a payment intent nor a payment method is given.
        SubscriptionStateError
            If the payment intent is not in a usable state or carries no
            payment method.
        """
        if not payment_intent_id and not payment_method_id:
            raise ValueError("Payment intent ID is required")
        row = await self._require_record(user_id)
        logger.info("Update-payment-method requested by user=%s for %s", user_id, row.external_id)
        customer_id = row.customer_id

        if payment_intent_id:
            intent = await self._payment_method_from_intent(payment_intent_id)
            payment_method_id = expandable_id(intent.get("payment_method")) or payment_method_id
            customer_id = customer_id or expandable_id(intent.get("customer"))
        if not payment_method_id:
            raise SubscriptionStateError("Payment intent has no payment method", status=row.status)

        if customer_id:
            await self._attach(payment_method_id, customer_id)
        sub = await self._apply_to_subscription(row.external_id, payment_method_id)
        status = SubscriptionStatus.from_provider(sub.get("status"))

        if status is SubscriptionStatus.INCOMPLETE:
            await asyncio.sleep(self._payment_method_wait)
            refreshed = await self._client.retrieve_subscription(row.external_id)
            refreshed_status = SubscriptionStatus.from_provider(refreshed.get("status"))
            if is_entitled(refreshed_status):
                sub, status = refreshed, refreshed_status

        now = datetime.now(UTC)
        async with locked_record(
            self._session,
            self._locks,
            user_id,
            lock_key(user_id, row.external_id),
            external_id=row.external_id,
        ) as row:
            if is_entitled(status):
                _activate(row, sub, status, now)
            elif not is_entitled(SubscriptionStatus(row.status)):
                row.status = status.value
        logger.info("Payment method updated for %s: provider status %s", row.external_id, status.value)
        return {"message": "Subscription updated with payment method", "subscription": record_summary(row)}
