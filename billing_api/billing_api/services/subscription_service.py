"""Caller-driven subscription lifecycle: create, cancel, resume, auto-debit.

Provider calls are made before the subscription lock is taken.  The local
write then happens under the lock on a freshly re-read record, so it
cannot interleave with a webhook handler for the same subscription.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from billing_core.models import BillingInterval, SubscriptionStatus, is_entitled
from billing_core.state.locks import SubscriptionLocks
from billing_core.state.repository import (
    BillingCustomerRepository,
    StaleSubscriptionError,
    SubscriptionRepository,
)
from billing_core.state.tables import SubscriptionTable
from sqlalchemy.ext.asyncio import AsyncSession

from billing_api.config import APISettings
from billing_api.services.billing_client import (
    RESOURCE_MISSING,
    BillingClient,
    expandable_id,
    subscription_interval,
    subscription_period_end,
    subscription_price_id,
)
from billing_api.services.errors import (
    BillingProviderError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from billing_api.services.reconciler import envelope, record_summary

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Locked read-modify-write
# ---------------------------------------------------------------------------


def lock_key(user_id: str, external_id: str | None) -> str:
    """Lock key for a record: its provider id, or the owner before it has one."""
    return external_id or f"user:{user_id}"


@asynccontextmanager
async def locked_record(
    session: AsyncSession,
    locks: SubscriptionLocks,
    user_id: str,
    key: str,
    *,
    create_missing: bool = False,
    external_id: str | None = None,
) -> AsyncIterator[SubscriptionTable]:
    """Hold *key*'s lock around a fresh read, the caller's changes, and the commit.

    The record is re-read under the lock, so changes are applied to the
    latest saved state.  The transaction commits before the lock is
    released and rolls back if the block raises.

    Raises
    ------
    SubscriptionNotFoundError
        If *user_id* has no record and *create_missing* is false.
    StaleSubscriptionError
        If *external_id* is given and the re-read record now tracks a
        different provider subscription, whose lock is not held.
    """
    async with locks.hold(key):
        repo = SubscriptionRepository(session)
        try:
            row = await repo.load_for_update(user_id=user_id)
            if row is None:
                if not create_missing:
                    raise SubscriptionNotFoundError("No subscription found")
                row = await repo.create(user_id)
            if external_id is not None and row.external_id != external_id:
                raise StaleSubscriptionError(
                    f"Subscription for user {user_id} moved from {external_id} to {row.external_id}"
                )
            yield row
            await repo.save(row)
            await session.commit()
        except BaseException:
            await session.rollback()
            raise


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def _invoice_client_secret(invoice: Any) -> str | None:
    """Client secret carried by an expanded invoice, if any."""
    if not isinstance(invoice, dict):
        return None
    secret = (invoice.get("confirmation_secret") or {}).get("client_secret")
    if secret:
        return secret
    intent = invoice.get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("client_secret")
    return None


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class SubscriptionService:
    """Lifecycle operations on the caller's own subscription.

    Parameters
    ----------
    session:
        Active database session.
    client:
        Billing provider capability.
    locks:
        Per-subscription lock registry shared with the webhook dispatcher.
    settings:
        Supplies the default price per billing interval.
    """

    def __init__(
        self,
        session: AsyncSession,
        client: BillingClient,
        locks: SubscriptionLocks,
        settings: APISettings,
    ) -> None:
        self._session = session
        self._client = client
        self._locks = locks
        self._settings = settings
        self._subscriptions = SubscriptionRepository(session)
        self._customers = BillingCustomerRepository(session)

    async def _require_record(self, user_id: str) -> SubscriptionTable:
        row = await self._subscriptions.load(user_id)
        if row is None or not row.external_id:
            raise SubscriptionNotFoundError("No subscription found")
        return row

    # -- Customer ------------------------------------------------------------

    async def ensure_customer(self, user_id: str, *, email: str | None, name: str | None) -> str:
        """Return a provider customer id for *user_id* that the provider still knows.

        A stored id the provider reports missing or deleted is replaced by a
        newly created customer.
        """
        mapping = await self._customers.get(user_id)
        if mapping is not None:
            try:
                customer = await self._client.retrieve_customer(mapping.stripe_customer_id)
            except BillingProviderError as exc:
                if exc.code != RESOURCE_MISSING:
                    raise
                customer = {"deleted": True}
            if not customer.get("deleted"):
                await self._customers.upsert(user_id, mapping.stripe_customer_id, email=email, name=name)
                return mapping.stripe_customer_id
            logger.warning(
                "Stored customer %s for user=%s no longer exists; creating a new one",
                mapping.stripe_customer_id,
                user_id,
            )

        customer = await self._client.create_customer(email=email, name=name, metadata={"user_id": user_id})
        await self._customers.upsert(user_id, customer["id"], email=email, name=name)
        logger.info("Created provider customer %s for user=%s", customer["id"], user_id)
        return customer["id"]

    # -- Create --------------------------------------------------------------

    def _resolve_price(self, price_id: str | None, interval: str | None) -> str:
        if price_id:
            return price_id
        if BillingInterval.parse(interval) is BillingInterval.YEAR:
            resolved = self._settings.stripe_price_id_yearly
        else:
            resolved = self._settings.stripe_price_id_monthly
        if not resolved:
            raise ValueError("Stripe price ID missing")
        return resolved

    async def _client_secret(self, sub: dict[str, Any], customer_id: str, user_id: str) -> str:
        """Find a client secret for the first payment of *sub*.

        Tries the expanded latest invoice, the invoice retrieved on its own,
        the invoice after finalizing a draft, and finally a standalone
        payment intent tagged with the subscription id.
        """
        invoice = sub.get("latest_invoice")
        secret = _invoice_client_secret(invoice)
        if secret:
            return secret

        invoice_id = expandable_id(invoice)
        if not invoice_id:
            raise BillingProviderError("Subscription has no invoice to collect payment for")

        expand = ["payment_intent", "confirmation_secret"]
        invoice = await self._client.retrieve_invoice(invoice_id, expand=expand)
        secret = _invoice_client_secret(invoice)
        if secret:
            return secret

        if invoice.get("status") == "draft":
            try:
                invoice = await self._client.finalize_invoice(invoice_id, expand=expand)
            except BillingProviderError as exc:
                logger.warning("Could not finalize invoice %s: %s", invoice_id, exc)
            else:
                secret = _invoice_client_secret(invoice)
                if secret:
                    return secret

        logger.info("Creating standalone payment intent for subscription %s", sub["id"])
        intent = await self._client.create_payment_intent(
            amount=int(invoice.get("amount_due") or 0),
            currency=invoice.get("currency") or "usd",
            customer_id=customer_id,
            metadata={"subscription_id": sub["id"], "invoice_id": invoice_id, "user_id": user_id},
        )
        secret = intent.get("client_secret")
        if not secret:
            raise BillingProviderError("Failed to retrieve or create payment intent")
        return secret

    async def create(
        self,
        user_id: str,
        *,
        price_id: str | None = None,
        interval: str | None = None,
        email: str | None = None,
        name: str | None = None,
    ) -> dict[str, Any]:
        """Start a checkout and return the client secret for its first payment.

        Raises
        ------
        ValueError
            If no price is given and none is configured for the interval.
        SubscriptionStateError
            If the user already holds an entitled subscription that has not
            reached its period end.
        """
        resolved_price = self._resolve_price(price_id, interval)
        existing = await self._subscriptions.load(user_id)
        now = datetime.now(UTC)
        if (
            existing is not None
            and is_entitled(SubscriptionStatus(existing.status))
            and existing.current_period_end is not None
            and existing.current_period_end > now
        ):
            raise SubscriptionStateError("Subscription is already active", status=existing.status)

        customer_id = await self.ensure_customer(user_id, email=email, name=name)
        # The mapping must be visible to webhook handlers that arrive first.
        await self._session.commit()

        sub = await self._client.create_subscription(
            customer_id=customer_id,
            price_id=resolved_price,
            metadata={"user_id": user_id},
        )
        logger.info("Created subscription %s for user=%s (status=%s)", sub["id"], user_id, sub.get("status"))
        secret = await self._client_secret(sub, customer_id, user_id)

        async with locked_record(
            self._session, self._locks, user_id, lock_key(user_id, sub["id"]), create_missing=True
        ) as row:
            if row.external_id != sub["id"]:
                row.external_id = sub["id"]
                row.status = SubscriptionStatus.from_provider(sub.get("status")).value
                row.current_period_end = subscription_period_end(sub)
                row.cancel_at_period_end = False
                row.auto_debit = True
            row.customer_id = customer_id
            row.billing_interval = subscription_interval(sub).value
            row.price_id = subscription_price_id(sub) or resolved_price

        return {
            **envelope(record_summary(row), "Subscription created; confirm the first payment with the client secret"),
            "client_secret": secret,
            "subscription_id": sub["id"],
        }

    async def create_setup_intent(self, user_id: str, *, email: str | None, name: str | None) -> dict[str, Any]:
        """Client secret for collecting a payment method for off-session use.

        The envelope reports the caller's current subscription status.
        """
        customer_id = await self.ensure_customer(user_id, email=email, name=name)
        intent = await self._client.create_setup_intent(customer_id=customer_id, metadata={"user_id": user_id})
        logger.info("Created setup intent %s for user=%s", intent.get("id"), user_id)
        row = await self._subscriptions.load(user_id)
        current = (
            record_summary(row)
            if row is not None
            else {"status": SubscriptionStatus.NONE.value, "is_active": False}
        )
        return {**envelope(current, "Setup intent created"), "client_secret": intent.get("client_secret")}

    # -- Cancel / resume / auto-debit ----------------------------------------

    async def cancel(self, user_id: str) -> dict[str, Any]:
        """Cancel at period end.  Access continues until the period ends."""
        row = await self._require_record(user_id)
        sub = await self._client.retrieve_subscription(row.external_id)
        if SubscriptionStatus.from_provider(sub.get("status")) is SubscriptionStatus.CANCELED:
            raise SubscriptionStateError("Subscription is already canceled", status=SubscriptionStatus.CANCELED.value)

        if sub.get("cancel_at_period_end"):
            message = "Subscription is already set to cancel at the end of the current billing period"
        else:
            try:
                sub = await self._client.update_subscription(row.external_id, cancel_at_period_end=True)
            except BillingProviderError as exc:
                if "canceled subscription" in str(exc).lower():
                    raise SubscriptionStateError(
                        "Subscription is already canceled", status=SubscriptionStatus.CANCELED.value
                    ) from exc
                raise
            message = "Subscription will be cancelled at the end of the current billing period"
            logger.info("Subscription %s set to cancel at period end (user=%s)", row.external_id, user_id)

        async with locked_record(
            self._session,
            self._locks,
            user_id,
            lock_key(user_id, row.external_id),
            external_id=row.external_id,
        ) as row:
            row.cancel_at_period_end = True
            row.auto_debit = False
        return {"message": message, "subscription": record_summary(row)}

    async def resume(self, user_id: str) -> dict[str, Any]:
        """Undo a pending cancel-at-period-end."""
        row = await self._require_record(user_id)
        sub = await self._client.retrieve_subscription(row.external_id)
        if SubscriptionStatus.from_provider(sub.get("status")) is SubscriptionStatus.CANCELED:
            raise SubscriptionStateError(
                "A canceled subscription cannot be resumed", status=SubscriptionStatus.CANCELED.value
            )

        if sub.get("cancel_at_period_end"):
            await self._client.update_subscription(row.external_id, cancel_at_period_end=False)
            message = "Subscription resumed"
            logger.info("Subscription %s resumed (user=%s)", row.external_id, user_id)
        else:
            message = "Subscription is already active"

        async with locked_record(
            self._session,
            self._locks,
            user_id,
            lock_key(user_id, row.external_id),
            external_id=row.external_id,
        ) as row:
            row.cancel_at_period_end = False
            row.auto_debit = True
        return {"message": message, "subscription": record_summary(row)}

    async def set_auto_debit(self, user_id: str, enabled: bool) -> dict[str, Any]:
        """Store the auto-debit preference and mirror it on the provider.

        Turning auto-debit off means cancelling at period end.
        """
        existing = await self._subscriptions.load(user_id)
        external_id = existing.external_id if existing is not None else None
        if external_id:
            await self._client.update_subscription(external_id, cancel_at_period_end=not enabled)
            logger.info(
                "Auto-debit %s for subscription %s",
                "enabled" if enabled else "disabled",
                external_id,
            )

        async with locked_record(
            self._session, self._locks, user_id, lock_key(user_id, external_id), create_missing=True
        ) as row:
            row.auto_debit = enabled
            if external_id:
                row.cancel_at_period_end = not enabled
        return {
            "message": "Auto-debit preference updated",
            "auto_debit": enabled,
            "subscription_updated": bool(external_id),
            "subscription": record_summary(row),
        }
