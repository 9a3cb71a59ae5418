"""Read-side merge of the local subscription record with the provider's.

The reconciler never writes.  A failed provider lookup propagates to the
caller as a service error instead of falling back to the cached record,
so a caller is never told it is entitled on the strength of stale data.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from billing_core.models import (
    BillingInterval,
    SubscriptionStatus,
    compute_countdown,
    is_entitled,
    reconcile_status,
)
from billing_core.models.subscription import days_remaining
from billing_core.state.repository import SubscriptionRepository
from billing_core.state.tables import SubscriptionTable
from sqlalchemy.ext.asyncio import AsyncSession

from billing_api.services.billing_client import (
    RESOURCE_MISSING,
    BillingClient,
    from_timestamp,
    subscription_interval,
    subscription_period_end,
    subscription_price_id,
)
from billing_api.services.errors import BillingProviderError, SubscriptionNotFoundError

logger = logging.getLogger(__name__)


def record_summary(row: SubscriptionTable) -> dict[str, Any]:
    """Local view of a subscription record."""
    status = SubscriptionStatus(row.status)
    return {
        "id": row.external_id,
        "status": status.value,
        "is_active": is_entitled(status),
        "current_period_end": row.current_period_end,
        "cancel_at_period_end": row.cancel_at_period_end,
        "interval": row.billing_interval,
        "auto_debit": row.auto_debit,
        "payment_date": row.payment_date,
    }


_STATUS_MESSAGES: dict[SubscriptionStatus, str] = {
    SubscriptionStatus.NONE: "No subscription found",
    SubscriptionStatus.INCOMPLETE: "Subscription is awaiting its first payment",
    SubscriptionStatus.TRIALING: "Subscription is in its trial period",
    SubscriptionStatus.ACTIVE: "Subscription is active",
    SubscriptionStatus.PAST_DUE: "Subscription payment is past due",
    SubscriptionStatus.CANCELED: "Subscription has been canceled",
    SubscriptionStatus.EXPIRED: "Subscription has expired",
}


def envelope(subscription: dict[str, Any], message: str | None = None) -> dict[str, Any]:
    """Top-level ``status``, ``is_active`` and ``message`` for a subscription view.

    Without *message* the text describes the status.
    """
    status = SubscriptionStatus(subscription["status"])
    return {
        "status": status.value,
        "is_active": subscription["is_active"],
        "message": message or _STATUS_MESSAGES[status],
    }


class StatusReconciler:
    """Merge local and provider views of the caller's subscription.

    Parameters
    ----------
    session:
        Active database session.
    client:
        Billing provider capability.
    """

    def __init__(self, session: AsyncSession, client: BillingClient) -> None:
        self._repo = SubscriptionRepository(session)
        self._client = client

    async def _fetch_provider(self, external_id: str) -> dict[str, Any]:
        try:
            return await self._client.retrieve_subscription(external_id)
        except BillingProviderError as exc:
            if exc.code == RESOURCE_MISSING:
                raise SubscriptionNotFoundError("Subscription not found at the billing provider") from exc
            raise

    async def _require_record(self, user_id: str) -> SubscriptionTable:
        row = await self._repo.load(user_id)
        if row is None or not row.external_id:
            raise SubscriptionNotFoundError("No subscription found")
        return row

    async def get_status(self, user_id: str, *, now: datetime | None = None) -> dict[str, Any]:
        """Return the reconciled status of *user_id*'s subscription.

        A user who never started a checkout is reported with status
        ``none``, which callers can tell apart from an ended subscription.
        """
        now = now or datetime.now(UTC)
        row = await self._repo.load(user_id)
        if row is None or not row.external_id:
            return {
                "id": None,
                "status": SubscriptionStatus.NONE.value,
                "is_active": False,
                "current_period_end": None,
                "cancel_at_period_end": False,
                "interval": row.billing_interval if row is not None else BillingInterval.MONTH.value,
            }

        sub = await self._fetch_provider(row.external_id)
        provider_status = SubscriptionStatus.from_provider(sub.get("status"))
        merged = reconcile_status(
            local_status=SubscriptionStatus(row.status),
            local_period_end=row.current_period_end,
            local_interval=BillingInterval.parse(row.billing_interval) if row.billing_interval else None,
            provider_status=provider_status,
            provider_period_end=subscription_period_end(sub),
            provider_interval=subscription_interval(sub),
            provider_cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
            now=now,
        )
        if merged.status.value != row.status:
            logger.info(
                "Status for user=%s reconciled: local=%s provider=%s reported=%s",
                user_id,
                row.status,
                provider_status.value,
                merged.status.value,
            )
        return {
            "id": row.external_id,
            "status": merged.status.value,
            "is_active": merged.is_active,
            "current_period_end": merged.current_period_end,
            "cancel_at_period_end": merged.cancel_at_period_end,
            "interval": merged.interval.value,
            "plan": subscription_price_id(sub) or row.price_id,
            "payment_date": row.payment_date,
            "current_period_start": from_timestamp(sub.get("current_period_start")),
        }

    async def get_details(self, user_id: str, *, now: datetime | None = None) -> dict[str, Any]:
        """Countdown view of the current paid period plus raw provider fields.

        Raises
        ------
        SubscriptionNotFoundError
            If the user has no subscription with a provider id.
        """
        now = now or datetime.now(UTC)
        row = await self._require_record(user_id)
        sub = await self._fetch_provider(row.external_id)

        interval = subscription_interval(sub)
        provider_status = SubscriptionStatus.from_provider(sub.get("status"))
        period_end = subscription_period_end(sub) or row.current_period_end
        countdown = compute_countdown(period_end, interval, now)
        return {
            "subscription": {
                "id": sub.get("id", row.external_id),
                "status": provider_status.value,
                "is_active": is_entitled(provider_status),
                "current_period_start": from_timestamp(sub.get("current_period_start")),
                "current_period_end": period_end,
                "cancel_at_period_end": bool(sub.get("cancel_at_period_end")),
                "plan": subscription_price_id(sub),
                "interval": interval.value,
            },
            "payment_info": {
                "payment_date": row.payment_date,
                "expiry_date": countdown.expiry_date,
                "remaining_days": countdown.remaining_days,
                "validity_days": countdown.validity_days,
                "validity_status": countdown.validity_status.value,
                "interval": interval.value,
            },
        }

    async def get_debug(self, user_id: str, *, now: datetime | None = None) -> dict[str, Any]:
        """Raw local record plus computed expiry fields.  No provider call."""
        now = now or datetime.now(UTC)
        row = await self._repo.load(user_id)
        if row is None:
            raise SubscriptionNotFoundError("No subscription record found")

        is_expired = False
        remaining = 0
        if row.current_period_end is not None:
            remaining = days_remaining(row.current_period_end, now)
            is_expired = now > row.current_period_end
        return {
            "user_id": row.user_id,
            "subscription": {
                **record_summary(row),
                "customer_id": row.customer_id,
                "price_id": row.price_id,
                "last_event_at": row.last_event_at,
                "version": row.version,
            },
            "calculated": {
                "is_expired": is_expired,
                "days_remaining": remaining,
                "should_be_active": row.status == SubscriptionStatus.ACTIVE.value and not is_expired,
            },
            "timestamp": now,
        }
