"""Subscription domain model and reconciliation rules.

The local store and the billing provider each hold a view of the same
subscription.  The functions in this module merge those two views into the
single value reported to callers.  They are pure: every input, including the
current time, is passed in explicitly so the rules can be exercised without
a database or a provider connection.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field

_SECONDS_PER_DAY = 86_400

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SubscriptionStatus(str, Enum):
    """Lifecycle status of a subscription as reported to callers.

    ``EXPIRED`` is derived locally and is never reported by the provider.
    ``NONE`` means the user has never started a checkout.
    """

    NONE = "none"
    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @classmethod
    def from_provider(cls, raw: str | None) -> SubscriptionStatus:
        """Map a provider status string onto the local status set.

        Provider statuses without a local counterpart collapse onto the
        closest non-entitled status.
        """
        if not raw:
            return cls.INCOMPLETE
        mapped = _PROVIDER_STATUS_ALIASES.get(raw)
        if mapped is not None:
            return mapped
        try:
            status = cls(raw)
        except ValueError:
            return cls.INCOMPLETE
        if status in (cls.NONE, cls.EXPIRED):
            # Neither value is ever reported by the provider.
            return cls.INCOMPLETE
        return status


_PROVIDER_STATUS_ALIASES: dict[str, SubscriptionStatus] = {
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.INCOMPLETE,
}

ENTITLED_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}
)

TERMINAL_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED}
)


class BillingInterval(str, Enum):
    """Billing cadence; drives the fallback period length."""

    MONTH = "month"
    YEAR = "year"

    @classmethod
    def parse(cls, raw: str | None) -> BillingInterval:
        """Return ``YEAR`` for ``"year"`` and ``MONTH`` for anything else."""
        if raw == cls.YEAR.value:
            return cls.YEAR
        return cls.MONTH

    @property
    def validity_days(self) -> int:
        """Length of one paid period when the provider supplies no end date."""
        return 365 if self is BillingInterval.YEAR else 30


class ValidityStatus(str, Enum):
    """Four-tier indicator of how close a paid period is to its end."""

    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"
    EXPIRED = "expired"


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


class ReconciledStatus(BaseModel):
    """Merged view of a subscription returned by the status reconciler."""

    status: SubscriptionStatus
    is_active: bool
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    interval: BillingInterval = BillingInterval.MONTH


class Countdown(BaseModel):
    """Remaining-time view of the current paid period."""

    expiry_date: datetime | None = None
    remaining_days: int = Field(..., ge=0)
    validity_days: int
    validity_status: ValidityStatus


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def is_entitled(status: SubscriptionStatus) -> bool:
    """Return ``True`` when *status* grants access to paid features."""
    return status in ENTITLED_STATUSES


def fallback_period_end(interval: BillingInterval, now: datetime) -> datetime:
    """Period end used when the provider does not supply one."""
    return now + timedelta(days=interval.validity_days)


def resolve_period_end(
    provider_period_end: datetime | None,
    interval: BillingInterval,
    now: datetime,
) -> datetime:
    """Return the provider's period end, or the interval-based fallback."""
    if provider_period_end is not None:
        return provider_period_end
    return fallback_period_end(interval, now)


def reconcile_status(
    *,
    local_status: SubscriptionStatus,
    local_period_end: datetime | None,
    local_interval: BillingInterval | None,
    provider_status: SubscriptionStatus,
    provider_period_end: datetime | None,
    provider_interval: BillingInterval,
    provider_cancel_at_period_end: bool,
    now: datetime,
) -> ReconciledStatus:
    """Merge the local record with a fresh provider lookup.

    Rules, applied in order:

    1. A local ``active`` status wins over whatever the provider reports;
       otherwise the provider status is used.
    2. The subscription is active when the resolved status is ``active``
       or ``trialing``.
    3. If it is active but the provider's period end has already passed,
       the status becomes ``expired`` and the subscription is inactive.
    4. The reported period end is the local value when present, else the
       provider value.

    Parameters
    ----------
    local_status:
        Status persisted in the local store.
    local_period_end:
        Period end persisted in the local store, if any.
    local_interval:
        Interval persisted in the local store, if any.
    provider_status:
        Status reported by the provider, already mapped onto the local set.
    provider_period_end:
        Period end reported by the provider, if any.
    provider_interval:
        Interval reported by the provider.
    provider_cancel_at_period_end:
        The provider's current cancel-at-period-end flag.
    now:
        Reference time (timezone-aware).

    Returns
    -------
    ReconciledStatus
        The merged view.
    """
    if local_status == SubscriptionStatus.ACTIVE:
        resolved = local_status
    else:
        resolved = provider_status

    active = is_entitled(resolved)
    if active and provider_period_end is not None and provider_period_end < now:
        resolved = SubscriptionStatus.EXPIRED
        active = False

    return ReconciledStatus(
        status=resolved,
        is_active=active,
        current_period_end=local_period_end if local_period_end is not None else provider_period_end,
        cancel_at_period_end=provider_cancel_at_period_end,
        interval=local_interval or provider_interval,
    )


def days_remaining(period_end: datetime, now: datetime) -> int:
    """Whole days until *period_end*, rounded up.  Negative once it has passed."""
    return math.ceil((period_end - now).total_seconds() / _SECONDS_PER_DAY)


def classify_validity(remaining_days: int) -> ValidityStatus:
    """Map a day count onto its validity tier."""
    if remaining_days > 7:
        return ValidityStatus.GOOD
    if remaining_days > 3:
        return ValidityStatus.WARNING
    if remaining_days > 0:
        return ValidityStatus.CRITICAL
    return ValidityStatus.EXPIRED


def compute_countdown(
    period_end: datetime | None,
    interval: BillingInterval,
    now: datetime,
) -> Countdown:
    """Build the countdown view for a period ending at *period_end*.

    The remaining day count is clamped at zero; a missing period end is
    treated as already expired.
    """
    remaining = 0 if period_end is None else max(0, days_remaining(period_end, now))
    return Countdown(
        expiry_date=period_end,
        remaining_days=remaining,
        validity_days=interval.validity_days,
        validity_status=classify_validity(remaining),
    )
