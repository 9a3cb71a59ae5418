"""Domain models for the billing sync core."""

from billing_core.models.subscription import (
    ENTITLED_STATUSES,
    TERMINAL_STATUSES,
    BillingInterval,
    Countdown,
    ReconciledStatus,
    SubscriptionStatus,
    ValidityStatus,
    compute_countdown,
    fallback_period_end,
    is_entitled,
    reconcile_status,
    resolve_period_end,
)

__all__ = [
    "BillingInterval",
    "Countdown",
    "ENTITLED_STATUSES",
    "ReconciledStatus",
    "SubscriptionStatus",
    "TERMINAL_STATUSES",
    "ValidityStatus",
    "compute_countdown",
    "fallback_period_end",
    "is_entitled",
    "reconcile_status",
    "resolve_period_end",
]
