"""Domain exceptions raised by the billing services.

Each exception maps onto one HTTP status in :func:`billing_api.main.create_app`.
"""

from __future__ import annotations

from billing_core.state.repository import StaleSubscriptionError


class BillingError(Exception):
    """Base class for errors reported to API callers."""

    status_code: int = 400

    def __init__(self, message: str, *, status: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        # Subscription status to report alongside the error, when known.
        self.status = status


class WebhookVerificationError(BillingError):
    """The webhook payload or its signature could not be verified."""

    status_code = 400


class SubscriptionNotFoundError(BillingError):
    """No subscription exists for the caller, locally or at the provider."""

    status_code = 404


class SubscriptionStateError(BillingError):
    """The request is not valid for the subscription's current state."""

    status_code = 400


class BillingUnavailableError(BillingError):
    """The billing provider client is not configured."""

    status_code = 503


class BillingProviderError(BillingError):
    """A call to the billing provider failed.

    Parameters
    ----------
    message:
        Human-readable description.
    code:
        The provider's machine-readable error code, when it supplied one.
    """

    status_code = 502

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


__all__ = [
    "BillingError",
    "BillingProviderError",
    "BillingUnavailableError",
    "StaleSubscriptionError",
    "SubscriptionNotFoundError",
    "SubscriptionStateError",
    "WebhookVerificationError",
]
