"""Billing provider client.

The client is an injected capability: services receive a
:class:`BillingClient` and never reach for a module-level provider
singleton.  When no secret key is configured the application wires in the
base class itself, whose every call raises
:class:`~billing_api.services.errors.BillingUnavailableError`, so the
"billing is not configured" state is explicit instead of a null check in
every handler.

:class:`StripeBillingClient` passes the API key on each request rather
than mutating ``stripe.api_key``, and runs the blocking SDK calls in a
worker thread.  Every method returns plain ``dict`` payloads.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from billing_core.models import BillingInterval

from billing_api.config import APISettings
from billing_api.services.errors import BillingProviderError, BillingUnavailableError

logger = logging.getLogger(__name__)

# Provider error codes the services branch on.
RESOURCE_MISSING = "resource_missing"
RESOURCE_ALREADY_EXISTS = "resource_already_exists"


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def _as_dict(obj: Any) -> dict[str, Any]:
    """Return *obj* as a plain dict (SDK objects are converted recursively)."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def _first_item(subscription: dict[str, Any]) -> dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def from_timestamp(value: Any) -> datetime | None:
    """Convert a provider epoch-seconds value to an aware datetime."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def subscription_period_end(subscription: dict[str, Any]) -> datetime | None:
    """Period end of *subscription*.

    Newer API versions carry the period on the subscription item rather
    than on the subscription itself, so both places are checked.
    """
    raw = subscription.get("current_period_end")
    if raw is None:
        raw = _first_item(subscription).get("current_period_end")
    return from_timestamp(raw)


def subscription_interval(subscription: dict[str, Any]) -> BillingInterval:
    """Billing interval of the first subscription item."""
    item = _first_item(subscription)
    raw = (item.get("plan") or {}).get("interval")
    if raw is None:
        raw = ((item.get("price") or {}).get("recurring") or {}).get("interval")
    return BillingInterval.parse(raw)


def subscription_price_id(subscription: dict[str, Any]) -> str | None:
    """Price id of the first subscription item."""
    return (_first_item(subscription).get("price") or {}).get("id")


def expandable_id(value: Any) -> str | None:
    """Return the id of an expandable field, whether expanded or not."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def payment_reference(payment: dict[str, Any]) -> str:
    """Key shared by every provider object that records one payment.

    The invoice wins, then an invoice tagged in metadata, then the payment
    intent a charge belongs to, and only then the object's own id.  A
    charge and its payment intent therefore resolve to the same key.
    """
    return (
        expandable_id(payment.get("invoice"))
        or (payment.get("metadata") or {}).get("invoice_id")
        or expandable_id(payment.get("payment_intent"))
        or payment["id"]
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class BillingClient:
    """Billing provider capability in its *unavailable* state.

    Every operation raises :class:`BillingUnavailableError`.  Subclasses
    override the operations and set ``available`` to ``True``.
    """

    available: bool = False

    def _unavailable(self) -> Any:
        raise BillingUnavailableError("Billing provider is not configured")

    async def retrieve_subscription(self, subscription_id: str, *, expand: list[str] | None = None) -> dict[str, Any]:
        return self._unavailable()

    async def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        metadata: dict[str, str],
    ) -> dict[str, Any]:
        return self._unavailable()

    async def update_subscription(self, subscription_id: str, **params: Any) -> dict[str, Any]:
        return self._unavailable()

    async def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        return self._unavailable()

    async def create_customer(
        self,
        *,
        email: str | None,
        name: str | None,
        metadata: dict[str, str],
    ) -> dict[str, Any]:
        return self._unavailable()

    async def update_customer(self, customer_id: str, **params: Any) -> dict[str, Any]:
        return self._unavailable()

    async def retrieve_invoice(self, invoice_id: str, *, expand: list[str] | None = None) -> dict[str, Any]:
        return self._unavailable()

    async def finalize_invoice(self, invoice_id: str, *, expand: list[str] | None = None) -> dict[str, Any]:
        return self._unavailable()

    async def pay_invoice(self, invoice_id: str, *, payment_method: str | None = None) -> dict[str, Any]:
        return self._unavailable()

    async def list_charges(self, customer_id: str, *, limit: int = 10) -> list[dict[str, Any]]:
        return self._unavailable()

    async def list_payment_intents(self, customer_id: str, *, limit: int = 5) -> list[dict[str, Any]]:
        return self._unavailable()

    async def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        return self._unavailable()

    async def confirm_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        return self._unavailable()

    async def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        customer_id: str,
        metadata: dict[str, str],
    ) -> dict[str, Any]:
        return self._unavailable()

    async def attach_payment_method(self, payment_method_id: str, *, customer_id: str) -> dict[str, Any]:
        return self._unavailable()

    async def create_setup_intent(self, *, customer_id: str, metadata: dict[str, str]) -> dict[str, Any]:
        return self._unavailable()


class StripeBillingClient(BillingClient):
    """:class:`BillingClient` backed by the Stripe SDK.

    Parameters
    ----------
    api_key:
        Stripe secret key sent with every request.
    """

    available = True

    def __init__(self, api_key: str) -> None:
        if not api_key:
            raise ValueError("StripeBillingClient requires a secret key")
        self._api_key = api_key

    def _get_stripe(self) -> Any:
        """Lazily import the Stripe library."""
        import stripe

        return stripe

    async def _call(self, fn: Callable[..., Any], *args: Any, **params: Any) -> Any:
        """Run one SDK call in a worker thread, translating provider errors."""
        stripe = self._get_stripe()
        params = {key: value for key, value in params.items() if value is not None}
        try:
            return await asyncio.to_thread(functools.partial(fn, *args, api_key=self._api_key, **params))
        except stripe.StripeError as exc:
            code = getattr(exc, "code", None)
            logger.error("Stripe call %s failed (code=%s): %s", getattr(fn, "__qualname__", fn), code, exc)
            raise BillingProviderError(getattr(exc, "user_message", None) or str(exc), code=code) from exc

    async def retrieve_subscription(self, subscription_id: str, *, expand: list[str] | None = None) -> dict[str, Any]:
        stripe = self._get_stripe()
        return _as_dict(await self._call(stripe.Subscription.retrieve, subscription_id, expand=expand))

    async def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        metadata: dict[str, str],
    ) -> dict[str, Any]:
        stripe = self._get_stripe()
        sub = await self._call(
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
            payment_behavior="default_incomplete",
            payment_settings={"save_default_payment_method": "on_subscription"},
            expand=["latest_invoice.payment_intent", "latest_invoice.confirmation_secret"],
            metadata=metadata,
        )
        return _as_dict(sub)

    async def update_subscription(self, subscription_id: str, **params: Any) -> dict[str, Any]:
        stripe = self._get_stripe()
        return _as_dict(await self._call(stripe.Subscription.modify, subscription_id, **params))

    async def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        stripe = self._get_stripe()
        return _as_dict(await self._call(stripe.Customer.retrieve, customer_id))

    async def create_customer(
        self,
        *,
        email: str | None,
        name: str | None,
        metadata: dict[str, str],
    ) -> dict[str, Any]:
        stripe = self._get_stripe()
        return _as_dict(await self._call(stripe.Customer.create, email=email, name=name, metadata=metadata))

    async def update_customer(self, customer_id: str, **params: Any) -> dict[str, Any]:
        stripe = self._get_stripe()
        return _as_dict(await self._call(stripe.Customer.modify, customer_id, **params))

    async def retrieve_invoice(self, invoice_id: str, *, expand: list[str] | None = None) -> dict[str, Any]:
        stripe = self._get_stripe()
        return _as_dict(await self._call(stripe.Invoice.retrieve, invoice_id, expand=expand))

    async def finalize_invoice(self, invoice_id: str, *, expand: list[str] | None = None) -> dict[str, Any]:
        stripe = self._get_stripe()
        return _as_dict(await self._call(stripe.Invoice.finalize_invoice, invoice_id, expand=expand))

    async def pay_invoice(self, invoice_id: str, *, payment_method: str | None = None) -> dict[str, Any]:
        stripe = self._get_stripe()
        return _as_dict(await self._call(stripe.Invoice.pay, invoice_id, payment_method=payment_method))

    async def list_charges(self, customer_id: str, *, limit: int = 10) -> list[dict[str, Any]]:
        stripe = self._get_stripe()
        page = await self._call(stripe.Charge.list, customer=customer_id, limit=limit)
        return [_as_dict(charge) for charge in page.data]

    async def list_payment_intents(self, customer_id: str, *, limit: int = 5) -> list[dict[str, Any]]:
        stripe = self._get_stripe()
        page = await self._call(stripe.PaymentIntent.list, customer=customer_id, limit=limit)
        return [_as_dict(intent) for intent in page.data]

    async def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        stripe = self._get_stripe()
        return _as_dict(await self._call(stripe.PaymentIntent.retrieve, payment_intent_id))

    async def confirm_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        stripe = self._get_stripe()
        return _as_dict(await self._call(stripe.PaymentIntent.confirm, payment_intent_id))

    async def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        customer_id: str,
        metadata: dict[str, str],
    ) -> dict[str, Any]:
        stripe = self._get_stripe()
        intent = await self._call(
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency,
            customer=customer_id,
            metadata=metadata,
            setup_future_usage="off_session",
            automatic_payment_methods={"enabled": True},
        )
        return _as_dict(intent)

    async def attach_payment_method(self, payment_method_id: str, *, customer_id: str) -> dict[str, Any]:
        stripe = self._get_stripe()
        return _as_dict(await self._call(stripe.PaymentMethod.attach, payment_method_id, customer=customer_id))

    async def create_setup_intent(self, *, customer_id: str, metadata: dict[str, str]) -> dict[str, Any]:
        stripe = self._get_stripe()
        intent = await self._call(
            stripe.SetupIntent.create,
            customer=customer_id,
            payment_method_types=["card"],
            usage="off_session",
            metadata=metadata,
        )
        return _as_dict(intent)


def build_billing_client(settings: APISettings) -> BillingClient:
    """Return a Stripe client, or the unavailable client when no key is set."""
    secret = settings.stripe_secret_key.get_secret_value()
    if not secret:
        logger.warning("API_STRIPE_SECRET_KEY is not set; billing provider calls will report unavailable")
        return BillingClient()
    return StripeBillingClient(secret)
