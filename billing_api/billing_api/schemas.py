"""Request and response models for the billing API.

Responses are serialised with camelCase keys (``isActive``,
``currentPeriodEnd``); requests accept either camelCase or snake_case.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, StrictBool
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class CreateSubscriptionRequest(CamelModel):
    """Body for ``POST /subscriptions/create``."""

    price_id: str | None = Field(default=None, description="Provider price id; defaults by interval.")
    interval: str | None = Field(default=None, description="'month' or 'year'.")


class AutoDebitRequest(CamelModel):
    """Body for ``PUT /subscriptions/auto-debit``."""

    auto_debit: StrictBool


class UpdatePaymentMethodRequest(CamelModel):
    """Body for ``POST /subscriptions/update-payment-method``."""

    payment_intent_id: str | None = None
    payment_method_id: str | None = None


# ---------------------------------------------------------------------------
# Subscription responses
# ---------------------------------------------------------------------------


class SubscriptionView(CamelModel):
    """One subscription as reported to the caller."""

    id: str | None = None
    status: str
    is_active: bool
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    interval: str = "month"
    plan: str | None = None
    auto_debit: bool | None = None
    payment_date: datetime | None = None
    current_period_start: datetime | None = None


class ResultEnvelope(CamelModel):
    """Fields every subscription response carries at the top level."""

    status: str
    is_active: bool
    message: str


class StatusResponse(ResultEnvelope):
    subscription: SubscriptionView


class PaymentInfo(CamelModel):
    payment_date: datetime | None = None
    expiry_date: datetime | None = None
    remaining_days: int
    validity_days: int
    validity_status: str
    interval: str


class DetailsResponse(ResultEnvelope):
    """Countdown view plus the provider's subscription fields."""

    subscription: SubscriptionView
    payment_info: PaymentInfo


class DebugRecord(SubscriptionView):
    customer_id: str | None = None
    price_id: str | None = None
    last_event_at: datetime | None = None
    version: int | None = None


class DebugCalculated(CamelModel):
    is_expired: bool
    days_remaining: int
    should_be_active: bool


class DebugResponse(CamelModel):
    user_id: str
    subscription: DebugRecord
    calculated: DebugCalculated
    timestamp: datetime


class ClientSecretResponse(ResultEnvelope):
    client_secret: str | None
    subscription_id: str | None = None


class SubscriptionActionResponse(ResultEnvelope):
    """Result of a lifecycle or recovery operation."""

    subscription: SubscriptionView
    provider_status: str | None = None


class AutoDebitResponse(ResultEnvelope):
    auto_debit: bool
    subscription_updated: bool
    subscription: SubscriptionView


class WebhookAck(CamelModel):
    received: bool = True
    event_id: str
    event_type: str
    outcome: str


# ---------------------------------------------------------------------------
# Invoice responses
# ---------------------------------------------------------------------------


class InvoiceResponse(CamelModel):
    """One invoice."""

    invoice_id: str
    invoice_number: str
    subscription_id: str | None = None
    payment_reference: str
    amount: Decimal
    currency: str
    status: str
    customer_name: str | None = None
    customer_email: str | None = None
    email_sent: bool
    email_sent_at: datetime | None = None
    delivery_error: str | None = None
    created_at: datetime | None = None


class InvoiceListResponse(CamelModel):
    """Paginated invoice list response."""

    invoices: list[InvoiceResponse]
    total: int


class InvoiceResendResponse(CamelModel):
    invoice_id: str
    success: bool
    error: str | None = None
