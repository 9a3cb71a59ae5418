"""Persistent subscription and invoice state."""

from billing_core.state.database import get_engine, get_session, get_session_factory
from billing_core.state.locks import SubscriptionLocks
from billing_core.state.repository import (
    BillingCustomerRepository,
    InvoiceRepository,
    StaleSubscriptionError,
    SubscriptionRepository,
    WebhookEventRepository,
)
from billing_core.state.tables import (
    Base,
    BillingCustomerTable,
    InvoiceTable,
    ProcessedWebhookEventTable,
    SubscriptionTable,
)

__all__ = [
    "Base",
    "BillingCustomerRepository",
    "BillingCustomerTable",
    "InvoiceRepository",
    "InvoiceTable",
    "ProcessedWebhookEventTable",
    "StaleSubscriptionError",
    "SubscriptionLocks",
    "SubscriptionRepository",
    "SubscriptionTable",
    "WebhookEventRepository",
    "get_engine",
    "get_session",
    "get_session_factory",
]
