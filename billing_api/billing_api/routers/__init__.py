"""API router modules for the billing control plane."""

from __future__ import annotations

from billing_api.routers import health, invoices, subscriptions, webhooks

__all__ = [
    "health",
    "invoices",
    "subscriptions",
    "webhooks",
]
