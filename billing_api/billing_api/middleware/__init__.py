"""Middleware components for the billing API."""

from __future__ import annotations

from billing_api.middleware.auth import AuthenticationMiddleware
from billing_api.middleware.json_formatter import JSONFormatter
from billing_api.middleware.logging import RequestLoggingMiddleware

__all__ = [
    "AuthenticationMiddleware",
    "JSONFormatter",
    "RequestLoggingMiddleware",
]
