"""Subscription domain model and durable state store for the billing sync service."""

__version__ = "0.1.0"
