"""Shared fixtures for billing API tests.

Provides an in-memory SQLite database, a mock billing provider client, a
FastAPI app with dependency overrides, and helpers for signed webhook
payloads and development tokens.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import time
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr

# Set JWT_SECRET before importing application modules so the
# AuthenticationMiddleware picks up a deterministic secret.
_TEST_JWT_SECRET = "test-secret-key-for-billing-tests"
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from billing_core.state.locks import SubscriptionLocks
from billing_core.state.repository import BillingCustomerRepository, InvoiceRepository, SubscriptionRepository
from billing_core.state.sqlite_adapter import create_local_tables, get_local_engine
from billing_core.state.tables import InvoiceTable, SubscriptionTable
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from billing_api.config import APISettings
from billing_api.dependencies import (
    get_billing_client,
    get_session_factory,
    get_settings,
    get_side_effect_queue,
    get_subscription_locks,
)
from billing_api.main import create_app
from billing_api.services.billing_client import BillingClient
from billing_api.services.side_effects import SideEffectQueue

WEBHOOK_SECRET = "whsec_test_secret"

# ---------------------------------------------------------------------------
# Dev auth token
# ---------------------------------------------------------------------------


def _make_dev_token(
    sub: str = "user-1",
    role: str = "viewer",
    email: str | None = "user1@example.com",
    name: str | None = "Test User",
    exp_offset: float = 3600,
    secret: str = _TEST_JWT_SECRET,
) -> str:
    """Generate a development-mode HMAC token.

    Mirrors the signing logic in :class:`billing_api.security.TokenManager`.
    """
    now = time.time()
    payload: dict[str, Any] = {
        "sub": sub,
        "email": email,
        "name": name,
        "role": role,
        "iss": "billing-sync",
        "iat": now,
        "exp": now + exp_offset,
        "jti": "test-jti-conftest",
    }
    payload_json = json.dumps(payload)
    signature = hmac.new(
        secret.encode("utf-8"),
        payload_json.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    token_bytes = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
    return f"bsdev.{token_bytes}.{signature}"


def auth_headers(sub: str = "user-1", role: str = "viewer") -> dict[str, str]:
    return {"Authorization": f"Bearer {_make_dev_token(sub=sub, role=role)}"}


# ---------------------------------------------------------------------------
# Webhook payloads
# ---------------------------------------------------------------------------


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header value for *payload*."""
    ts = timestamp if timestamp is not None else int(time.time())
    signed = f"{ts}.".encode() + payload
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def make_event(
    event_type: str,
    obj: dict[str, Any],
    *,
    event_id: str = "evt_1",
    created: datetime | None = None,
) -> dict[str, Any]:
    """Provider event envelope around *obj*."""
    created = created or datetime.now(UTC)
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(created.timestamp()),
        "data": {"object": obj},
    }


def ts(value: datetime) -> int:
    return int(value.timestamp())


def provider_subscription(
    sub_id: str = "sub_1",
    *,
    status: str = "active",
    customer: str = "cus_1",
    interval: str = "month",
    period_end: datetime | None = None,
    cancel_at_period_end: bool = False,
    price_id: str = "price_month",
    user_id: str | None = "user-1",
    latest_invoice: Any = None,
) -> dict[str, Any]:
    """Provider subscription payload in the current API shape."""
    item: dict[str, Any] = {
        "id": "si_1",
        "price": {"id": price_id, "recurring": {"interval": interval}},
        "plan": {"interval": interval},
    }
    if period_end is not None:
        item["current_period_end"] = ts(period_end)
    sub: dict[str, Any] = {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "customer": customer,
        "cancel_at_period_end": cancel_at_period_end,
        "items": {"data": [item]},
        "metadata": {"user_id": user_id} if user_id else {},
    }
    if latest_invoice is not None:
        sub["latest_invoice"] = latest_invoice
    return sub


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine() -> AsyncIterator[AsyncEngine]:
    eng = get_local_engine(":memory:")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as sess:
        yield sess


async def seed_subscription(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    user_id: str = "user-1",
    external_id: str | None = "sub_1",
    customer_id: str | None = "cus_1",
    status: str = "incomplete",
    interval: str = "month",
    period_end: datetime | None = None,
    payment_date: datetime | None = None,
    cancel_at_period_end: bool = False,
    email: str | None = "user1@example.com",
) -> None:
    """Insert a subscription record and its customer mapping."""
    async with session_factory() as sess:
        if customer_id:
            await BillingCustomerRepository(sess).upsert(user_id, customer_id, email=email, name="Test User")
        repo = SubscriptionRepository(sess)
        row = await repo.create(user_id, customer_id=customer_id)
        row.external_id = external_id
        row.status = status
        row.billing_interval = interval
        row.current_period_end = period_end
        row.payment_date = payment_date
        row.cancel_at_period_end = cancel_at_period_end
        row.auto_debit = not cancel_at_period_end
        await repo.save(row)
        await sess.commit()


async def load_subscription(
    session_factory: async_sessionmaker[AsyncSession], user_id: str = "user-1"
) -> SubscriptionTable | None:
    async with session_factory() as sess:
        return await SubscriptionRepository(sess).load(user_id)


# ---------------------------------------------------------------------------
# Settings and collaborators
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path: Path) -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        database_url="sqlite+aiosqlite:///:memory:",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        stripe_secret_key=SecretStr("sk_test_123"),
        stripe_webhook_secret=SecretStr(WEBHOOK_SECRET),
        stripe_price_id_monthly="price_month",
        stripe_price_id_yearly="price_year",
        invoice_storage_path=str(tmp_path / "invoices"),
        confirm_wait_seconds=0.0,
        payment_method_wait_seconds=0.0,
        side_effect_backoff_seconds=0.0,
    )


@pytest.fixture()
def billing_client() -> AsyncMock:
    """Return a mock billing provider with every operation as AsyncMock.

    Tests set ``return_value`` / ``side_effect`` on the operations they use.
    """
    client = AsyncMock(spec=BillingClient)
    client.available = True
    return client


@pytest.fixture()
def locks() -> SubscriptionLocks:
    return SubscriptionLocks()


@pytest.fixture()
def queue() -> MagicMock:
    """Side-effect queue that records submissions without running them."""
    mock = MagicMock(spec=SideEffectQueue)
    mock.deliver = AsyncMock()
    return mock


# ---------------------------------------------------------------------------
# FastAPI app and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    billing_client: AsyncMock,
    locks: SubscriptionLocks,
    queue: MagicMock,
):
    """Create the FastAPI app with its collaborators overridden.

    The ASGI transport does not run the lifespan, so the overrides supply
    everything startup would otherwise initialise.
    """
    application = create_app()
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_billing_client] = lambda: billing_client
    application.dependency_overrides[get_subscription_locks] = lambda: locks
    application.dependency_overrides[get_side_effect_queue] = lambda: queue
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncIterator[AsyncClient]:
    """Async httpx client bound to the app, authenticated as ``user-1``."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=auth_headers()) as ac:
        yield ac


@pytest_asyncio.fixture()
async def anon_client(app) -> AsyncIterator[AsyncClient]:
    """Async httpx client without credentials."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def future(days: int = 30) -> datetime:
    return datetime.now(UTC) + timedelta(days=days)


def past(days: int = 1) -> datetime:
    return datetime.now(UTC) - timedelta(days=days)


async def seed_invoice(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    user_id: str = "user-1",
    payment_reference: str = "in_1",
    amount: Decimal = Decimal("9.99"),
    customer_email: str | None = "user1@example.com",
) -> InvoiceTable:
    """Insert an invoice row for *payment_reference* and return it."""
    async with session_factory() as sess:
        row, _ = await InvoiceRepository(sess).create_if_absent(
            user_id=user_id,
            payment_reference=payment_reference,
            amount=amount,
            subscription_id="sub_1",
            customer_name="Test User",
            customer_email=customer_email,
        )
        await sess.commit()
        return row
