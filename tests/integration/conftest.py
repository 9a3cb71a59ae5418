"""Fixtures for end-to-end billing flows.

The app runs against a file-backed SQLite database with the real
side-effect queue.  Only the billing provider and the email transport are
replaced.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import AsyncIterator
from datetime import datetime
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from billing_core.state.locks import SubscriptionLocks
from billing_core.state.repository import BillingCustomerRepository, InvoiceRepository, SubscriptionRepository
from billing_core.state.sqlite_adapter import create_local_tables, get_local_engine
from billing_core.state.tables import InvoiceTable, SubscriptionTable
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_api.config import APISettings
from billing_api.dependencies import (
    get_billing_client,
    get_session_factory,
    get_settings,
    get_side_effect_queue,
    get_subscription_locks,
)
from billing_api.main import create_app
from billing_api.security import TokenConfig, TokenManager
from billing_api.services.billing_client import BillingClient
from billing_api.services.email_service import DeliveryResult, InvoiceEmailSender
from billing_api.services.side_effects import SideEffectQueue

JWT_SECRET = "integration-secret"
WEBHOOK_SECRET = "whsec_integration"

# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


def ts(value: datetime) -> int:
    return int(value.timestamp())


def event(event_type: str, obj: dict[str, Any], *, event_id: str, created: datetime) -> bytes:
    return json.dumps(
        {"id": event_id, "object": "event", "type": event_type, "created": ts(created), "data": {"object": obj}}
    ).encode()


def signature(payload: bytes) -> str:
    now = int(time.time())
    digest = hmac.new(WEBHOOK_SECRET.encode(), f"{now}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={now},v1={digest}"


def subscription_payload(
    *,
    status: str,
    interval: str = "month",
    period_end: datetime | None = None,
    cancel_at_period_end: bool = False,
) -> dict[str, Any]:
    item: dict[str, Any] = {"id": "si_1", "price": {"id": f"price_{interval}"}, "plan": {"interval": interval}}
    if period_end is not None:
        item["current_period_end"] = ts(period_end)
    return {
        "id": "sub_1",
        "object": "subscription",
        "status": status,
        "customer": "cus_1",
        "cancel_at_period_end": cancel_at_period_end,
        "items": {"data": [item]},
        "metadata": {"user_id": "user-1"},
    }


def invoice_payload(invoice_id: str, *, period_end: datetime | None = None, amount: int = 999) -> dict[str, Any]:
    lines = [{"period": {"end": ts(period_end)}}] if period_end is not None else []
    return {
        "id": invoice_id,
        "object": "invoice",
        "subscription": "sub_1",
        "customer": "cus_1",
        "amount_paid": amount,
        "currency": "usd",
        "lines": {"data": lines},
    }


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


async def seed_subscription(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    status: str = "incomplete",
    interval: str = "month",
    period_end: datetime | None = None,
) -> None:
    async with session_factory() as sess:
        await BillingCustomerRepository(sess).upsert("user-1", "cus_1", email="ada@example.com", name="Ada")
        repo = SubscriptionRepository(sess)
        row = await repo.create("user-1", customer_id="cus_1")
        row.external_id = "sub_1"
        row.status = status
        row.billing_interval = interval
        row.current_period_end = period_end
        await repo.save(row)
        await sess.commit()


async def load_subscription(session_factory: async_sessionmaker[AsyncSession]) -> SubscriptionTable:
    async with session_factory() as sess:
        return await SubscriptionRepository(sess).load("user-1")


async def load_invoices(session_factory: async_sessionmaker[AsyncSession]) -> list[InvoiceTable]:
    async with session_factory() as sess:
        return await InvoiceRepository(sess).list_recent()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = get_local_engine(tmp_path / "state.db")
    await create_local_tables(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture()
def settings(tmp_path: Path) -> APISettings:
    return APISettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'state.db'}",
        stripe_secret_key=SecretStr("sk_test_integration"),
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
    client = AsyncMock(spec=BillingClient)
    client.available = True
    return client


@pytest.fixture()
def email_sender() -> MagicMock:
    sender = MagicMock(spec=InvoiceEmailSender)
    sender.send_invoice = AsyncMock(return_value=DeliveryResult(success=True))
    return sender


@pytest_asyncio.fixture
async def queue(
    session_factory: async_sessionmaker[AsyncSession], email_sender: MagicMock, settings: APISettings
) -> AsyncIterator[SideEffectQueue]:
    delivery = SideEffectQueue(
        session_factory,
        email_sender,
        storage_path=settings.invoice_storage_path,
        backoff_seconds=0.0,
    )
    delivery.start()
    yield delivery
    await delivery.stop()


@pytest_asyncio.fixture
async def client(
    monkeypatch: pytest.MonkeyPatch,
    settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    billing_client: AsyncMock,
    queue: SideEffectQueue,
) -> AsyncIterator[AsyncClient]:
    """Client for the full app, authenticated as ``user-1``."""
    monkeypatch.setenv("JWT_SECRET", JWT_SECRET)
    app = create_app()
    locks = SubscriptionLocks()
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_billing_client] = lambda: billing_client
    app.dependency_overrides[get_subscription_locks] = lambda: locks
    app.dependency_overrides[get_side_effect_queue] = lambda: queue

    token = TokenManager(TokenConfig(jwt_secret=SecretStr(JWT_SECRET))).generate_token(
        "user-1", email="ada@example.com", name="Ada"
    )
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport, base_url="http://test", headers={"Authorization": f"Bearer {token}"}
    ) as ac:
        yield ac


async def post_event(client: AsyncClient, payload: bytes) -> dict[str, Any]:
    resp = await client.post(
        "/api/v1/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": signature(payload), "Content-Type": "application/json"},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()
