"""FastAPI dependency injection for settings, sessions, and billing components."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Annotated

from billing_core.state.database import get_engine
from billing_core.state.locks import SubscriptionLocks
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from billing_api.config import APISettings, load_api_settings
from billing_api.services.billing_client import BillingClient, build_billing_client
from billing_api.services.email_service import InvoiceEmailSender
from billing_api.services.side_effects import SideEffectQueue

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by components that open their own sessions outside a request,
    such as the webhook dispatcher and the side-effect worker.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_db_session(session_factory: SessionFactoryDep) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` for one request.

    The session commits on clean exit and rolls back on exception.
    Services that hold a subscription lock commit before releasing it, in
    which case the final commit here has nothing left to write.
    """
    session = session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Subscription locks
# ---------------------------------------------------------------------------

_locks = SubscriptionLocks()


def get_subscription_locks() -> SubscriptionLocks:
    """Return the process-wide lock registry shared by webhooks and recovery."""
    return _locks


LocksDep = Annotated[SubscriptionLocks, Depends(get_subscription_locks)]

# ---------------------------------------------------------------------------
# Billing provider client
# ---------------------------------------------------------------------------

_billing_client: BillingClient | None = None


def get_billing_client() -> BillingClient:
    """Return the cached billing client, built from settings on first use."""
    global _billing_client  # noqa: PLW0603
    if _billing_client is None:
        _billing_client = build_billing_client(get_settings())
    return _billing_client


BillingClientDep = Annotated[BillingClient, Depends(get_billing_client)]

# ---------------------------------------------------------------------------
# Side-effect queue
# ---------------------------------------------------------------------------

_side_effect_queue: SideEffectQueue | None = None


def build_email_sender(settings: APISettings) -> InvoiceEmailSender:
    return InvoiceEmailSender(settings.resend_api_key.get_secret_value(), settings.email_from)


def init_side_effect_queue(
    settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
) -> SideEffectQueue:
    """Create, cache and start the global :class:`SideEffectQueue`."""
    global _side_effect_queue  # noqa: PLW0603
    _side_effect_queue = SideEffectQueue(
        session_factory,
        build_email_sender(settings),
        storage_path=settings.invoice_storage_path,
        max_attempts=settings.side_effect_max_attempts,
        backoff_seconds=settings.side_effect_backoff_seconds,
    )
    _side_effect_queue.start()
    return _side_effect_queue


async def dispose_side_effect_queue() -> None:
    """Stop the worker (call during shutdown)."""
    global _side_effect_queue  # noqa: PLW0603
    if _side_effect_queue is not None:
        await _side_effect_queue.stop()
        _side_effect_queue = None


def get_side_effect_queue() -> SideEffectQueue:
    """Return the cached :class:`SideEffectQueue`."""
    if _side_effect_queue is None:
        raise RuntimeError(
            "Side-effect queue has not been initialised. "
            "Ensure init_side_effect_queue() is called during application startup."
        )
    return _side_effect_queue


QueueDep = Annotated[SideEffectQueue, Depends(get_side_effect_queue)]

# ---------------------------------------------------------------------------
# Caller identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CallerIdentity:
    user_id: str
    email: str | None = None
    name: str | None = None
    role: str = "viewer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_caller(request: Request) -> CallerIdentity:
    """Extract the caller from authenticated request state."""
    user_id = getattr(request.state, "sub", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return CallerIdentity(
        user_id=user_id,
        email=getattr(request.state, "email", None),
        name=getattr(request.state, "name", None),
        role=getattr(request.state, "role", "viewer"),
    )


CallerDep = Annotated[CallerIdentity, Depends(get_caller)]


def require_admin(caller: CallerDep) -> CallerIdentity:
    """Reject callers without role ``admin``."""
    if not caller.is_admin:
        logger.info("Admin endpoint refused for user=%s (role=%s)", caller.user_id, caller.role)
        raise HTTPException(status_code=403, detail="Admin role required")
    return caller


AdminDep = Annotated[CallerIdentity, Depends(require_admin)]


def require_recovery_access(caller: CallerDep, settings: SettingsDep) -> CallerIdentity:
    """Allow recovery operations for the owner, or only admins when self-service is off."""
    if not settings.recovery_self_service and not caller.is_admin:
        logger.info("Recovery refused for user=%s: self-service disabled", caller.user_id)
        raise HTTPException(status_code=403, detail="Recovery operations require role admin")
    return caller


RecoveryCallerDep = Annotated[CallerIdentity, Depends(require_recovery_access)]
