"""Subscription endpoints: status views, lifecycle, and recovery operations.

Every endpoint acts on the authenticated caller's own subscription.
"""

from __future__ import annotations

import logging
from typing import Any

from billing_core.state.locks import SubscriptionLocks
from fastapi import APIRouter
from sqlalchemy.ext.asyncio import AsyncSession

from billing_api.config import APISettings
from billing_api.dependencies import (
    BillingClientDep,
    CallerDep,
    LocksDep,
    QueueDep,
    RecoveryCallerDep,
    SessionDep,
    SettingsDep,
)
from billing_api.schemas import (
    AutoDebitRequest,
    AutoDebitResponse,
    ClientSecretResponse,
    CreateSubscriptionRequest,
    DebugResponse,
    DetailsResponse,
    StatusResponse,
    SubscriptionActionResponse,
    UpdatePaymentMethodRequest,
)
from billing_api.services.billing_client import BillingClient
from billing_api.services.reconciler import StatusReconciler, envelope
from billing_api.services.recovery_service import RecoveryService
from billing_api.services.side_effects import SideEffectQueue
from billing_api.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def _recovery(
    session: AsyncSession,
    client: BillingClient,
    locks: SubscriptionLocks,
    queue: SideEffectQueue,
    settings: APISettings,
) -> RecoveryService:
    return RecoveryService(
        session,
        client,
        locks,
        queue,
        confirm_wait_seconds=settings.confirm_wait_seconds,
        payment_method_wait_seconds=settings.payment_method_wait_seconds,
    )


def _action_result(result: dict[str, Any]) -> dict[str, Any]:
    """Lift the resulting subscription's status to the top of an action result."""
    return {**result, **envelope(result["subscription"], result["message"])}


# ---------------------------------------------------------------------------
# Read views
# ---------------------------------------------------------------------------


@router.get("/status", response_model=StatusResponse)
async def get_status(session: SessionDep, client: BillingClientDep, caller: CallerDep) -> dict[str, Any]:
    """Reconciled status of the caller's subscription."""
    subscription = await StatusReconciler(session, client).get_status(caller.user_id)
    return {**envelope(subscription), "subscription": subscription}


@router.get("/details", response_model=DetailsResponse)
async def get_details(session: SessionDep, client: BillingClientDep, caller: CallerDep) -> dict[str, Any]:
    """Countdown view of the current paid period plus provider fields."""
    details = await StatusReconciler(session, client).get_details(caller.user_id)
    return {**envelope(details["subscription"]), **details}


@router.get("/debug", response_model=DebugResponse)
async def get_debug(session: SessionDep, client: BillingClientDep, caller: CallerDep) -> dict[str, Any]:
    """Raw local record with computed expiry fields."""
    return await StatusReconciler(session, client).get_debug(caller.user_id)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@router.post("/create", response_model=ClientSecretResponse)
async def create_subscription(
    body: CreateSubscriptionRequest,
    session: SessionDep,
    client: BillingClientDep,
    locks: LocksDep,
    settings: SettingsDep,
    caller: CallerDep,
) -> dict[str, Any]:
    """Start a checkout; returns the client secret for the first payment."""
    service = SubscriptionService(session, client, locks, settings)
    return await service.create(
        caller.user_id,
        price_id=body.price_id,
        interval=body.interval,
        email=caller.email,
        name=caller.name,
    )


@router.post("/setup-intent", response_model=ClientSecretResponse)
async def create_setup_intent(
    session: SessionDep,
    client: BillingClientDep,
    locks: LocksDep,
    settings: SettingsDep,
    caller: CallerDep,
) -> dict[str, Any]:
    """Client secret for collecting a payment method off-session."""
    service = SubscriptionService(session, client, locks, settings)
    return await service.create_setup_intent(caller.user_id, email=caller.email, name=caller.name)


@router.post("/cancel", response_model=SubscriptionActionResponse)
async def cancel_subscription(
    session: SessionDep,
    client: BillingClientDep,
    locks: LocksDep,
    settings: SettingsDep,
    caller: CallerDep,
) -> dict[str, Any]:
    """Cancel at the end of the current period."""
    return _action_result(await SubscriptionService(session, client, locks, settings).cancel(caller.user_id))


@router.post("/resume", response_model=SubscriptionActionResponse)
async def resume_subscription(
    session: SessionDep,
    client: BillingClientDep,
    locks: LocksDep,
    settings: SettingsDep,
    caller: CallerDep,
) -> dict[str, Any]:
    """Undo a pending cancellation."""
    return _action_result(await SubscriptionService(session, client, locks, settings).resume(caller.user_id))


@router.put("/auto-debit", response_model=AutoDebitResponse)
async def set_auto_debit(
    body: AutoDebitRequest,
    session: SessionDep,
    client: BillingClientDep,
    locks: LocksDep,
    settings: SettingsDep,
    caller: CallerDep,
) -> dict[str, Any]:
    """Turn automatic renewal on or off."""
    service = SubscriptionService(session, client, locks, settings)
    return _action_result(await service.set_auto_debit(caller.user_id, body.auto_debit))


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


@router.post("/confirm", response_model=SubscriptionActionResponse)
async def confirm_payment(
    session: SessionDep,
    client: BillingClientDep,
    locks: LocksDep,
    queue: QueueDep,
    settings: SettingsDep,
    caller: RecoveryCallerDep,
) -> dict[str, Any]:
    """Sync an active provider subscription into the local record."""
    recovery = _recovery(session, client, locks, queue, settings)
    return _action_result(await recovery.confirm(caller.user_id))


@router.post("/fix-status", response_model=SubscriptionActionResponse)
async def fix_status(
    session: SessionDep,
    client: BillingClientDep,
    locks: LocksDep,
    queue: QueueDep,
    settings: SettingsDep,
    caller: RecoveryCallerDep,
) -> dict[str, Any]:
    """Activate the subscription from provider payment history."""
    recovery = _recovery(session, client, locks, queue, settings)
    return _action_result(await recovery.fix_status(caller.user_id))


@router.post("/force-activate", response_model=SubscriptionActionResponse)
async def force_activate(
    session: SessionDep,
    client: BillingClientDep,
    locks: LocksDep,
    queue: QueueDep,
    settings: SettingsDep,
    caller: RecoveryCallerDep,
) -> dict[str, Any]:
    """Set the subscription active and clear any pending cancellation."""
    recovery = _recovery(session, client, locks, queue, settings)
    return _action_result(await recovery.force_activate(caller.user_id))


@router.post("/update-payment-method", response_model=SubscriptionActionResponse)
async def update_payment_method(
    body: UpdatePaymentMethodRequest,
    session: SessionDep,
    client: BillingClientDep,
    locks: LocksDep,
    queue: QueueDep,
    settings: SettingsDep,
    caller: RecoveryCallerDep,
) -> dict[str, Any]:
    """Attach a newly collected payment method to the subscription."""
    recovery = _recovery(session, client, locks, queue, settings)
    result = await recovery.update_payment_method(
        caller.user_id,
        payment_intent_id=body.payment_intent_id,
        payment_method_id=body.payment_method_id,
    )
    return _action_result(result)
