"""Route verified webhook events to their subscription handlers.

Each recognised event type maps to one handler with the signature
``async (HandlerContext) -> str``.  For every event the dispatcher:

1. resolves the subscription key the event is about and holds that key's
   lock for the whole read-modify-write sequence;
2. records the event id in the processed-events ledger, acknowledging a
   redelivered event without running its handler again;
3. runs the handler, which loads the whole subscription record, changes
   fields on it and saves it back;
4. commits, releases the lock, and only then submits the invoice
   deliveries the handler asked for.

Handler failures are rolled back and logged at ERROR with the event id.
The webhook is still acknowledged so the provider does not start a
redelivery storm, which also means the provider will not resend it: a
failed event is replayed by an operator from the provider dashboard.  Its
id is not recorded as processed, so the replay runs the handler.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from billing_core.models import (
    TERMINAL_STATUSES,
    BillingInterval,
    SubscriptionStatus,
    is_entitled,
    resolve_period_end,
)
from billing_core.state.locks import SubscriptionLocks
from billing_core.state.repository import (
    BillingCustomerRepository,
    SubscriptionRepository,
    WebhookEventRepository,
)
from billing_core.state.tables import SubscriptionTable
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_api.services.billing_client import (
    BillingClient,
    expandable_id,
    from_timestamp,
    payment_reference,
    subscription_interval,
    subscription_period_end,
    subscription_price_id,
)
from billing_api.services.side_effects import (
    InvoiceDeliveryJob,
    PaymentOccurrence,
    SideEffectQueue,
    SideEffectTrigger,
    cents_to_amount,
)
from billing_api.services.webhook_ingestor import WebhookEvent

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Provider event types with a subscription effect."""

    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    CHARGE_SUCCEEDED = "charge.succeeded"


# Outcomes reported back to the webhook endpoint.
PROCESSED = "processed"
IGNORED = "ignored"
DUPLICATE = "duplicate"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass(frozen=True)
class DispatchResult:
    event_id: str
    event_type: str
    outcome: str


@dataclass
class HandlerContext:
    """Everything a handler needs for one event."""

    event: WebhookEvent
    session: AsyncSession
    client: BillingClient
    subscriptions: SubscriptionRepository
    trigger: SideEffectTrigger
    deliveries: list[InvoiceDeliveryJob] = field(default_factory=list)

    @property
    def occurred_at(self) -> datetime:
        """Provider timestamp of the event.

        Used for fallback period ends and payment dates, so replaying the
        same event always writes the same values.
        """
        return self.event.created


Handler = Callable[[HandlerContext], Awaitable[str]]


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    """Subscription id of an invoice, across API versions."""
    sub_id = expandable_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return expandable_id(details.get("subscription"))


def _invoice_period_end(invoice: dict[str, Any]) -> datetime | None:
    lines = (invoice.get("lines") or {}).get("data") or []
    if lines:
        end = from_timestamp((lines[0].get("period") or {}).get("end"))
        if end is not None:
            return end
    return None


def _linked_subscription_id(obj: dict[str, Any]) -> str | None:
    """Subscription id tagged on a payment intent or charge."""
    return (obj.get("metadata") or {}).get("subscription_id") or None


def _lock_key(event_type: EventType, obj: dict[str, Any]) -> str | None:
    """Key of the subscription an event mutates."""
    if event_type in (
        EventType.SUBSCRIPTION_CREATED,
        EventType.SUBSCRIPTION_UPDATED,
        EventType.SUBSCRIPTION_DELETED,
    ):
        return obj.get("id")
    if event_type in (EventType.INVOICE_PAYMENT_SUCCEEDED, EventType.INVOICE_PAYMENT_FAILED):
        return _invoice_subscription_id(obj)
    return _linked_subscription_id(obj)


async def _resolve_record(
    ctx: HandlerContext,
    subscription_id: str,
    *,
    customer_id: str | None = None,
    user_id: str | None = None,
) -> SubscriptionTable | None:
    """Find the local record for *subscription_id*.

    Falls back to the record of the provider customer and then to the user
    named in the subscription metadata.  A record found that way adopts
    *subscription_id* unless it still tracks a different, entitled
    subscription.
    """
    repo = ctx.subscriptions
    row = await repo.load_for_update(external_id=subscription_id)
    if row is not None:
        return row

    if customer_id:
        row = await repo.load_by_customer(customer_id)
        if row is None:
            mapping = await BillingCustomerRepository(ctx.session).get_by_stripe_customer(customer_id)
            if mapping is not None:
                user_id = user_id or mapping.user_id
    if row is None and user_id:
        row = await repo.load(user_id)
        if row is None:
            row = await repo.create(user_id, customer_id=customer_id)

    if row is None:
        return None
    if row.external_id and row.external_id != subscription_id:
        if is_entitled(SubscriptionStatus(row.status)):
            logger.warning(
                "Event for subscription %s ignored: user=%s is entitled through %s",
                subscription_id,
                row.user_id,
                row.external_id,
            )
            return None
        logger.info("Record for user=%s moves from %s to %s", row.user_id, row.external_id, subscription_id)
    row.external_id = subscription_id
    if customer_id:
        row.customer_id = customer_id
    return row


def _predates_payment(row: SubscriptionTable, occurred_at: datetime) -> bool:
    return row.payment_date is not None and occurred_at < row.payment_date


def _predates_termination(row: SubscriptionTable, occurred_at: datetime) -> bool:
    """A terminal record whose last event is newer than *occurred_at*."""
    return (
        SubscriptionStatus(row.status) in TERMINAL_STATUSES
        and row.last_event_at is not None
        and occurred_at < row.last_event_at
    )


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def _apply_subscription_snapshot(ctx: HandlerContext, *, sync_cancel_flag: bool) -> str:
    sub = ctx.event.object
    row = await _resolve_record(
        ctx,
        sub["id"],
        customer_id=expandable_id(sub.get("customer")),
        user_id=(sub.get("metadata") or {}).get("user_id"),
    )
    if row is None:
        logger.warning("No local record for subscription %s; event %s skipped", sub.get("id"), ctx.event.id)
        return SKIPPED
    if row.last_event_at is not None and ctx.occurred_at < row.last_event_at:
        logger.info("Out-of-order snapshot %s for subscription %s skipped", ctx.event.id, row.external_id)
        return SKIPPED

    interval = subscription_interval(sub)
    status = SubscriptionStatus.from_provider(sub.get("status"))
    current = SubscriptionStatus(row.status)
    if is_entitled(current) and not is_entitled(status) and _predates_payment(row, ctx.occurred_at):
        # A snapshot taken before the last confirmed payment cannot revoke it.
        status = current

    row.status = status.value
    row.billing_interval = interval.value
    row.current_period_end = resolve_period_end(subscription_period_end(sub), interval, ctx.occurred_at)
    row.price_id = subscription_price_id(sub) or row.price_id
    if sync_cancel_flag:
        row.cancel_at_period_end = bool(sub.get("cancel_at_period_end"))
        row.auto_debit = not row.cancel_at_period_end
    row.last_event_at = ctx.occurred_at
    await ctx.subscriptions.save(row)
    logger.info("Subscription %s synced: status=%s interval=%s", row.external_id, row.status, row.billing_interval)
    return PROCESSED


async def handle_subscription_created(ctx: HandlerContext) -> str:
    return await _apply_subscription_snapshot(ctx, sync_cancel_flag=False)


async def handle_subscription_updated(ctx: HandlerContext) -> str:
    return await _apply_subscription_snapshot(ctx, sync_cancel_flag=True)


async def handle_subscription_deleted(ctx: HandlerContext) -> str:
    sub = ctx.event.object
    row = await ctx.subscriptions.load_for_update(external_id=sub["id"])
    if row is None:
        logger.warning("Deletion of unknown subscription %s ignored", sub.get("id"))
        return SKIPPED
    row.status = SubscriptionStatus.CANCELED.value
    row.current_period_end = None
    row.last_event_at = max(ctx.occurred_at, row.last_event_at or ctx.occurred_at)
    await ctx.subscriptions.save(row)
    logger.info("Subscription %s canceled (user=%s)", row.external_id, row.user_id)
    return PROCESSED


async def handle_invoice_payment_succeeded(ctx: HandlerContext) -> str:
    invoice = ctx.event.object
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        return IGNORED
    row = await _resolve_record(ctx, subscription_id, customer_id=expandable_id(invoice.get("customer")))
    if row is None:
        logger.warning("Payment for unknown subscription %s; event %s skipped", subscription_id, ctx.event.id)
        return SKIPPED

    if _predates_termination(row, ctx.occurred_at):
        # The payment still happened, so it is invoiced below.
        logger.info(
            "Payment event %s predates the end of subscription %s; status stays %s",
            ctx.event.id,
            subscription_id,
            row.status,
        )
    else:
        interval = BillingInterval.parse(row.billing_interval)
        row.status = SubscriptionStatus.ACTIVE.value
        row.current_period_end = resolve_period_end(_invoice_period_end(invoice), interval, ctx.occurred_at)
        row.payment_date = max(ctx.occurred_at, row.payment_date or ctx.occurred_at)
        await ctx.subscriptions.save(row)

    invoice_row, created = await ctx.trigger.record_payment(
        PaymentOccurrence(
            user_id=row.user_id,
            subscription_id=subscription_id,
            payment_reference=invoice["id"],
            amount=cents_to_amount(invoice.get("amount_paid")),
            currency=invoice.get("currency") or "usd",
        )
    )
    if created:
        ctx.deliveries.append(InvoiceDeliveryJob(invoice_row.invoice_id))
    logger.info("Subscription %s activated by invoice %s", subscription_id, invoice["id"])
    return PROCESSED


async def handle_invoice_payment_failed(ctx: HandlerContext) -> str:
    invoice = ctx.event.object
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        return IGNORED
    row = await ctx.subscriptions.load_for_update(external_id=subscription_id)
    if row is None:
        logger.warning("Failed payment for unknown subscription %s", subscription_id)
        return SKIPPED
    if _predates_payment(row, ctx.occurred_at):
        logger.info("Failed-payment event %s predates the last payment; skipped", ctx.event.id)
        return SKIPPED
    row.status = SubscriptionStatus.PAST_DUE.value
    await ctx.subscriptions.save(row)
    logger.warning("Payment failed for subscription %s (invoice %s)", subscription_id, invoice.get("id"))
    return PROCESSED


async def _apply_linked_payment(ctx: HandlerContext, *, incomplete_is_paid: bool) -> str:
    payment = ctx.event.object
    subscription_id = _linked_subscription_id(payment)
    if not subscription_id:
        return IGNORED

    sub = await ctx.client.retrieve_subscription(subscription_id)
    status = SubscriptionStatus.from_provider(sub.get("status"))
    if incomplete_is_paid and status == SubscriptionStatus.INCOMPLETE:
        status = SubscriptionStatus.ACTIVE

    row = await _resolve_record(
        ctx,
        subscription_id,
        customer_id=expandable_id(sub.get("customer")) or expandable_id(payment.get("customer")),
        user_id=(sub.get("metadata") or {}).get("user_id"),
    )
    if row is None:
        logger.warning("Payment %s for unknown subscription %s skipped", payment.get("id"), subscription_id)
        return SKIPPED

    if is_entitled(status):
        interval = subscription_interval(sub)
        row.status = status.value
        row.billing_interval = interval.value
        row.current_period_end = resolve_period_end(subscription_period_end(sub), interval, ctx.occurred_at)
        row.payment_date = max(ctx.occurred_at, row.payment_date or ctx.occurred_at)
        await ctx.subscriptions.save(row)
        logger.info("Subscription %s synced to %s after payment %s", subscription_id, row.status, payment.get("id"))
    else:
        logger.info(
            "Payment %s succeeded but subscription %s is %s; status left unchanged",
            payment.get("id"),
            subscription_id,
            status.value,
        )

    reference = payment_reference(payment)
    invoice_row, created = await ctx.trigger.record_payment(
        PaymentOccurrence(
            user_id=row.user_id,
            subscription_id=subscription_id,
            payment_reference=reference,
            amount=cents_to_amount(payment.get("amount_received") or payment.get("amount")),
            currency=payment.get("currency") or "usd",
        )
    )
    if created:
        ctx.deliveries.append(InvoiceDeliveryJob(invoice_row.invoice_id))
    return PROCESSED


async def handle_payment_intent_succeeded(ctx: HandlerContext) -> str:
    return await _apply_linked_payment(ctx, incomplete_is_paid=False)


async def handle_charge_succeeded(ctx: HandlerContext) -> str:
    # A successful charge proves payment whatever the provider status says.
    return await _apply_linked_payment(ctx, incomplete_is_paid=True)


HANDLERS: dict[EventType, Handler] = {
    EventType.SUBSCRIPTION_CREATED: handle_subscription_created,
    EventType.SUBSCRIPTION_UPDATED: handle_subscription_updated,
    EventType.SUBSCRIPTION_DELETED: handle_subscription_deleted,
    EventType.INVOICE_PAYMENT_SUCCEEDED: handle_invoice_payment_succeeded,
    EventType.INVOICE_PAYMENT_FAILED: handle_invoice_payment_failed,
    EventType.PAYMENT_INTENT_SUCCEEDED: handle_payment_intent_succeeded,
    EventType.CHARGE_SUCCEEDED: handle_charge_succeeded,
}

_unhandled = set(EventType) - set(HANDLERS)
if _unhandled:
    raise RuntimeError(f"Event types without a handler: {sorted(t.value for t in _unhandled)}")


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class EventDispatcher:
    """Serialise, deduplicate and apply verified webhook events.

    Parameters
    ----------
    session_factory:
        Factory for the session each event runs in.
    client:
        Billing provider capability used by handlers that re-fetch state.
    locks:
        Per-subscription lock registry shared with the recovery operations.
    queue:
        Receives invoice deliveries after the event has committed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: BillingClient,
        locks: SubscriptionLocks,
        queue: SideEffectQueue,
    ) -> None:
        self._session_factory = session_factory
        self._client = client
        self._locks = locks
        self._queue = queue

    async def dispatch(self, event: WebhookEvent) -> DispatchResult:
        """Apply *event* and report its outcome.  Never raises for handler errors."""
        try:
            event_type = EventType(event.type)
        except ValueError:
            logger.debug("Unhandled webhook event type: %s", event.type)
            return DispatchResult(event.id, event.type, IGNORED)

        key = _lock_key(event_type, event.object)
        if not key:
            logger.debug("Event %s (%s) is not linked to a subscription", event.id, event.type)
            return DispatchResult(event.id, event.type, IGNORED)

        deliveries: list[InvoiceDeliveryJob] = []
        async with self._locks.hold(key):
            async with self._session_factory() as session:
                try:
                    if not await WebhookEventRepository(session).mark_processed(event.id, event.type):
                        await session.rollback()
                        logger.info("Duplicate delivery of event %s acknowledged", event.id)
                        return DispatchResult(event.id, event.type, DUPLICATE)

                    ctx = HandlerContext(
                        event=event,
                        session=session,
                        client=self._client,
                        subscriptions=SubscriptionRepository(session),
                        trigger=SideEffectTrigger(session),
                    )
                    outcome = await HANDLERS[event_type](ctx)
                    await session.commit()
                    deliveries = ctx.deliveries
                except Exception:
                    await session.rollback()
                    logger.exception(
                        "Handler for event %s (%s) failed; acknowledged without effect, replay it to retry",
                        event.id,
                        event.type,
                    )
                    return DispatchResult(event.id, event.type, FAILED)

        for job in deliveries:
            self._queue.submit(job)
        return DispatchResult(event.id, event.type, outcome)
