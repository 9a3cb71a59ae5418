"""Tests for confirm, fix-status, force-activate and update-payment-method."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from billing_core.state.locks import SubscriptionLocks
from billing_core.state.repository import InvoiceRepository, SubscriptionRepository
from conftest import future, load_subscription, past, provider_subscription, seed_subscription
from sqlalchemy.ext.asyncio import AsyncSession

from billing_api.services.billing_client import RESOURCE_ALREADY_EXISTS
from billing_api.services.errors import (
    BillingProviderError,
    StaleSubscriptionError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from billing_api.services.recovery_service import RecoveryService


@pytest.fixture()
def service(
    session: AsyncSession,
    billing_client: AsyncMock,
    locks: SubscriptionLocks,
    queue: MagicMock,
) -> RecoveryService:
    return RecoveryService(
        session,
        billing_client,
        locks,
        queue,
        confirm_wait_seconds=0.0,
        payment_method_wait_seconds=0.0,
    )


def _with_intent(status: str, intent_status: str, **kwargs) -> dict:
    return provider_subscription(
        status=status,
        latest_invoice={"id": "in_1", "payment_intent": {"id": "pi_1", "status": intent_status}},
        **kwargs,
    )


class TestConfirm:
    @pytest.mark.asyncio
    async def test_active_provider_syncs(self, service: RecoveryService, billing_client: AsyncMock, session_factory) -> None:
        await seed_subscription(session_factory)
        end = future(365)
        billing_client.retrieve_subscription.return_value = provider_subscription(interval="year", period_end=end)

        result = await service.confirm("user-1")

        assert result["message"] == "Subscription confirmed and activated"
        row = await load_subscription(session_factory)
        assert row.status == "active"
        assert row.billing_interval == "year"
        assert row.current_period_end == end.replace(microsecond=0)
        assert row.payment_date is not None

    @pytest.mark.asyncio
    async def test_incomplete_with_paid_intent_rechecks_once(
        self, service: RecoveryService, billing_client: AsyncMock, session_factory
    ) -> None:
        await seed_subscription(session_factory)
        billing_client.retrieve_subscription.side_effect = [
            _with_intent("incomplete", "succeeded"),
            provider_subscription(status="active", period_end=future()),
        ]
        await service.confirm("user-1")
        assert billing_client.retrieve_subscription.await_count == 2
        assert (await load_subscription(session_factory)).status == "active"

    @pytest.mark.asyncio
    async def test_not_converged_reports_state(
        self, service: RecoveryService, billing_client: AsyncMock, session_factory
    ) -> None:
        await seed_subscription(session_factory)
        billing_client.retrieve_subscription.side_effect = [
            _with_intent("incomplete", "succeeded"),
            provider_subscription(status="incomplete"),
        ]
        with pytest.raises(SubscriptionStateError) as exc_info:
            await service.confirm("user-1")
        assert exc_info.value.status == "incomplete"
        assert billing_client.retrieve_subscription.await_count == 2
        assert (await load_subscription(session_factory)).status == "incomplete"

    @pytest.mark.asyncio
    async def test_unpaid_incomplete_does_not_wait(
        self, service: RecoveryService, billing_client: AsyncMock, session_factory
    ) -> None:
        await seed_subscription(session_factory)
        billing_client.retrieve_subscription.return_value = _with_intent("incomplete", "requires_payment_method")
        with pytest.raises(SubscriptionStateError):
            await service.confirm("user-1")
        assert billing_client.retrieve_subscription.await_count == 1

    @pytest.mark.asyncio
    async def test_confirm_twice_keeps_payment_date(
        self, service: RecoveryService, billing_client: AsyncMock, session_factory
    ) -> None:
        await seed_subscription(session_factory)
        billing_client.retrieve_subscription.return_value = provider_subscription(period_end=future())
        await service.confirm("user-1")
        first = await load_subscription(session_factory)
        await service.confirm("user-1")
        second = await load_subscription(session_factory)
        assert second.payment_date == first.payment_date
        assert second.current_period_end == first.current_period_end

    @pytest.mark.asyncio
    async def test_no_subscription(self, service: RecoveryService) -> None:
        with pytest.raises(SubscriptionNotFoundError):
            await service.confirm("user-1")


class TestFixStatus:
    @pytest.mark.asyncio
    async def test_already_active_is_noop(self, service: RecoveryService, billing_client: AsyncMock, session_factory) -> None:
        await seed_subscription(session_factory, status="active", period_end=future())
        result = await service.fix_status("user-1")
        assert result["message"] == "Subscription is already active"
        billing_client.retrieve_subscription.assert_not_called()

    @pytest.mark.asyncio
    async def test_matching_charge_activates_and_records_invoice(
        self, service: RecoveryService, billing_client: AsyncMock, queue: MagicMock, session_factory
    ) -> None:
        await seed_subscription(session_factory)
        billing_client.retrieve_subscription.side_effect = [
            _with_intent("incomplete", "requires_payment_method"),
            provider_subscription(status="incomplete"),
        ]
        billing_client.list_charges.return_value = [
            {"id": "ch_other", "status": "succeeded", "metadata": {"subscription_id": "sub_other"}},
            {"id": "ch_1", "status": "succeeded", "metadata": {"subscription_id": "sub_1"}, "amount": 999},
        ]

        result = await service.fix_status("user-1")

        assert result["subscription"]["status"] == "active"
        row = await load_subscription(session_factory)
        assert row.status == "active"
        assert row.current_period_end > datetime.now(UTC) + timedelta(days=29)
        async with session_factory() as sess:
            assert await InvoiceRepository(sess).get_by_payment_reference("ch_1") is not None
        queue.submit.assert_called_once()
        billing_client.list_payment_intents.assert_not_called()

    @pytest.mark.asyncio
    async def test_charge_matched_by_description(
        self, service: RecoveryService, billing_client: AsyncMock, session_factory
    ) -> None:
        await seed_subscription(session_factory)
        billing_client.retrieve_subscription.return_value = provider_subscription(status="incomplete")
        billing_client.list_charges.return_value = [
            {"id": "ch_1", "status": "succeeded", "description": "Subscription update sub_1", "invoice": "in_7"},
        ]
        await service.fix_status("user-1")
        async with session_factory() as sess:
            assert await InvoiceRepository(sess).get_by_payment_reference("in_7") is not None

    @pytest.mark.asyncio
    async def test_latest_invoice_intent_used(self, service: RecoveryService, billing_client: AsyncMock, session_factory) -> None:
        await seed_subscription(session_factory)
        billing_client.retrieve_subscription.return_value = _with_intent("incomplete", "succeeded")
        billing_client.list_charges.return_value = []
        await service.fix_status("user-1")
        assert (await load_subscription(session_factory)).status == "active"
        billing_client.list_payment_intents.assert_not_called()
        async with session_factory() as sess:
            assert await InvoiceRepository(sess).get_by_payment_reference("in_1") is not None

    @pytest.mark.asyncio
    async def test_charge_recorded_under_its_payment_intent(
        self, service: RecoveryService, billing_client: AsyncMock, session_factory
    ) -> None:
        await seed_subscription(session_factory)
        billing_client.retrieve_subscription.return_value = provider_subscription(status="incomplete")
        billing_client.list_charges.return_value = [
            {
                "id": "ch_3",
                "status": "succeeded",
                "payment_intent": "pi_3",
                "metadata": {"subscription_id": "sub_1"},
                "amount": 999,
            },
        ]
        await service.fix_status("user-1")
        async with session_factory() as sess:
            invoices = await InvoiceRepository(sess).list_recent(10)
        assert [i.payment_reference for i in invoices] == ["pi_3"]

    @pytest.mark.asyncio
    async def test_intent_list_searched_last(self, service: RecoveryService, billing_client: AsyncMock, session_factory) -> None:
        await seed_subscription(session_factory)
        billing_client.retrieve_subscription.return_value = provider_subscription(status="past_due")
        billing_client.list_charges.return_value = [{"id": "ch_1", "status": "failed", "metadata": {"subscription_id": "sub_1"}}]
        billing_client.list_payment_intents.return_value = [
            {"id": "pi_9", "status": "succeeded", "metadata": {"subscription_id": "sub_1"}, "amount_received": 500},
        ]
        await service.fix_status("user-1")
        billing_client.list_payment_intents.assert_awaited_once_with("cus_1", limit=5)
        assert (await load_subscription(session_factory)).status == "active"

    @pytest.mark.asyncio
    async def test_no_payment_found(self, service: RecoveryService, billing_client: AsyncMock, session_factory) -> None:
        await seed_subscription(session_factory)
        billing_client.retrieve_subscription.return_value = provider_subscription(status="incomplete")
        billing_client.list_charges.return_value = []
        billing_client.list_payment_intents.return_value = []
        with pytest.raises(SubscriptionStateError, match="No successful payment"):
            await service.fix_status("user-1")
        assert (await load_subscription(session_factory)).status == "incomplete"

    @pytest.mark.asyncio
    async def test_entitled_provider_without_payment_syncs(
        self, service: RecoveryService, billing_client: AsyncMock, session_factory
    ) -> None:
        await seed_subscription(session_factory)
        billing_client.retrieve_subscription.return_value = provider_subscription(status="trialing", period_end=future(7))
        billing_client.list_charges.return_value = []
        billing_client.list_payment_intents.return_value = []
        await service.fix_status("user-1")
        assert (await load_subscription(session_factory)).status == "trialing"

    @pytest.mark.asyncio
    async def test_second_call_does_not_duplicate_invoice(
        self, service: RecoveryService, billing_client: AsyncMock, queue: MagicMock, session_factory
    ) -> None:
        await seed_subscription(session_factory)
        billing_client.retrieve_subscription.return_value = provider_subscription(status="incomplete")
        billing_client.list_charges.return_value = [
            {"id": "ch_1", "status": "succeeded", "metadata": {"subscription_id": "sub_1"}, "amount": 999},
        ]
        await service.fix_status("user-1")
        await service.fix_status("user-1")
        async with session_factory() as sess:
            assert len(await InvoiceRepository(sess).list_recent(10)) == 1
        assert queue.submit.call_count == 1


class TestForceActivate:
    @pytest.mark.asyncio
    async def test_activates_and_clears_cancel_flag(
        self, service: RecoveryService, billing_client: AsyncMock, session_factory
    ) -> None:
        await seed_subscription(session_factory, status="past_due", cancel_at_period_end=True)
        billing_client.retrieve_subscription.return_value = provider_subscription(
            status="past_due", interval="year", cancel_at_period_end=True
        )

        result = await service.force_activate("user-1")

        billing_client.update_subscription.assert_awaited_once_with("sub_1", cancel_at_period_end=False)
        assert result["provider_status"] == "past_due"
        row = await load_subscription(session_factory)
        assert row.status == "active"
        assert row.cancel_at_period_end is False
        assert row.auto_debit is True
        assert row.current_period_end > datetime.now(UTC) + timedelta(days=364)

    @pytest.mark.asyncio
    async def test_past_provider_period_end_ignored(
        self, service: RecoveryService, billing_client: AsyncMock, session_factory
    ) -> None:
        await seed_subscription(session_factory, status="past_due")
        billing_client.retrieve_subscription.return_value = provider_subscription(status="past_due", period_end=past(3))
        await service.force_activate("user-1")
        row = await load_subscription(session_factory)
        assert row.current_period_end > datetime.now(UTC)

    @pytest.mark.asyncio
    async def test_provider_flag_failure_does_not_block(
        self, service: RecoveryService, billing_client: AsyncMock, session_factory
    ) -> None:
        await seed_subscription(session_factory, status="past_due", cancel_at_period_end=True)
        billing_client.retrieve_subscription.return_value = provider_subscription(cancel_at_period_end=True)
        billing_client.update_subscription.side_effect = BillingProviderError("rate limited")
        await service.force_activate("user-1")
        assert (await load_subscription(session_factory)).status == "active"

    @pytest.mark.asyncio
    async def test_twice_gives_identical_state(
        self, service: RecoveryService, billing_client: AsyncMock, session_factory
    ) -> None:
        await seed_subscription(session_factory, status="past_due")
        billing_client.retrieve_subscription.return_value = provider_subscription(status="past_due", period_end=future())
        await service.force_activate("user-1")
        first = await load_subscription(session_factory)

        result = await service.force_activate("user-1")

        second = await load_subscription(session_factory)
        assert result["message"] == "Subscription is already active"
        assert (second.status, second.current_period_end, second.payment_date, second.cancel_at_period_end) == (
            first.status,
            first.current_period_end,
            first.payment_date,
            first.cancel_at_period_end,
        )

    @pytest.mark.asyncio
    async def test_record_moved_to_other_subscription_is_not_written(
        self, service: RecoveryService, billing_client: AsyncMock, session_factory
    ) -> None:
        await seed_subscription(session_factory, status="past_due")

        async def retrieve_after_move(*args, **kwargs):
            # A webhook re-points the record while the provider call is in flight.
            async with session_factory() as sess:
                repo = SubscriptionRepository(sess)
                row = await repo.load_for_update(user_id="user-1")
                row.external_id = "sub_2"
                await repo.save(row)
                await sess.commit()
            return provider_subscription(status="past_due")

        billing_client.retrieve_subscription.side_effect = retrieve_after_move

        with pytest.raises(StaleSubscriptionError, match="moved from sub_1 to sub_2"):
            await service.force_activate("user-1")

        row = await load_subscription(session_factory)
        assert row.external_id == "sub_2"
        assert row.status == "past_due"


class TestUpdatePaymentMethod:
    @pytest.mark.asyncio
    async def test_requires_an_identifier(self, service: RecoveryService) -> None:
        with pytest.raises(ValueError, match="Payment intent ID is required"):
            await service.update_payment_method("user-1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("intent_status", "message"),
        [
            ("requires_payment_method", "requires payment method"),
            ("canceled", "canceled"),
            ("requires_action", "not ready"),
        ],
    )
    async def test_unusable_intent_rejected(
        self,
        service: RecoveryService,
        billing_client: AsyncMock,
        session_factory,
        intent_status: str,
        message: str,
    ) -> None:
        await seed_subscription(session_factory)
        billing_client.retrieve_payment_intent.return_value = {"id": "pi_1", "status": intent_status}
        with pytest.raises(SubscriptionStateError, match=message) as exc_info:
            await service.update_payment_method("user-1", payment_intent_id="pi_1")
        assert exc_info.value.status == intent_status

    @pytest.mark.asyncio
    async def test_attaches_and_activates(self, service: RecoveryService, billing_client: AsyncMock, session_factory) -> None:
        await seed_subscription(session_factory, status="past_due")
        billing_client.retrieve_payment_intent.return_value = {"id": "pi_1", "status": "succeeded", "payment_method": "pm_1"}
        billing_client.update_subscription.return_value = provider_subscription(status="active", period_end=future())

        await service.update_payment_method("user-1", payment_intent_id="pi_1")

        billing_client.attach_payment_method.assert_awaited_once_with("pm_1", customer_id="cus_1")
        billing_client.update_customer.assert_awaited_once_with(
            "cus_1", invoice_settings={"default_payment_method": "pm_1"}
        )
        billing_client.update_subscription.assert_awaited_once_with(
            "sub_1", default_payment_method="pm_1", collection_method="charge_automatically"
        )
        assert (await load_subscription(session_factory)).status == "active"

    @pytest.mark.asyncio
    async def test_already_attached_method_accepted(
        self, service: RecoveryService, billing_client: AsyncMock, session_factory
    ) -> None:
        await seed_subscription(session_factory)
        billing_client.attach_payment_method.side_effect = BillingProviderError("attached", code=RESOURCE_ALREADY_EXISTS)
        billing_client.update_subscription.return_value = provider_subscription(status="active", period_end=future())
        await service.update_payment_method("user-1", payment_method_id="pm_1")
        assert (await load_subscription(session_factory)).status == "active"

    @pytest.mark.asyncio
    async def test_update_failure_pays_latest_invoice(
        self, service: RecoveryService, billing_client: AsyncMock, session_factory
    ) -> None:
        await seed_subscription(session_factory)
        billing_client.update_subscription.side_effect = BillingProviderError("cannot update")
        billing_client.retrieve_subscription.side_effect = [
            provider_subscription(status="incomplete", latest_invoice={"id": "in_1", "status": "draft"}),
            provider_subscription(status="active", period_end=future()),
        ]

        await service.update_payment_method("user-1", payment_method_id="pm_1")

        billing_client.finalize_invoice.assert_awaited_once_with("in_1")
        billing_client.pay_invoice.assert_awaited_once_with("in_1", payment_method="pm_1")
        assert (await load_subscription(session_factory)).status == "active"

    @pytest.mark.asyncio
    async def test_incomplete_result_rechecked_once(
        self, service: RecoveryService, billing_client: AsyncMock, session_factory
    ) -> None:
        await seed_subscription(session_factory)
        billing_client.update_subscription.return_value = provider_subscription(status="incomplete")
        billing_client.retrieve_subscription.return_value = provider_subscription(status="incomplete")

        result = await service.update_payment_method("user-1", payment_method_id="pm_1")

        assert billing_client.retrieve_subscription.await_count == 1
        assert result["subscription"]["status"] == "incomplete"

    @pytest.mark.asyncio
    async def test_requires_confirmation_is_confirmed(
        self, service: RecoveryService, billing_client: AsyncMock, session_factory
    ) -> None:
        await seed_subscription(session_factory)
        billing_client.retrieve_payment_intent.return_value = {"id": "pi_1", "status": "requires_confirmation"}
        billing_client.confirm_payment_intent.return_value = {
            "id": "pi_1",
            "status": "succeeded",
            "payment_method": {"id": "pm_2"},
        }
        billing_client.update_subscription.return_value = provider_subscription(status="active", period_end=future())
        await service.update_payment_method("user-1", payment_intent_id="pi_1")
        billing_client.attach_payment_method.assert_awaited_once_with("pm_2", customer_id="cus_1")
