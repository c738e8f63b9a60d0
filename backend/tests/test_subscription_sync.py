"""
Reconciliation: convergence without writes, not-yet-available sessions,
newest-record selection and cancel-at-period-end requests.
"""
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock

from services.billing_errors import InvalidTransition, ProviderError, SubscriptionNotFound
from services.subscription_sync_service import SubscriptionSyncService

USER_ID = "parent-1"
EMAIL = "parent@example.com"


def _sub(subscription_id, created_day, session_id="cs_1", status="trialing", **extra):
    doc = {
        "subscription_id": subscription_id,
        "user_id": USER_ID,
        "email": EMAIL,
        "plan_type": "singleMonthly",
        "status": status,
        "session_id": session_id,
        "cancel_at_period_end": False,
        "created_at": datetime(2025, 1, created_day, tzinfo=timezone.utc),
    }
    doc.update(extra)
    return doc


PROVIDER_SUB = {
    "id": "sub_live_1",
    "customer": "cus_1",
    "status": "active",
    "cancel_at_period_end": False,
    "current_period_start": 1735689600,
    "current_period_end": 1738368000,
}


class TestSync:

    @pytest.mark.asyncio
    async def test_fills_ids_and_status_from_provider(self, fake_db, provider):
        fake_db.subscriptions.docs.append(_sub("local-1", 1))
        fake_db.payment_sessions.docs.append({"session_id": "cs_1", "user_id": USER_ID, "status": "pending"})
        provider.retrieve_checkout_session = AsyncMock(return_value={
            "id": "cs_1", "customer": "cus_1", "payment_status": "paid", "subscription": dict(PROVIDER_SUB),
        })

        result = await SubscriptionSyncService(provider).sync(USER_ID, EMAIL)

        assert result.available is True
        assert result.changed is True
        stored = fake_db.subscriptions.docs[0]
        assert stored["provider_subscription_id"] == "sub_live_1"
        assert stored["provider_customer_id"] == "cus_1"
        assert stored["status"] == "active"
        assert fake_db.payment_sessions.docs[0]["status"] == "completed"
        assert fake_db.users.docs[0]["subscription"]["status"] == "active"
        provider.retrieve_checkout_session.assert_awaited_once_with("cs_1", expand=["subscription"])

        response = result.to_response()
        assert response["data"] == {
            "providerCustomerId": "cus_1",
            "providerSubscriptionId": "sub_live_1",
            "status": "active",
        }

    @pytest.mark.asyncio
    async def test_converged_record_performs_no_writes(self, fake_db, provider):
        fake_db.subscriptions.docs.append(
            _sub("local-1", 1, status="active", provider_customer_id="cus_1", provider_subscription_id="sub_live_1")
        )
        service = SubscriptionSyncService(provider)

        for _ in range(3):
            result = await service.sync(USER_ID, EMAIL)
            assert result.subscription["provider_subscription_id"] == "sub_live_1"

        assert fake_db.writes(exclude=()) == []
        provider.retrieve_checkout_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_session_without_subscription_is_not_yet_available(self, fake_db, provider):
        fake_db.subscriptions.docs.append(_sub("local-1", 1))
        provider.retrieve_checkout_session = AsyncMock(return_value={"id": "cs_1", "subscription": None})

        result = await SubscriptionSyncService(provider).sync(USER_ID, EMAIL)

        assert result.to_response() == {"success": True, "available": False, "data": None, "sessionId": "cs_1"}
        assert fake_db.writes(exclude=()) == []

    @pytest.mark.asyncio
    async def test_newest_record_wins(self, fake_db, provider):
        fake_db.subscriptions.docs.extend([
            _sub("old", 1, session_id="cs_old"),
            _sub("new", 5, session_id="cs_new"),
        ])
        provider.retrieve_checkout_session = AsyncMock(return_value={"id": "cs_new", "subscription": dict(PROVIDER_SUB)})

        await SubscriptionSyncService(provider).sync(USER_ID, EMAIL)

        provider.retrieve_checkout_session.assert_awaited_once_with("cs_new", expand=["subscription"])
        by_id = {d["subscription_id"]: d for d in fake_db.subscriptions.docs}
        assert by_id["new"]["provider_subscription_id"] == "sub_live_1"
        assert "provider_subscription_id" not in by_id["old"]

    @pytest.mark.asyncio
    async def test_unknown_user_is_not_found(self, fake_db, provider):
        with pytest.raises(SubscriptionNotFound):
            await SubscriptionSyncService(provider).sync("nobody", EMAIL)

    @pytest.mark.asyncio
    async def test_missing_session_id_is_not_found(self, fake_db, provider):
        fake_db.subscriptions.docs.append(_sub("local-1", 1, session_id=None))

        with pytest.raises(SubscriptionNotFound):
            await SubscriptionSyncService(provider).sync(USER_ID, EMAIL)

    @pytest.mark.asyncio
    async def test_provider_failure_propagates(self, fake_db, provider):
        fake_db.subscriptions.docs.append(_sub("local-1", 1))
        provider.retrieve_checkout_session = AsyncMock(side_effect=ProviderError("timeout"))

        with pytest.raises(ProviderError):
            await SubscriptionSyncService(provider).sync(USER_ID, EMAIL)
        assert fake_db.writes(exclude=()) == []


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_schedules_end_of_period(self, fake_db, provider):
        fake_db.subscriptions.docs.append(_sub("local-1", 1, status="active", provider_subscription_id="sub_live_1"))
        provider.cancel_at_period_end = AsyncMock(return_value={**PROVIDER_SUB, "cancel_at_period_end": True})

        result = await SubscriptionSyncService(provider).cancel("sub_live_1", owner_id=USER_ID)

        assert result["status"] == "cancel_at_period_end"
        assert result["cancel_at_period_end"] is True
        assert fake_db.subscriptions.docs[0]["status"] == "cancel_at_period_end"
        provider.cancel_at_period_end.assert_awaited_once_with("sub_live_1")

    @pytest.mark.asyncio
    async def test_cancel_on_cancelled_is_conflict(self, fake_db, provider):
        fake_db.subscriptions.docs.append(_sub("local-1", 1, status="cancelled", provider_subscription_id="sub_live_1"))

        with pytest.raises(InvalidTransition):
            await SubscriptionSyncService(provider).cancel("sub_live_1")

        provider.cancel_at_period_end.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_unknown_or_foreign_is_not_found(self, fake_db, provider):
        fake_db.subscriptions.docs.append(_sub("local-1", 1, status="active", provider_subscription_id="sub_live_1"))
        service = SubscriptionSyncService(provider)

        with pytest.raises(SubscriptionNotFound):
            await service.cancel("sub_missing")
        with pytest.raises(SubscriptionNotFound):
            await service.cancel("sub_live_1", owner_id="another-parent")

        provider.cancel_at_period_end.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_failure_leaves_record_untouched(self, fake_db, provider):
        fake_db.subscriptions.docs.append(_sub("local-1", 1, status="active", provider_subscription_id="sub_live_1"))
        provider.cancel_at_period_end = AsyncMock(side_effect=ProviderError("declined"))

        with pytest.raises(ProviderError):
            await SubscriptionSyncService(provider).cancel("sub_live_1")

        assert fake_db.subscriptions.docs[0]["status"] == "active"
