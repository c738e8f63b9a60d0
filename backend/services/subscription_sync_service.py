"""Subscription Sync Service - pull-based reconciliation with the provider.

Heals gaps left by missed or failed webhooks. For a (user_id, email) pair the
newest local subscription is compared against the provider's view of its
checkout session and the provider ids, status and period fields are written
back through the state machine. Once a record holds both provider ids a sync
is a read-only no-op.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from database import database
from models import AuditAction, PaymentSessionStatus, utc_now
from services.billing_errors import InvalidTransition, SubscriptionNotFound
from services.subscription_state import (
    SubscriptionStateMachine,
    Trigger,
    find_latest_subscription,
    next_status,
    subscription_state_machine,
    trigger_for_provider_status,
)
from services.webhook_events import SubscriptionPayload, object_id
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    available: bool
    session_id: Optional[str] = None
    subscription: Optional[Dict[str, Any]] = None
    changed: bool = False

    def to_response(self) -> Dict[str, Any]:
        if not self.available:
            return {"success": True, "available": False, "data": None, "sessionId": self.session_id}
        sub = self.subscription or {}
        return {
            "success": True,
            "available": True,
            "data": {
                "providerCustomerId": sub.get("provider_customer_id"),
                "providerSubscriptionId": sub.get("provider_subscription_id"),
                "status": sub.get("status"),
            },
        }


class SubscriptionSyncService:
    def __init__(self, provider, state_machine: Optional[SubscriptionStateMachine] = None):
        self.provider = provider
        self.state_machine = state_machine or subscription_state_machine

    async def _find_owned(self, provider_subscription_id: str, owner_id: Optional[str]) -> Dict[str, Any]:
        subscription = await find_latest_subscription({"provider_subscription_id": provider_subscription_id})
        # Someone else's subscription is reported exactly like a missing one
        if subscription is None or (owner_id and subscription.get("user_id") != owner_id):
            raise SubscriptionNotFound(
                f"No subscription found for {provider_subscription_id}",
                {"subscription_id": provider_subscription_id},
            )
        return subscription

    async def sync(self, user_id: str, email: str) -> SyncResult:
        """Reconcile the newest local subscription for (user_id, email) with the provider.

        Raises:
            SubscriptionNotFound: no local record, or no checkout session to look up
            ProviderError: the provider lookup failed
        """
        subscription = await find_latest_subscription({"user_id": user_id, "email": email})
        if subscription is None:
            raise SubscriptionNotFound("No subscription found for this user", {"user_id": user_id})

        session_id = subscription.get("session_id")

        if subscription.get("provider_customer_id") and subscription.get("provider_subscription_id"):
            logger.info(f"Subscription {subscription['subscription_id']} already synced - nothing to do")
            return SyncResult(available=True, session_id=session_id, subscription=subscription)

        if not session_id:
            raise SubscriptionNotFound(
                "Subscription has no checkout session to reconcile",
                {"subscription_id": subscription["subscription_id"]},
            )

        session = await self.provider.retrieve_checkout_session(session_id, expand=["subscription"])
        provider_sub = session.get("subscription")
        if not provider_sub:
            logger.info(f"Checkout session {session_id} has no provider subscription yet")
            return SyncResult(available=False, session_id=session_id)

        if isinstance(provider_sub, str):
            provider_sub = await self.provider.retrieve_subscription(provider_sub)
        parsed = SubscriptionPayload.from_provider(provider_sub)

        fields = {
            "provider_customer_id": parsed.customer or object_id(session.get("customer")),
            "provider_subscription_id": parsed.id,
            "cancel_at_period_end": parsed.cancel_at_period_end,
            "current_period_start": parsed.current_period_start,
            "current_period_end": parsed.current_period_end,
        }
        fields = {k: v for k, v in fields.items() if v is not None}

        trigger = trigger_for_provider_status(parsed.status, parsed.cancel_at_period_end) or Trigger.CHECKOUT_COMPLETED
        result = await self.state_machine.apply(subscription, trigger, fields=fields, source="reconciliation")
        if result is None and trigger != Trigger.CHECKOUT_COMPLETED:
            # Status does not move from here, but the ids are still attached
            result = await self.state_machine.apply(
                subscription, Trigger.CHECKOUT_COMPLETED, fields=fields, source="reconciliation"
            )
        if result is None:
            logger.info(f"Subscription {subscription['subscription_id']} is {subscription.get('status')} - not reconciled")
            return SyncResult(available=True, session_id=session_id, subscription=subscription)

        db = database.get_db()
        now = utc_now()
        payment_update = {
            "status": PaymentSessionStatus.COMPLETED.value,
            "provider_status": session.get("payment_status"),
            "provider_customer_id": fields.get("provider_customer_id"),
            "payment_date": now,
            "updated_at": now,
        }
        await db.payment_sessions.update_one(
            {"session_id": session_id, "status": PaymentSessionStatus.PENDING.value},
            {"$set": {k: v for k, v in payment_update.items() if v is not None}},
        )

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_RECONCILED,
            actor_role="SYSTEM",
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription["subscription_id"],
            before_state={
                "status": subscription.get("status"),
                "provider_subscription_id": subscription.get("provider_subscription_id"),
            },
            after_state={
                "status": result.get("status"),
                "provider_subscription_id": result.get("provider_subscription_id"),
            },
            metadata={"session_id": session_id, "provider_status": parsed.status},
        )
        logger.info(
            f"Subscription {subscription['subscription_id']} reconciled: "
            f"{subscription.get('status')} -> {result.get('status')}"
        )
        return SyncResult(available=True, session_id=session_id, subscription=result, changed=True)

    async def cancel(
        self,
        provider_subscription_id: str,
        owner_id: Optional[str] = None,
        actor_role: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Schedule cancellation at period end; access continues until then.

        Raises:
            SubscriptionNotFound: unknown subscription (or not owned by owner_id)
            InvalidTransition: the subscription is already cancelled
            ProviderError: the provider call failed; nothing is written locally
        """
        subscription = await self._find_owned(provider_subscription_id, owner_id)

        if next_status(subscription.get("status"), Trigger.CANCEL_REQUESTED) is None:
            raise InvalidTransition(
                f"Subscription is {subscription.get('status')} and cannot be cancelled",
                {"status": subscription.get("status")},
            )

        provider_sub = await self.provider.cancel_at_period_end(provider_subscription_id)
        period_end = None
        if provider_sub.get("id"):
            period_end = SubscriptionPayload.from_provider(provider_sub).current_period_end

        result = await self.state_machine.apply(
            subscription,
            Trigger.CANCEL_REQUESTED,
            fields={"current_period_end": period_end} if period_end else None,
            source="request",
            actor_role=actor_role,
            actor_id=owner_id,
        )

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CANCEL_REQUESTED,
            actor_role=actor_role,
            actor_id=owner_id,
            user_id=subscription.get("user_id"),
            resource_type="subscription",
            resource_id=subscription["subscription_id"],
            metadata={"provider_subscription_id": provider_subscription_id},
        )
        logger.info(f"Cancellation scheduled for subscription {provider_subscription_id}")
        return result

    async def get_provider_subscription(
        self, provider_subscription_id: str, owner_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Provider's current view of a subscription."""
        if owner_id:
            await self._find_owned(provider_subscription_id, owner_id)
        return await self.provider.retrieve_subscription(provider_subscription_id)
