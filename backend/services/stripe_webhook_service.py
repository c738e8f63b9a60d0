"""Stripe Webhook Service - signed, idempotent webhook handling.

Key Principles:
1. Signature verification: nothing is recorded or processed for an event that
   fails verification, and a missing signing secret is a configuration error
2. Idempotency: handlers compute the absolute target state and $set it, so
   redelivery and reordering converge; the provider_events ledger
   short-circuits events already PROCESSED
3. Acknowledge: malformed objects and handler failures are logged, audited and
   marked FAILED in the ledger, and the event is still acknowledged (no retry storms)
4. Server-authoritative: subscription status only moves through the state machine

Events Handled:
- checkout.session.completed
- checkout.session.expired
- customer.subscription.updated
- customer.subscription.deleted
- invoice.payment_failed
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import database
from models import (
    AuditAction,
    CheckoutKind,
    PaymentSessionStatus,
    ProviderEvent,
    ProviderEventStatus,
    Subscription,
    SubscriptionStatus,
    UserBillingProjection,
    utc_now,
)
from services.pricing import get_parent_plan
from services.subscription_state import (
    SubscriptionStateMachine,
    Trigger,
    find_latest_subscription,
    subscription_state_machine,
    trigger_for_provider_status,
    upsert_user_projection,
)
from services.webhook_events import (
    CheckoutCompleted,
    CheckoutExpired,
    InvoicePaymentFailed,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnhandledEvent,
    WebhookEvent,
    parse_event,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


def _drop_none(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


class StripeWebhookService:
    """Verifies, records and dispatches Stripe webhook events."""

    def __init__(self, provider, state_machine: Optional[SubscriptionStateMachine] = None):
        self.provider = provider
        self.state_machine = state_machine or subscription_state_machine
        self._handlers = {
            "checkout.completed": self._handle_checkout_completed,
            "checkout.expired": self._handle_checkout_expired,
            "subscription.updated": self._handle_subscription_updated,
            "subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_failed": self._handle_payment_failed,
        }

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(self, payload: bytes, signature: str) -> WebhookResult:
        """
        Main webhook entry point.

        Raises:
            SignatureError: signature verification failed (route answers 400)
            WebhookConfigError: no signing secret configured (route answers 500)

        Everything past verification is acknowledged: malformed objects, handler
        failures and ledger outages are logged and audited, never surfaced.
        """
        # Step 1: Verify signature - raises before anything is written
        raw_event = self.provider.construct_event(payload, signature)
        event_id = raw_event.get("id") or ""
        event_type = raw_event.get("type") or ""

        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s",
            event_id, event_type, raw_event.get("livemode"),
        )

        try:
            event = parse_event(raw_event)
        except PydanticValidationError as e:
            error = f"Invalid event payload: {e.error_count()} validation error(s)"
            logger.error(
                "WEBHOOK_PAYLOAD_INVALID event_id=%s event_type=%s errors=%s",
                event_id, event_type, e.errors(include_url=False),
            )
            await self._record_failure(event_id, event_type, error, new=True)
            return WebhookResult(event_id, event_type, "Event logged with error", {"error": error})

        if isinstance(event, UnhandledEvent):
            logger.info(f"Ignoring unhandled event type: {event.event_type}")
            return WebhookResult(event.event_id, event.event_type, "Ignored", {"handled": False})

        # Step 2: Ledger - skip events already processed
        skip = await self._open_ledger(event)
        if skip:
            return WebhookResult(event.event_id, event.event_type, skip)

        # Step 3: Dispatch
        try:
            result = await self._handle_event(event)
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event.event_id, event.event_type, str(e),
            )
            await self._record_failure(event.event_id, event.event_type, str(e))
            # Acknowledge anyway; reconciliation or a later event heals the gap
            return WebhookResult(
                event.event_id, event.event_type, "Event logged with error", {"error": str(e)}
            )

        await self._update_ledger(event.event_id, {
            "status": ProviderEventStatus.PROCESSED.value,
            "processed_at": utc_now(),
            "related_user_id": result.get("user_id"),
            "related_subscription_id": result.get("subscription_id"),
        })
        logger.info(
            "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s user_id=%s",
            event.event_id, event.event_type, result.get("user_id"),
        )
        return WebhookResult(event.event_id, event.event_type, "Processed", result)

    # =========================================================================
    # Ledger
    # =========================================================================

    async def _open_ledger(self, event: WebhookEvent) -> Optional[str]:
        """Record the event as PROCESSING; returns a skip message for duplicates.

        A ledger outage is logged and dispatch goes ahead.
        """
        db = database.get_db()
        try:
            existing = await db.provider_events.find_one({"event_id": event.event_id}, {"_id": 0})
            if existing and existing.get("status") == ProviderEventStatus.PROCESSED.value:
                logger.info(f"Event {event.event_id} already processed - skipping")
                return "Already processed"

            if existing:
                await db.provider_events.update_one(
                    {"event_id": event.event_id},
                    {"$set": {"status": ProviderEventStatus.PROCESSING.value, "error": None}},
                )
            else:
                record = ProviderEvent(event_id=event.event_id, type=event.event_type).model_dump()
                await db.provider_events.insert_one(record)
        except DuplicateKeyError:
            logger.info(f"Event {event.event_id} duplicate insert (race) - skipping")
            return "Already processed"
        except PyMongoError as e:
            logger.error("WEBHOOK_LEDGER_FAILED event_id=%s step=open error=%s", event.event_id, e)
        return None

    async def _update_ledger(self, event_id: str, values: Dict[str, Any], upsert: bool = False) -> None:
        if not event_id:
            return
        db = database.get_db()
        try:
            await db.provider_events.update_one({"event_id": event_id}, {"$set": values}, upsert=upsert)
        except PyMongoError as e:
            logger.error(
                "WEBHOOK_LEDGER_FAILED event_id=%s step=%s error=%s", event_id, values.get("status"), e
            )

    async def _record_failure(self, event_id: str, event_type: str, error: str, new: bool = False) -> None:
        values = {
            "status": ProviderEventStatus.FAILED.value,
            "processed_at": utc_now(),
            "error": error,
        }
        if new:
            values = {**ProviderEvent(event_id=event_id, type=event_type).model_dump(), **values}
        await self._update_ledger(event_id, values, upsert=new)

        await create_audit_log(
            action=AuditAction.WEBHOOK_EVENT_FAILED,
            actor_role="SYSTEM",
            metadata={
                "event_id": event_id,
                "event_type": event_type,
                "error": error,
            },
        )

    async def _handle_event(self, event: WebhookEvent) -> Dict[str, Any]:
        handler = self._handlers.get(event.kind)
        if handler is None:
            return {"handled": False}
        return await handler(event)

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_checkout_completed(self, event: CheckoutCompleted) -> Dict[str, Any]:
        """Complete the payment session and attach provider ids.

        Parent checkouts carry a trialing Subscription linked by session id; it
        keeps its status here and only learns the provider ids. Seat purchases
        have no Subscription and project straight to an active licence.
        """
        db = database.get_db()
        session = event.session
        now = utc_now()

        payment_session = await db.payment_sessions.find_one({"session_id": session.id}, {"_id": 0})
        if payment_session is None:
            logger.warning(f"No payment session found for checkout {session.id}")
        elif payment_session.get("status") != PaymentSessionStatus.COMPLETED.value:
            update = _drop_none({
                "status": PaymentSessionStatus.COMPLETED.value,
                "provider_status": session.payment_status,
                "provider_customer_id": session.customer,
                "payment_intent_id": session.payment_intent,
                "payment_date": now,
                "updated_at": now,
            })
            await db.payment_sessions.update_one(
                {"session_id": session.id, "status": {"$ne": PaymentSessionStatus.COMPLETED.value}},
                {"$set": update},
            )
            await create_audit_log(
                action=AuditAction.PAYMENT_SESSION_COMPLETED,
                actor_role="SYSTEM",
                user_id=payment_session.get("user_id"),
                resource_type="payment_session",
                resource_id=session.id,
                before_state={"status": payment_session.get("status")},
                after_state={"status": PaymentSessionStatus.COMPLETED.value},
                metadata={"event_id": event.event_id},
            )

        subscription = await find_latest_subscription({"session_id": session.id})
        if subscription is None and session.subscription:
            subscription = await find_latest_subscription({"provider_subscription_id": session.subscription})
        if subscription is None and session.metadata.get("subscription_type") == "parent":
            subscription = await self._recover_parent_subscription(event, payment_session)

        if subscription is not None:
            await self.state_machine.apply(
                subscription,
                Trigger.CHECKOUT_COMPLETED,
                fields=_drop_none({
                    "provider_customer_id": session.customer,
                    "provider_subscription_id": session.subscription,
                }),
            )
            return {"user_id": subscription["user_id"], "subscription_id": subscription["subscription_id"]}

        metadata = session.metadata
        user_id = (payment_session or {}).get("user_id") or metadata.get("user_id")
        kind = (payment_session or {}).get("checkout_kind") or metadata.get("checkout_kind")

        if user_id and kind == CheckoutKind.SEATS.value:
            seat_count = (payment_session or {}).get("seat_count") or metadata.get("seat_count")
            projection = UserBillingProjection(
                plan_type=(payment_session or {}).get("plan_type") or metadata.get("plan_type"),
                status=SubscriptionStatus.ACTIVE.value,
                provider_customer_id=session.customer,
                seat_count=int(seat_count) if seat_count is not None else None,
                total_amount=(payment_session or {}).get("total_amount") or session.amount_total,
                session_id=session.id,
            ).model_dump(exclude_none=True)
            await upsert_user_projection(user_id, projection, has_subscription=True)
            return {"user_id": user_id}

        logger.warning(
            f"Checkout {session.id} completed with no linked subscription record - awaiting reconciliation"
        )
        return {"user_id": user_id, "handled": False}

    async def _recover_parent_subscription(
        self, event: CheckoutCompleted, payment_session: Optional[Dict[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        """Recreate the trialing record a failed checkout persist never wrote.

        Keyed by session id, so concurrent deliveries converge on one record.
        """
        session = event.session
        metadata = session.metadata
        user_id = (payment_session or {}).get("user_id") or metadata.get("user_id")
        email = (payment_session or {}).get("email") or session.email
        if not user_id or not email:
            logger.warning(f"Checkout {session.id} has no user_id/email to rebuild its subscription from")
            return None

        plan = get_parent_plan(metadata.get("plan_type") or (payment_session or {}).get("plan_type"))
        record = Subscription(
            user_id=user_id,
            email=email,
            plan_type=plan["plan_type"],
            status=SubscriptionStatus.TRIALING,
            session_id=session.id,
            trial_start=utc_now(),
            interval=plan["interval"],
            amount=plan["amount"],
        ).model_dump()

        db = database.get_db()
        await db.subscriptions.update_one(
            {"session_id": session.id},
            {"$setOnInsert": record},
            upsert=True,
        )
        subscription = await find_latest_subscription({"session_id": session.id})

        logger.warning(
            "SUBSCRIPTION_RECOVERED session_id=%s user_id=%s subscription_id=%s",
            session.id, user_id, subscription["subscription_id"],
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_RECOVERED,
            actor_role="SYSTEM",
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription["subscription_id"],
            metadata={"event_id": event.event_id, "session_id": session.id},
        )
        return subscription

    async def _handle_checkout_expired(self, event: CheckoutExpired) -> Dict[str, Any]:
        db = database.get_db()
        # Guarded on pending so a completed session is never downgraded
        result = await db.payment_sessions.update_one(
            {"session_id": event.session_id, "status": PaymentSessionStatus.PENDING.value},
            {"$set": {"status": PaymentSessionStatus.EXPIRED.value, "updated_at": utc_now()}},
        )
        if result.modified_count:
            logger.info(f"Payment session {event.session_id} expired")
            await create_audit_log(
                action=AuditAction.PAYMENT_SESSION_EXPIRED,
                actor_role="SYSTEM",
                resource_type="payment_session",
                resource_id=event.session_id,
                metadata={"event_id": event.event_id},
            )
        else:
            logger.info(f"Payment session {event.session_id} not pending - expiry ignored")
        return {"session_id": event.session_id}

    async def _handle_subscription_updated(self, event: SubscriptionUpdated) -> Dict[str, Any]:
        provider_sub = event.subscription
        subscription = await find_latest_subscription({"provider_subscription_id": provider_sub.id})
        if subscription is None:
            logger.warning(f"No subscription found for provider subscription {provider_sub.id}")
            return {"handled": False}

        trigger = trigger_for_provider_status(provider_sub.status, provider_sub.cancel_at_period_end)
        if trigger is None:
            logger.info(f"Provider status {provider_sub.status} for {provider_sub.id} has no transition")
            return {"user_id": subscription["user_id"], "subscription_id": subscription["subscription_id"]}

        await self.state_machine.apply(
            subscription,
            trigger,
            fields=_drop_none({
                "provider_customer_id": provider_sub.customer,
                "cancel_at_period_end": provider_sub.cancel_at_period_end,
                "current_period_start": provider_sub.current_period_start,
                "current_period_end": provider_sub.current_period_end,
            }),
        )
        return {"user_id": subscription["user_id"], "subscription_id": subscription["subscription_id"]}

    async def _handle_subscription_deleted(self, event: SubscriptionDeleted) -> Dict[str, Any]:
        provider_sub = event.subscription
        subscription = await find_latest_subscription({"provider_subscription_id": provider_sub.id})
        if subscription is None:
            logger.warning(f"No subscription found for deleted provider subscription {provider_sub.id}")
            return {"handled": False}

        await self.state_machine.apply(subscription, Trigger.DELETED)
        return {"user_id": subscription["user_id"], "subscription_id": subscription["subscription_id"]}

    async def _handle_payment_failed(self, event: InvoicePaymentFailed) -> Dict[str, Any]:
        subscription = None
        if event.provider_subscription_id:
            subscription = await find_latest_subscription(
                {"provider_subscription_id": event.provider_subscription_id}
            )
        if subscription is None and event.provider_customer_id:
            subscription = await find_latest_subscription(
                {"provider_customer_id": event.provider_customer_id}
            )
        if subscription is None:
            logger.warning(f"No subscription found for failed invoice {event.invoice_id}")
            return {"handled": False}

        await self.state_machine.apply(
            subscription,
            Trigger.PAYMENT_FAILED,
            fields={"last_payment_error": event.error_message},
        )
        return {"user_id": subscription["user_id"], "subscription_id": subscription["subscription_id"]}
