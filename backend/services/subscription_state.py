"""Subscription state machine.

States: trialing, active, past_due, cancel_at_period_end, cancelled (terminal).

The transition table is pure data; ``next_status`` looks a trigger up against
the current status and returns the target status, or None when the trigger
does not apply (e.g. anything arriving after cancellation). Webhook handlers
treat None as "log and acknowledge"; request-driven callers raise
InvalidTransition.

``SubscriptionStateMachine.apply`` persists a transition as an absolute
``$set`` and upserts the user billing projection in the same logical step.
Writes are skipped when the record already holds the target state, so
redelivered events and repeated reconciliation converge without churn.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from database import database
from models import AuditAction, SubscriptionStatus, UserBillingProjection, utc_now
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


class Trigger(str, Enum):
    CHECKOUT_COMPLETED = "checkout.completed"
    PROVIDER_ACTIVE = "provider.active"
    PROVIDER_PAST_DUE = "provider.past_due"
    PROVIDER_TRIALING = "provider.trialing"
    PROVIDER_CANCEL_SCHEDULED = "provider.cancel_at_period_end"
    PAYMENT_FAILED = "invoice.payment_failed"
    CANCEL_REQUESTED = "cancel.requested"
    DELETED = "subscription.deleted"


TRIALING = SubscriptionStatus.TRIALING
ACTIVE = SubscriptionStatus.ACTIVE
PAST_DUE = SubscriptionStatus.PAST_DUE
CANCEL_AT_PERIOD_END = SubscriptionStatus.CANCEL_AT_PERIOD_END
CANCELLED = SubscriptionStatus.CANCELLED

NON_TERMINAL = (TRIALING, ACTIVE, PAST_DUE, CANCEL_AT_PERIOD_END)

# Statuses that keep product access on the user projection
ACCESS_STATUSES = {TRIALING, ACTIVE, CANCEL_AT_PERIOD_END}

# trigger -> {from_status: to_status}; a missing entry means "not applicable"
TRANSITIONS: Dict[Trigger, Dict[SubscriptionStatus, SubscriptionStatus]] = {
    # Attaches provider ids only; a trial stays a trial until the provider confirms
    Trigger.CHECKOUT_COMPLETED: {s: s for s in NON_TERMINAL},
    Trigger.PROVIDER_ACTIVE: {
        TRIALING: ACTIVE,
        ACTIVE: ACTIVE,
        PAST_DUE: ACTIVE,
        CANCEL_AT_PERIOD_END: ACTIVE,  # provider reports cancellation withdrawn
    },
    Trigger.PROVIDER_PAST_DUE: {TRIALING: PAST_DUE, ACTIVE: PAST_DUE, PAST_DUE: PAST_DUE},
    Trigger.PAYMENT_FAILED: {TRIALING: PAST_DUE, ACTIVE: PAST_DUE, PAST_DUE: PAST_DUE},
    Trigger.PROVIDER_TRIALING: {TRIALING: TRIALING},
    Trigger.CANCEL_REQUESTED: {s: CANCEL_AT_PERIOD_END for s in NON_TERMINAL},
    Trigger.PROVIDER_CANCEL_SCHEDULED: {s: CANCEL_AT_PERIOD_END for s in NON_TERMINAL},
    Trigger.DELETED: {s: CANCELLED for s in SubscriptionStatus},
}


def next_status(current: Any, trigger: Trigger) -> Optional[SubscriptionStatus]:
    """Target status for ``trigger`` from ``current``, or None if not applicable."""
    try:
        status = SubscriptionStatus(current)
    except ValueError:
        logger.error("SUBSCRIPTION_STATUS_INVALID status=%r trigger=%s", current, trigger.value)
        return None
    return TRANSITIONS[trigger].get(status)


def trigger_for_provider_status(provider_status: Optional[str], cancel_at_period_end: bool = False) -> Optional[Trigger]:
    """Map a provider subscription status (+ cancel flag) to a trigger."""
    if provider_status in ("canceled", "cancelled"):
        return Trigger.DELETED
    if cancel_at_period_end and provider_status in ("trialing", "active", "past_due"):
        return Trigger.PROVIDER_CANCEL_SCHEDULED
    return {
        "active": Trigger.PROVIDER_ACTIVE,
        "past_due": Trigger.PROVIDER_PAST_DUE,
        "trialing": Trigger.PROVIDER_TRIALING,
    }.get(provider_status)


def _normalize(value: Any) -> Any:
    # Mongo hands back naive UTC datetimes
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    if isinstance(value, Enum):
        return value.value
    return value


def build_projection(subscription: Dict[str, Any]) -> Dict[str, Any]:
    return UserBillingProjection(
        plan_type=subscription.get("plan_type"),
        status=_normalize(subscription.get("status")),
        provider_customer_id=subscription.get("provider_customer_id"),
        provider_subscription_id=subscription.get("provider_subscription_id"),
        cancel_at_period_end=subscription.get("cancel_at_period_end"),
    ).model_dump(exclude_none=True)


async def upsert_user_projection(user_id: str, projection: Dict[str, Any], has_subscription: bool) -> None:
    """Write the denormalized billing view onto the user document."""
    db = database.get_db()
    await db.users.update_one(
        {"user_id": user_id},
        {
            "$set": {
                "subscription": projection,
                "has_subscription": has_subscription,
                "updated_at": utc_now(),
            }
        },
        upsert=True,
    )


async def find_latest_subscription(query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Newest matching subscription; duplicates are ignored, never merged."""
    db = database.get_db()
    return await db.subscriptions.find_one(query, {"_id": 0}, sort=[("created_at", -1)])


class SubscriptionStateMachine:
    """Applies transitions to stored subscriptions."""

    async def apply(
        self,
        subscription: Dict[str, Any],
        trigger: Trigger,
        fields: Optional[Dict[str, Any]] = None,
        source: str = "webhook",
        actor_role: str = "SYSTEM",
        actor_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Persist ``trigger`` on ``subscription``.

        Args:
            subscription: Stored subscription document
            trigger: Transition trigger
            fields: Extra absolute fields to set with the transition (provider ids, periods)
            source: webhook | reconciliation | request, for logs and audit

        Returns:
            The resulting document, or None if the trigger does not apply.
        """
        current = _normalize(subscription.get("status"))
        target = next_status(current, trigger)
        subscription_id = subscription.get("subscription_id")

        if target is None:
            logger.info(
                "SUBSCRIPTION_TRANSITION_IGNORED subscription_id=%s status=%s trigger=%s source=%s",
                subscription_id, current, trigger.value, source,
            )
            return None

        desired = dict(fields or {})
        desired["status"] = target.value
        if target == CANCEL_AT_PERIOD_END:
            desired["cancel_at_period_end"] = True

        changes = {
            key: value for key, value in desired.items()
            if _normalize(subscription.get(key)) != _normalize(value)
        }
        result = {**subscription, **desired}

        if changes:
            changes["updated_at"] = utc_now()
            query = {"subscription_id": subscription_id}
            if target != CANCELLED:
                # The snapshot may predate a cancellation; cancelled stays cancelled
                query["status"] = {"$ne": CANCELLED.value}
            db = database.get_db()
            write = await db.subscriptions.update_one(query, {"$set": changes})
            if write.matched_count == 0:
                logger.info(
                    "SUBSCRIPTION_TRANSITION_SKIPPED subscription_id=%s trigger=%s source=%s reason=cancelled_or_missing",
                    subscription_id, trigger.value, source,
                )
                return None
            result["updated_at"] = changes["updated_at"]
            logger.info(
                "SUBSCRIPTION_TRANSITION subscription_id=%s %s -> %s trigger=%s source=%s",
                subscription_id, current, target.value, trigger.value, source,
            )

        await upsert_user_projection(
            subscription["user_id"],
            build_projection(result),
            has_subscription=target in ACCESS_STATUSES,
        )

        if current != target.value:
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_TRANSITION,
                actor_role=actor_role,
                actor_id=actor_id,
                user_id=subscription.get("user_id"),
                resource_type="subscription",
                resource_id=subscription_id,
                before_state={"status": current},
                after_state={"status": target.value},
                metadata={"trigger": trigger.value, "source": source},
            )

        return result


subscription_state_machine = SubscriptionStateMachine()
