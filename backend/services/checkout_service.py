"""Checkout Service - creates provider checkout sessions and their local records.

Flow for every checkout:
1. Validate input (pricing / plan table, identity fields)
2. Purge the user's pending payment sessions (one transaction)
3. Create the provider session - on failure nothing new is written
4. Persist the local record(s); a write failure here is logged and the session
   id is still returned, reconciliation fills the gap later
"""
import logging
import os
from datetime import timedelta
from typing import Any, Dict, Optional

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from database import database
from models import (
    AuditAction,
    CheckoutKind,
    PaymentSession,
    PaymentSessionStatus,
    Subscription,
    SubscriptionStatus,
    utc_now,
)
from services.billing_errors import PersistenceError, ValidationError
from services.pricing import calculate_price, get_parent_plan
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

_email_adapter = TypeAdapter(EmailStr)


def _validate_identity(email: str, user_id: str) -> None:
    if not user_id:
        raise ValidationError("user_id is required")
    if not email:
        raise ValidationError("email is required")
    try:
        _email_adapter.validate_python(email)
    except PydanticValidationError:
        raise ValidationError(f"Invalid email address: {email!r}")


class CheckoutService:
    """Seat licence and parent subscription checkouts."""

    def __init__(self, provider, trial_days: Optional[int] = None):
        self.provider = provider
        if trial_days is None:
            trial_days = int(os.getenv("PARENT_TRIAL_DAYS", "7"))
        self.trial_days = trial_days

    async def _purge_pending_sessions(self, user_id: str) -> int:
        """Remove every pending session for the user before a new one is opened."""
        db = database.get_db()
        async with database.transaction() as txn:
            result = await db.payment_sessions.delete_many(
                {"user_id": user_id, "status": PaymentSessionStatus.PENDING.value},
                session=txn,
            )
        if result.deleted_count:
            logger.info(f"Purged {result.deleted_count} pending payment session(s) for user {user_id}")
        return result.deleted_count

    async def _persist(self, collection: str, document: Dict[str, Any]) -> None:
        db = database.get_db()
        try:
            await db[collection].insert_one(document)
        except Exception as e:
            raise PersistenceError(f"Failed to store {collection} record: {e}")

    async def create_seat_checkout(
        self, seat_count: int, plan_type: str, email: str, user_id: str
    ) -> str:
        """Open a one-time payment checkout for school seats. Returns the provider session id."""
        quote = calculate_price(seat_count, plan_type)
        _validate_identity(email, user_id)

        await self._purge_pending_sessions(user_id)

        session = await self.provider.create_seat_checkout_session(quote, email, user_id)
        session_id = session["id"]

        record = PaymentSession(
            session_id=session_id,
            user_id=user_id,
            email=email,
            checkout_kind=CheckoutKind.SEATS,
            seat_count=quote.seat_count,
            plan_type=quote.plan_type,
            per_seat_price=quote.per_seat_price,
            total_amount=quote.total_amount,
            discount_rate=quote.discount_rate,
        )
        try:
            await self._persist("payment_sessions", record.model_dump())
        except PersistenceError as e:
            logger.error(f"CHECKOUT_PERSIST_FAILED session_id={session_id} user_id={user_id} error={e}")
            return session_id

        logger.info(
            f"Checkout session {session_id} created for user {user_id}: "
            f"{quote.seat_count} {quote.plan_type} seats, total {quote.total_amount}"
        )
        await create_audit_log(
            action=AuditAction.CHECKOUT_SESSION_CREATED,
            actor_id=user_id,
            user_id=user_id,
            resource_type="payment_session",
            resource_id=session_id,
            metadata={
                "seat_count": quote.seat_count,
                "plan_type": quote.plan_type,
                "total_amount": quote.total_amount,
                "discount_rate": quote.discount_rate,
            },
        )
        return session_id

    async def create_parent_checkout(self, plan_type: str, email: str, user_id: str) -> str:
        """Open a subscription checkout with a free trial for a parent plan."""
        plan = get_parent_plan(plan_type)
        _validate_identity(email, user_id)

        await self._purge_pending_sessions(user_id)

        session = await self.provider.create_parent_checkout_session(
            plan, email, user_id, self.trial_days
        )
        session_id = session["id"]
        now = utc_now()

        payment = PaymentSession(
            session_id=session_id,
            user_id=user_id,
            email=email,
            checkout_kind=CheckoutKind.PARENT_SUBSCRIPTION,
            seat_count=1,
            plan_type=plan["plan_type"],
            per_seat_price=plan["amount"],
            total_amount=plan["amount"],
        )
        subscription = Subscription(
            user_id=user_id,
            email=email,
            plan_type=plan["plan_type"],
            status=SubscriptionStatus.TRIALING,
            session_id=session_id,
            trial_start=now,
            trial_end=now + timedelta(days=self.trial_days),
            interval=plan["interval"],
            amount=plan["amount"],
        )
        try:
            await self._persist("payment_sessions", payment.model_dump())
            await self._persist("subscriptions", subscription.model_dump())
        except PersistenceError as e:
            logger.error(f"CHECKOUT_PERSIST_FAILED session_id={session_id} user_id={user_id} error={e}")
            return session_id

        logger.info(f"Parent checkout session {session_id} created for user {user_id} ({plan['plan_type']})")
        await create_audit_log(
            action=AuditAction.PARENT_CHECKOUT_CREATED,
            actor_id=user_id,
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription.subscription_id,
            metadata={
                "session_id": session_id,
                "plan_type": plan["plan_type"],
                "trial_days": self.trial_days,
            },
        )
        return session_id

    async def get_checkout_session_details(self, session_id: str) -> Dict[str, Any]:
        """Summary of a provider checkout session for the success page."""
        if not session_id:
            raise ValidationError("session_id is required")
        session = await self.provider.retrieve_checkout_session(session_id)
        customer_details = session.get("customer_details") or {}
        return {
            "session_id": session.get("id"),
            "customer_email": customer_details.get("email") or session.get("customer_email"),
            "payment_status": session.get("payment_status"),
            "status": session.get("status"),
            "amount_total": session.get("amount_total"),
            "currency": session.get("currency"),
        }
