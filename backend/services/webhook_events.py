"""Typed webhook events.

Stripe events are parsed into a closed set of pydantic models keyed by a
``kind`` literal. The dispatcher switches on ``kind``; anything the billing
engine does not react to becomes ``UnhandledEvent`` and is acknowledged.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator

EVENT_KINDS = {
    "checkout.session.completed": "checkout.completed",
    "checkout.session.expired": "checkout.expired",
    "customer.subscription.updated": "subscription.updated",
    "customer.subscription.deleted": "subscription.deleted",
    "invoice.payment_failed": "invoice.payment_failed",
}


def object_id(value: Any) -> Optional[str]:
    # Stripe returns either an id or the expanded object
    if isinstance(value, dict):
        return value.get("id")
    return value


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class CheckoutSessionPayload(_Payload):
    id: str
    mode: Optional[str] = None
    customer: Optional[str] = None
    subscription: Optional[str] = None
    payment_status: Optional[str] = None
    payment_intent: Optional[str] = None
    amount_total: Optional[int] = None
    customer_email: Optional[str] = None
    customer_details: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = {}

    @property
    def email(self) -> Optional[str]:
        return (self.customer_details or {}).get("email") or self.customer_email

    @field_validator("customer", "subscription", "payment_intent", mode="before")
    @classmethod
    def _collapse_expanded(cls, value):
        return object_id(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_default(cls, value):
        return value or {}


class SubscriptionPayload(_Payload):
    id: str
    customer: Optional[str] = None
    status: Optional[str] = None
    cancel_at_period_end: bool = False
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    metadata: Dict[str, Any] = {}

    @field_validator("customer", mode="before")
    @classmethod
    def _collapse_expanded(cls, value):
        return object_id(value)

    @field_validator("current_period_start", "current_period_end", mode="before")
    @classmethod
    def _epoch(cls, value):
        if isinstance(value, (int, float)):
            return from_timestamp(value)
        return value

    @field_validator("cancel_at_period_end", mode="before")
    @classmethod
    def _flag(cls, value):
        return bool(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_default(cls, value):
        return value or {}

    @classmethod
    def from_provider(cls, obj: Dict[str, Any]) -> "SubscriptionPayload":
        """Parse a provider subscription; newer API versions keep periods on the items."""
        data = dict(obj)
        items = (data.get("items") or {}).get("data") or []
        if items:
            for key in ("current_period_start", "current_period_end"):
                if data.get(key) is None:
                    data[key] = items[0].get(key)
        return cls.model_validate(data)


class _Event(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event_id: str
    event_type: str


class CheckoutCompleted(_Event):
    kind: Literal["checkout.completed"] = "checkout.completed"
    session: CheckoutSessionPayload


class CheckoutExpired(_Event):
    kind: Literal["checkout.expired"] = "checkout.expired"
    session_id: str


class SubscriptionUpdated(_Event):
    kind: Literal["subscription.updated"] = "subscription.updated"
    subscription: SubscriptionPayload


class SubscriptionDeleted(_Event):
    kind: Literal["subscription.deleted"] = "subscription.deleted"
    subscription: SubscriptionPayload


class InvoicePaymentFailed(_Event):
    kind: Literal["invoice.payment_failed"] = "invoice.payment_failed"
    invoice_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    error_message: Optional[str] = None


class UnhandledEvent(_Event):
    kind: Literal["unhandled"] = "unhandled"


WebhookEvent = Union[
    CheckoutCompleted,
    CheckoutExpired,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaymentFailed,
    UnhandledEvent,
]


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription = object_id(invoice.get("subscription"))
    if subscription:
        return subscription
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return object_id(details.get("subscription"))


def parse_event(event: Dict[str, Any]) -> WebhookEvent:
    """Map a verified Stripe event dict onto its typed model."""
    event_id = event.get("id") or ""
    event_type = event.get("type") or ""
    obj = (event.get("data") or {}).get("object") or {}
    base = {"event_id": event_id, "event_type": event_type}

    kind = EVENT_KINDS.get(event_type)
    if kind == "checkout.completed":
        return CheckoutCompleted(session=CheckoutSessionPayload.model_validate(obj), **base)
    if kind == "checkout.expired":
        return CheckoutExpired(session_id=obj.get("id"), **base)
    if kind == "subscription.updated":
        return SubscriptionUpdated(subscription=SubscriptionPayload.from_provider(obj), **base)
    if kind == "subscription.deleted":
        return SubscriptionDeleted(subscription=SubscriptionPayload.from_provider(obj), **base)
    if kind == "invoice.payment_failed":
        last_error = (obj.get("last_finalization_error") or {}).get("message")
        return InvoicePaymentFailed(
            invoice_id=obj.get("id"),
            provider_subscription_id=_invoice_subscription_id(obj),
            provider_customer_id=object_id(obj.get("customer")),
            error_message=last_error or "Payment failed",
            **base,
        )
    return UnhandledEvent(**base)
