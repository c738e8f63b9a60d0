"""
Event parsing into the closed set of webhook kinds.
"""
from datetime import datetime, timezone

from services.webhook_events import (
    CheckoutCompleted,
    InvoicePaymentFailed,
    SubscriptionUpdated,
    UnhandledEvent,
    parse_event,
)


def _event(event_type, obj):
    return {"id": "evt_1", "type": event_type, "data": {"object": obj}}


def test_checkout_completed_collapses_expanded_objects():
    event = parse_event(_event("checkout.session.completed", {
        "id": "cs_1",
        "customer": {"id": "cus_1", "object": "customer"},
        "subscription": {"id": "sub_1", "object": "subscription"},
        "metadata": None,
    }))

    assert isinstance(event, CheckoutCompleted)
    assert event.kind == "checkout.completed"
    assert event.session.customer == "cus_1"
    assert event.session.subscription == "sub_1"
    assert event.session.metadata == {}


def test_subscription_periods_from_items():
    event = parse_event(_event("customer.subscription.updated", {
        "id": "sub_1",
        "status": "active",
        "cancel_at_period_end": None,
        "items": {"data": [{"current_period_start": 1735689600, "current_period_end": 1738368000}]},
    }))

    assert isinstance(event, SubscriptionUpdated)
    assert event.subscription.cancel_at_period_end is False
    assert event.subscription.current_period_start == datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_invoice_subscription_from_parent_details():
    event = parse_event(_event("invoice.payment_failed", {
        "id": "in_1",
        "customer": "cus_1",
        "parent": {"subscription_details": {"subscription": "sub_9"}},
        "last_finalization_error": {"message": "Your card was declined."},
    }))

    assert isinstance(event, InvoicePaymentFailed)
    assert event.provider_subscription_id == "sub_9"
    assert event.error_message == "Your card was declined."


def test_unknown_type_is_unhandled():
    event = parse_event(_event("customer.created", {"id": "cus_1"}))
    assert isinstance(event, UnhandledEvent)
    assert event.event_type == "customer.created"
