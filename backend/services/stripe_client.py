"""Stripe provider client - the only module that talks to the payment provider.

Constructed once at startup (server lifespan) and injected into the checkout,
webhook and sync services. It never mutates the global ``stripe.api_key``;
every call passes its own key, so instances are independent and stateless.

The Stripe SDK is synchronous; calls run in the default executor so request
handlers stay async. Any SDK failure surfaces as ProviderError.
"""
import asyncio
import json
import logging
import os
from typing import Any, Dict, List, Optional

import stripe

from services.billing_errors import ProviderError, SignatureError, WebhookConfigError
from services.pricing import PriceQuote, MONTHS_PER_YEAR

logger = logging.getLogger(__name__)

PRODUCT_NAME = os.getenv("PRODUCT_NAME", "Cyber Safety Academy")


def _get_api_key() -> str:
    return (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()


def _get_webhook_secret(api_key: str) -> str:
    """Explicit STRIPE_WEBHOOK_SECRET wins; else pick test/live secret by key prefix."""
    explicit = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()
    if explicit:
        return explicit
    if api_key.startswith("sk_live_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_LIVE") or "").strip()
    if api_key.startswith("sk_test_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_TEST") or "").strip()
    return ""


def as_dict(obj: Any) -> Dict[str, Any]:
    """Plain dict view of a Stripe object (or pass-through for dicts)."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return json.loads(str(obj))


class StripeProviderClient:
    """Checkout, subscription and webhook-signature operations against Stripe."""

    def __init__(
        self,
        api_key: str,
        webhook_secret: str = "",
        frontend_url: str = "http://localhost:3000",
        currency: str = "usd",
    ):
        self.api_key = (api_key or "").strip()
        self.webhook_secret = (webhook_secret or "").strip()
        self.frontend_url = (frontend_url or "").strip().rstrip("/")
        self.currency = currency

    @classmethod
    def from_env(cls) -> "StripeProviderClient":
        api_key = _get_api_key()
        return cls(
            api_key=api_key,
            webhook_secret=_get_webhook_secret(api_key),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
            currency=os.getenv("CURRENCY", "usd"),
        )

    @property
    def mode(self) -> str:
        if self.api_key.startswith("sk_live_"):
            return "live"
        if self.api_key.startswith("sk_test_"):
            return "test"
        return "unknown"

    async def _call(self, operation: str, fn, *args, **kwargs) -> Dict[str, Any]:
        if not self.api_key:
            raise ProviderError("STRIPE_SECRET_KEY or STRIPE_API_KEY is not set. Configure env and restart.")
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(
                None,
                lambda: fn(*args, api_key=self.api_key, **kwargs),
            )
        except stripe.StripeError as e:
            logger.error("Stripe %s failed: %s", operation, e)
            raise ProviderError(f"Stripe {operation} failed: {e.user_message or str(e)}")
        return as_dict(result)

    # =========================================================================
    # Checkout
    # =========================================================================

    async def create_seat_checkout_session(
        self, quote: PriceQuote, email: str, user_id: str
    ) -> Dict[str, Any]:
        """One-time payment for school seat licences."""
        params = {
            "payment_method_types": ["card"],
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {
                            "name": f"{PRODUCT_NAME.upper()} SUBSCRIPTION - {quote.plan_type.upper()} PLAN",
                            "description": (
                                f"{quote.seat_count} student seats - {quote.discount_text} - "
                                f"{MONTHS_PER_YEAR} months subscription"
                            ),
                        },
                        "unit_amount": quote.per_seat_price,
                    },
                    "quantity": quote.seat_count,
                }
            ],
            "customer_creation": "always",
            "customer_email": email,
            "success_url": (
                f"{self.frontend_url}/success-payment?success=true&session_id={{CHECKOUT_SESSION_ID}}"
                f"&seats={quote.seat_count}&total={quote.total_amount}&planType={quote.plan_type}"
                f"&discount={quote.discount_rate}"
            ),
            "cancel_url": f"{self.frontend_url}/home",
            "metadata": {
                "user_id": user_id,
                "plan_type": quote.plan_type,
                "seat_count": str(quote.seat_count),
                "checkout_kind": "seats",
            },
        }
        return await self._call("checkout.Session.create", stripe.checkout.Session.create, **params)

    async def create_parent_checkout_session(
        self, plan: Dict[str, Any], email: str, user_id: str, trial_days: int
    ) -> Dict[str, Any]:
        """Recurring parent subscription with a free trial."""
        metadata = {
            "user_id": user_id,
            "plan_type": plan["plan_type"],
            "subscription_type": "parent",
        }
        params = {
            "payment_method_types": ["card"],
            "mode": "subscription",
            "customer_email": email,
            "line_items": [
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {
                            "name": f"{PRODUCT_NAME.upper()} {plan['plan_type'].upper()} SUBSCRIPTION",
                            "description": plan["description"],
                        },
                        "unit_amount": plan["amount"],
                        "recurring": {"interval": plan["interval"]},
                    },
                    "quantity": 1,
                }
            ],
            "subscription_data": {
                "trial_period_days": trial_days,
                "metadata": metadata,
            },
            "metadata": metadata,
            "success_url": (
                f"{self.frontend_url}/onboarding/payment?success=true&session_id={{CHECKOUT_SESSION_ID}}"
                f"&planType={plan['plan_type']}&trial=true"
            ),
            "cancel_url": f"{self.frontend_url}/parent-plan-options",
        }
        return await self._call("checkout.Session.create", stripe.checkout.Session.create, **params)

    async def retrieve_checkout_session(
        self, session_id: str, expand: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        kwargs = {"expand": expand} if expand else {}
        return await self._call("checkout.Session.retrieve", stripe.checkout.Session.retrieve, session_id, **kwargs)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._call("Subscription.retrieve", stripe.Subscription.retrieve, subscription_id)

    async def cancel_at_period_end(self, subscription_id: str) -> Dict[str, Any]:
        """Flag the subscription to end at the current period; access continues until then."""
        return await self._call(
            "Subscription.modify", stripe.Subscription.modify, subscription_id, cancel_at_period_end=True
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """Verify the signature and parse the event. Raises SignatureError."""
        if not self.webhook_secret:
            raise WebhookConfigError("STRIPE_WEBHOOK_SECRET (or _TEST/_LIVE) is not set")
        try:
            event = stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureError(f"Invalid signature: {e}")
        except ValueError as e:
            raise SignatureError(f"Invalid payload: {e}")
        return as_dict(event)
