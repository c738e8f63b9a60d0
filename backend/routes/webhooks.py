"""Webhook Routes - Stripe billing events.

POST /webhook - signed Stripe events
- 400 when the signature cannot be verified (nothing is recorded)
- 500 when no signing secret is configured
- 200 {"received": true} otherwise, including malformed events and events whose handler failed
  (failures are logged, audited and healed by reconciliation)
"""
from fastapi import APIRouter, Depends, Header, Request
from services.billing_errors import SignatureError, WebhookConfigError
from services.stripe_webhook_service import StripeWebhookService
from routes.errors import http_error
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


def get_webhook_service(request: Request) -> StripeWebhookService:
    return StripeWebhookService(request.app.state.provider)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    service: StripeWebhookService = Depends(get_webhook_service),
):
    """Handle Stripe webhooks at /webhook"""
    payload = await request.body()

    try:
        result = await service.process_webhook(payload=payload, signature=stripe_signature or "")
    except WebhookConfigError as e:
        logger.error(f"Stripe webhook rejected: {e.message}")
        raise http_error(e)
    except SignatureError as e:
        logger.error("Webhook signature verification failed: %s (check STRIPE_WEBHOOK_SECRET vs Stripe key mode)", e.message)
        raise http_error(e)

    return {"received": True, "message": result.message}
