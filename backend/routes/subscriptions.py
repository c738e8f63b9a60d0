"""Subscription Routes - reconciliation, cancellation and provider details.

Endpoints:
- POST /subscription/sync - Pull provider state for the caller's newest subscription
- POST /subscription/cancel - Cancel at period end
- GET /subscription/details - Provider view of a subscription
"""
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from middleware import require_auth, ensure_self_or_admin, is_admin
from services.billing_errors import BillingError
from services.subscription_sync_service import SubscriptionSyncService
from routes.errors import http_error
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/subscription", tags=["subscriptions"])


class SyncRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: str
    email: str


class CancelRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    subscription_id: str  # provider subscription id


def get_sync_service(request: Request) -> SubscriptionSyncService:
    return SubscriptionSyncService(request.app.state.provider)


def _subscription_response(subscription: dict) -> dict:
    return {
        "subscriptionId": subscription.get("subscription_id"),
        "userId": subscription.get("user_id"),
        "planType": subscription.get("plan_type"),
        "status": subscription.get("status"),
        "providerCustomerId": subscription.get("provider_customer_id"),
        "providerSubscriptionId": subscription.get("provider_subscription_id"),
        "cancelAtPeriodEnd": subscription.get("cancel_at_period_end"),
        "currentPeriodEnd": subscription.get("current_period_end"),
        "trialEnd": subscription.get("trial_end"),
    }


@router.post("/sync")
async def sync_subscription(
    request: Request,
    body: SyncRequest,
    service: SubscriptionSyncService = Depends(get_sync_service),
):
    """
    Reconcile the caller's subscription with the provider.

    Returns 200 with available=false when the checkout has not produced a
    provider subscription yet; the client may poll.
    """
    user = await require_auth(request)
    ensure_self_or_admin(user, body.user_id)

    try:
        result = await service.sync(user_id=body.user_id, email=body.email)
    except BillingError as e:
        logger.info(f"Subscription sync for user {body.user_id} failed: {e.message}")
        raise http_error(e)

    return result.to_response()


@router.post("/cancel")
async def cancel_subscription(
    request: Request,
    body: CancelRequest,
    service: SubscriptionSyncService = Depends(get_sync_service),
):
    """Cancel at period end. Access continues until the period closes."""
    user = await require_auth(request)
    owner_id = None if is_admin(user) else user.get("user_id")

    try:
        subscription = await service.cancel(
            body.subscription_id,
            owner_id=owner_id,
            actor_role=user.get("role"),
        )
    except BillingError as e:
        logger.warning(f"Cancel of {body.subscription_id} rejected: {e.message}")
        raise http_error(e)

    return {"success": True, "subscription": _subscription_response(subscription)}


@router.get("/details")
async def get_subscription_details(
    request: Request,
    subscription_id: str,
    service: SubscriptionSyncService = Depends(get_sync_service),
):
    user = await require_auth(request)
    owner_id = None if is_admin(user) else user.get("user_id")

    try:
        subscription = await service.get_provider_subscription(subscription_id, owner_id=owner_id)
    except BillingError as e:
        raise http_error(e)

    return {"success": True, "subscription": subscription}
