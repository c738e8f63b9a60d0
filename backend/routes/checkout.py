"""Checkout Routes - seat licences and parent subscriptions.

Endpoints:
- POST /checkout - One-time checkout for school seat licences
- POST /checkout/parent - Subscription checkout with free trial for parents
- GET /checkout/session - Provider session summary for the success page
"""
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Any
from middleware import require_auth, ensure_self_or_admin
from services.billing_errors import BillingError
from services.checkout_service import CheckoutService
from routes.errors import http_error
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/checkout", tags=["checkout"])


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SeatCheckoutRequest(CamelModel):
    """Seat count is validated by the pricing rules (400), not the schema."""
    seat_count: Any = None
    plan_type: str
    email: str
    user_id: str


class ParentCheckoutRequest(CamelModel):
    plan_type: str
    email: str
    user_id: str


def get_checkout_service(request: Request) -> CheckoutService:
    return CheckoutService(request.app.state.provider)


@router.post("")
async def create_seat_checkout(
    request: Request,
    body: SeatCheckoutRequest,
    service: CheckoutService = Depends(get_checkout_service),
):
    """Create a payment checkout for school seats. Returns the provider session id."""
    user = await require_auth(request)
    ensure_self_or_admin(user, body.user_id)

    try:
        session_id = await service.create_seat_checkout(
            seat_count=body.seat_count,
            plan_type=body.plan_type,
            email=body.email,
            user_id=body.user_id,
        )
    except BillingError as e:
        logger.warning(f"Seat checkout rejected for user {body.user_id}: {e.message}")
        raise http_error(e)

    return {"sessionId": session_id}


@router.post("/parent")
async def create_parent_checkout(
    request: Request,
    body: ParentCheckoutRequest,
    service: CheckoutService = Depends(get_checkout_service),
):
    """Create a subscription checkout with a free trial for a parent plan."""
    user = await require_auth(request)
    ensure_self_or_admin(user, body.user_id)

    try:
        session_id = await service.create_parent_checkout(
            plan_type=body.plan_type,
            email=body.email,
            user_id=body.user_id,
        )
    except BillingError as e:
        logger.warning(f"Parent checkout rejected for user {body.user_id}: {e.message}")
        raise http_error(e)

    return {"sessionId": session_id}


@router.get("/session")
async def get_checkout_session(
    request: Request,
    session_id: str,
    service: CheckoutService = Depends(get_checkout_service),
):
    await require_auth(request)
    try:
        return await service.get_checkout_session_details(session_id)
    except BillingError as e:
        raise http_error(e)
