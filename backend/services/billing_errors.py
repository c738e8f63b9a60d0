"""Billing error taxonomy.

Routes map these to HTTP responses:
- ValidationError (and subclasses) -> 400, nothing written
- ProviderError -> 502, no local record created
- SignatureError -> 400, event never processed
- WebhookConfigError -> 500
- SubscriptionNotFound -> 404
- InvalidTransition -> 409

PersistenceError is raised inside services when a store write fails after a
provider side effect; callers log it and acknowledge rather than surface it.
"""
from typing import Optional


class BillingError(Exception):
    """Base class for billing engine errors."""

    error_code = "BILLING_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_detail(self) -> dict:
        detail = {"error_code": self.error_code, "message": self.message}
        if self.details:
            detail.update(self.details)
        return detail


class ValidationError(BillingError):
    error_code = "VALIDATION_ERROR"


class InvalidSeatCount(ValidationError):
    error_code = "INVALID_SEAT_COUNT"


class InvalidPlanType(ValidationError):
    error_code = "INVALID_PLAN_TYPE"


class ProviderError(BillingError):
    """Payment provider call failed (or provider is not configured)."""

    error_code = "PROVIDER_ERROR"


class PersistenceError(BillingError):
    error_code = "PERSISTENCE_ERROR"


class SignatureError(BillingError):
    error_code = "INVALID_SIGNATURE"


class WebhookConfigError(BillingError):
    error_code = "WEBHOOK_NOT_CONFIGURED"


class SubscriptionNotFound(BillingError):
    error_code = "SUBSCRIPTION_NOT_FOUND"


class InvalidTransition(BillingError):
    error_code = "INVALID_TRANSITION"
