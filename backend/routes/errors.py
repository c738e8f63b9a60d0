"""Translate billing errors into HTTP responses."""
from fastapi import HTTPException, status

from services.billing_errors import (
    BillingError,
    InvalidTransition,
    ProviderError,
    SignatureError,
    SubscriptionNotFound,
    ValidationError,
    WebhookConfigError,
)

STATUS_BY_ERROR = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (SignatureError, status.HTTP_400_BAD_REQUEST),
    (SubscriptionNotFound, status.HTTP_404_NOT_FOUND),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
    (WebhookConfigError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def http_error(error: BillingError) -> HTTPException:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=error.to_detail())
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=error.to_detail())
