from pydantic import BaseModel, EmailStr, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserRole(str, Enum):
    ROLE_PARENT = "ROLE_PARENT"
    ROLE_EDUCATOR = "ROLE_EDUCATOR"  # School purchaser (seat licences)
    ROLE_ADMIN = "ROLE_ADMIN"

class SeatPlanType(str, Enum):
    BASIC = "basic"
    PREMIUM = "premium"

class ParentPlanType(str, Enum):
    SINGLE_MONTHLY = "singleMonthly"
    SINGLE_YEARLY = "singleYearly"
    MULTIPLE_MONTHLY = "multipleMonthly"
    MULTIPLE_YEARLY = "multipleYearly"

class CheckoutKind(str, Enum):
    SEATS = "seats"
    PARENT_SUBSCRIPTION = "parent_subscription"

class PaymentSessionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"

class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCEL_AT_PERIOD_END = "cancel_at_period_end"
    CANCELLED = "cancelled"  # Terminal

class ProviderEventStatus(str, Enum):
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"

class AuditAction(str, Enum):
    # Checkout
    CHECKOUT_SESSION_CREATED = "CHECKOUT_SESSION_CREATED"
    PARENT_CHECKOUT_CREATED = "PARENT_CHECKOUT_CREATED"
    PAYMENT_SESSION_COMPLETED = "PAYMENT_SESSION_COMPLETED"
    PAYMENT_SESSION_EXPIRED = "PAYMENT_SESSION_EXPIRED"

    # Subscription lifecycle
    SUBSCRIPTION_TRANSITION = "SUBSCRIPTION_TRANSITION"
    SUBSCRIPTION_CANCEL_REQUESTED = "SUBSCRIPTION_CANCEL_REQUESTED"
    SUBSCRIPTION_RECONCILED = "SUBSCRIPTION_RECONCILED"
    SUBSCRIPTION_RECOVERED = "SUBSCRIPTION_RECOVERED"

    # Webhooks
    WEBHOOK_EVENT_FAILED = "WEBHOOK_EVENT_FAILED"

    # Retention
    RETENTION_SWEEP_COMPLETED = "RETENTION_SWEEP_COMPLETED"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

# ============================================================================
# CORE MODELS
# ============================================================================

class PaymentSession(BaseModel):
    """One checkout attempt; keyed by the provider session id."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    session_id: str
    user_id: str
    email: EmailStr
    checkout_kind: CheckoutKind = CheckoutKind.SEATS
    seat_count: int
    plan_type: str
    per_seat_price: int  # cents
    total_amount: int  # cents
    discount_rate: float = 0.0
    status: PaymentSessionStatus = PaymentSessionStatus.PENDING
    provider_status: Optional[str] = None  # provider payment_status (unpaid, paid, ...)
    provider_customer_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    payment_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

class Subscription(BaseModel):
    """Parent subscription record, mutated only by state machine transitions."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    subscription_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    email: EmailStr
    plan_type: str
    status: SubscriptionStatus = SubscriptionStatus.TRIALING
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    session_id: Optional[str] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    interval: Optional[str] = None  # month | year
    amount: Optional[int] = None  # cents per interval
    cancel_at_period_end: bool = False
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    last_payment_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

class UserBillingProjection(BaseModel):
    """Denormalized billing view embedded on the user document as `subscription`."""
    model_config = ConfigDict(extra="ignore")

    plan_type: Optional[str] = None
    status: str
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    seat_count: Optional[int] = None
    total_amount: Optional[int] = None
    session_id: Optional[str] = None
    cancel_at_period_end: Optional[bool] = None

class ChildProfile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    child_id: str
    name: Optional[str] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    will_be_deleted: Optional[datetime] = None  # End of the retention grace period

class ParentProfile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    profile_id: str
    children: List[ChildProfile] = Field(default_factory=list)
    last_cleanup: Optional[datetime] = None

class ProviderEvent(BaseModel):
    """Ledger entry for a received webhook event."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    event_id: str
    type: str
    status: ProviderEventStatus = ProviderEventStatus.PROCESSING
    created: datetime = Field(default_factory=utc_now)
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    related_user_id: Optional[str] = None
    related_subscription_id: Optional[str] = None

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[str] = None  # UserRole value or "SYSTEM"
    actor_id: Optional[str] = None
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utc_now)
