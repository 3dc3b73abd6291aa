from pydantic import BaseModel, EmailStr, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class PlanTier(str, Enum):
    FREE = "free"
    PRO = "pro"

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"

class BillingInterval(str, Enum):
    MONTH = "month"
    YEAR = "year"

class PayoutAccountType(str, Enum):
    EXPRESS = "express"
    STANDARD = "standard"
    CUSTOM = "custom"

class PayoutAccountStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    RESTRICTED = "restricted"
    DISABLED = "disabled"

class StripeEventStatus(str, Enum):
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    IGNORED = "IGNORED"  # Unrecognised type or no matching user; never retried
    FAILED = "FAILED"

class ActorRole(str, Enum):
    USER = "USER"
    SYSTEM = "SYSTEM"

class AuditAction(str, Enum):
    # Auth
    USER_SIGNUP = "USER_SIGNUP"
    USER_LOGIN_SUCCESS = "USER_LOGIN_SUCCESS"
    USER_LOGIN_FAILED = "USER_LOGIN_FAILED"

    # Subscription
    SUBSCRIPTION_SYNCED = "SUBSCRIPTION_SYNCED"
    SUBSCRIPTION_CANCEL_REQUESTED = "SUBSCRIPTION_CANCEL_REQUESTED"
    SUBSCRIPTION_REACTIVATED = "SUBSCRIPTION_REACTIVATED"
    SUBSCRIPTION_ENDED = "SUBSCRIPTION_ENDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"

    # Payout account (Stripe Connect)
    PAYOUT_ACCOUNT_CREATED = "PAYOUT_ACCOUNT_CREATED"
    PAYOUT_ACCOUNT_RECONNECTED = "PAYOUT_ACCOUNT_RECONNECTED"
    PAYOUT_ACCOUNT_DISCONNECTED = "PAYOUT_ACCOUNT_DISCONNECTED"
    PAYOUT_ACCOUNT_SYNCED = "PAYOUT_ACCOUNT_SYNCED"

    # Webhooks
    STRIPE_EVENT_FAILED = "STRIPE_EVENT_FAILED"
    WEBHOOK_SIGNATURE_REJECTED = "WEBHOOK_SIGNATURE_REJECTED"

    # Gating
    FEATURE_GATE_DENIED = "FEATURE_GATE_DENIED"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

# ============================================================================
# USER AGGREGATE
# ============================================================================

class Plan(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tier: PlanTier = PlanTier.FREE
    seats: int = 1

class Subscription(BaseModel):
    """Local mirror of the Stripe subscription.

    A record holding only customer_id means checkout was started but no
    subscription exists yet; it counts as "no subscription" everywhere.
    """
    model_config = ConfigDict(extra="ignore")

    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    price_id: Optional[str] = None
    interval: Optional[BillingInterval] = None

class PayoutAccount(BaseModel):
    """Stripe Connect account linkage. account_id is permanent once set."""
    model_config = ConfigDict(extra="ignore")

    account_id: Optional[str] = None
    account_type: Optional[PayoutAccountType] = None
    account_status: Optional[PayoutAccountStatus] = None
    connected: bool = False
    onboarding_complete: bool = False
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    country: Optional[str] = None
    default_currency: Optional[str] = None

class User(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    email: EmailStr
    name: str
    password_hash: str
    plan: Plan = Field(default_factory=Plan)
    subscription: Optional[Subscription] = None
    payout_account: Optional[PayoutAccount] = None
    features: List[str] = Field(default_factory=list)  # Denormalised; written with plan.tier only
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

class UserProfile(BaseModel):
    """Read model returned to the frontend (no credentials)."""
    model_config = ConfigDict(extra="ignore")

    user_id: str
    email: EmailStr
    name: str
    plan: Plan
    subscription: Optional[Subscription] = None
    payout_account: Optional[PayoutAccount] = None
    features: List[str] = Field(default_factory=list)

# ============================================================================
# LEDGERS
# ============================================================================

class StripeEventRecord(BaseModel):
    """Idempotency ledger entry, one per Stripe event id."""
    model_config = ConfigDict(extra="ignore")

    event_id: str
    type: str
    endpoint: str = "billing"
    status: StripeEventStatus = StripeEventStatus.PROCESSING
    created: datetime = Field(default_factory=utc_now)
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    related_user_id: Optional[str] = None
    raw_minimal: Dict[str, Any] = Field(default_factory=dict)

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[ActorRole] = None
    actor_id: Optional[str] = None
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utc_now)

# ============================================================================
# REQUEST / RESPONSE MODELS
# ============================================================================

class SignupRequest(BaseModel):
    email: EmailStr
    name: str = Field(min_length=1, max_length=120)
    password: str

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserProfile
