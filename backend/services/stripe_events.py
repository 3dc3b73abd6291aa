"""Typed views over the Stripe objects carried by webhook events.

Only the fields the billing code reads are declared; everything else Stripe
sends is ignored. A payload missing a required field raises EventPayloadError
so the event is recorded as FAILED rather than half-applied.
"""
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Optional, Type, TypeVar, Union
import logging

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from models import BillingInterval, PayoutAccountStatus, PayoutAccountType, SubscriptionStatus
from services.billing_errors import EventPayloadError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Stripe statuses that have no local equivalent
_STATUS_ALIASES = {
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.UNPAID,
}


def as_dict(obj: Any) -> Dict[str, Any]:
    """Plain dict for a Stripe SDK object or an already-decoded payload."""
    if obj is None:
        return {}
    if type(obj) is dict:
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _expandable_id(value: Any) -> Any:
    # Expanded references arrive as objects; we only keep the id
    if isinstance(value, dict):
        return value.get("id")
    return value


ExpandableId = Annotated[Optional[str], BeforeValidator(_expandable_id)]


def normalize_subscription_status(raw: Optional[str]) -> SubscriptionStatus:
    if raw in _STATUS_ALIASES:
        return _STATUS_ALIASES[raw]
    try:
        return SubscriptionStatus(raw)
    except ValueError:
        logger.warning("UNKNOWN_SUBSCRIPTION_STATUS status=%r stored as incomplete", raw)
        return SubscriptionStatus.INCOMPLETE


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class _StripeModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class StripeRecurring(_StripeModel):
    interval: Optional[str] = None


class StripePrice(_StripeModel):
    id: str
    recurring: Optional[StripeRecurring] = None


class StripeSubscriptionItem(_StripeModel):
    price: Optional[StripePrice] = None
    current_period_end: Optional[int] = None


class StripeSubscriptionItems(_StripeModel):
    data: List[StripeSubscriptionItem] = Field(default_factory=list)


class StripeSubscription(_StripeModel):
    id: str
    customer: Annotated[str, BeforeValidator(_expandable_id)]
    status: str
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    items: StripeSubscriptionItems = Field(default_factory=StripeSubscriptionItems)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def first_item(self) -> Optional[StripeSubscriptionItem]:
        return self.items.data[0] if self.items.data else None

    @property
    def price_id(self) -> Optional[str]:
        item = self.first_item
        return item.price.id if item and item.price else None

    @property
    def interval(self) -> Optional[BillingInterval]:
        item = self.first_item
        if not item or not item.price or not item.price.recurring:
            return None
        try:
            return BillingInterval(item.price.recurring.interval)
        except ValueError:
            return None

    @property
    def period_end(self) -> Optional[datetime]:
        # Newer API versions only carry the period on the subscription item
        value = self.current_period_end
        if value is None and self.first_item:
            value = self.first_item.current_period_end
        return _from_timestamp(value)

    @property
    def normalized_status(self) -> SubscriptionStatus:
        return normalize_subscription_status(self.status)

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("user_id")


class StripeCheckoutSession(_StripeModel):
    id: str
    mode: Optional[str] = None
    customer: ExpandableId = None
    subscription: ExpandableId = None
    client_reference_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("user_id") or self.client_reference_id


class StripeSubscriptionDetails(_StripeModel):
    subscription: ExpandableId = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StripeInvoiceParent(_StripeModel):
    subscription_details: Optional[StripeSubscriptionDetails] = None


class StripeInvoice(_StripeModel):
    id: str
    customer: ExpandableId = None
    subscription: ExpandableId = None
    parent: Optional[StripeInvoiceParent] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def subscription_id(self) -> Optional[str]:
        # Newer API versions moved the reference under parent.subscription_details
        if self.subscription:
            return self.subscription
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details.subscription
        return None


class StripeRequirements(_StripeModel):
    disabled_reason: Optional[str] = None


class StripeAccount(_StripeModel):
    id: str
    type: Optional[str] = None
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    country: Optional[str] = None
    default_currency: Optional[str] = None
    requirements: Optional[StripeRequirements] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def account_type(self) -> Optional[PayoutAccountType]:
        try:
            return PayoutAccountType(self.type)
        except ValueError:
            return None

    @property
    def onboarding_complete(self) -> bool:
        return self.details_submitted and self.charges_enabled

    @property
    def account_status(self) -> PayoutAccountStatus:
        disabled_reason = self.requirements.disabled_reason if self.requirements else None
        if disabled_reason and disabled_reason.startswith("rejected"):
            return PayoutAccountStatus.DISABLED
        if not self.charges_enabled and not self.payouts_enabled:
            return PayoutAccountStatus.RESTRICTED
        if not self.details_submitted:
            return PayoutAccountStatus.PENDING
        if self.charges_enabled and self.payouts_enabled:
            return PayoutAccountStatus.ACTIVE
        return PayoutAccountStatus.PENDING

    def capability_fields(self) -> Dict[str, Any]:
        """Fields mirrored onto users.payout_account on every sync."""
        return {
            "charges_enabled": self.charges_enabled,
            "payouts_enabled": self.payouts_enabled,
            "details_submitted": self.details_submitted,
            "onboarding_complete": self.onboarding_complete,
            "account_status": self.account_status.value,
        }


def parse_stripe_object(model: Type[ModelT], obj: Union[Dict[str, Any], Any]) -> ModelT:
    """Validate a Stripe object (SDK object or dict) into one of the models above."""
    try:
        return model.model_validate(as_dict(obj))
    except ValidationError as e:
        raise EventPayloadError(f"Malformed {model.__name__} payload: {e.error_count()} invalid field(s)") from e
