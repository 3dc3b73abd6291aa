"""Entitlement Resolver - plan tier to feature flags.

This module is the single source of truth for which features each plan tier
grants. It performs no I/O apart from EntitlementService, which reads the
stored user to build the read model.

RULES:
1. Features are a pure function of plan tier (and subscription status)
2. The stored `features` list is only ever written from resolve_features()
3. A subscription that is not active/trialing never grants pro features
4. Every pro feature set is a superset of the free set
"""
from typing import Any, Dict, Iterable, Optional, Tuple, Union
from enum import Enum
from models import PlanTier, SubscriptionStatus
from config import billing_settings
from database import database
from services.billing_errors import InvalidTierError, UserNotFoundError
import logging

logger = logging.getLogger(__name__)


class FeatureFlag(str, Enum):
    # Invoice
    CREATE_INVOICE = "create_invoice"
    SAVE_INVOICE = "save_invoice"
    UNLIMITED_INVOICES = "unlimited_invoices"
    EXPORT_PDF = "export_pdf"
    SHARE_LINK = "share_link"

    # Clients
    MANAGE_CLIENTS = "manage_clients"
    CLIENT_MANAGEMENT = "client_management"
    CLIENT_PORTAL = "client_portal"

    # Templates
    USE_TEMPLATES = "use_templates"
    CUSTOM_TEMPLATES = "custom_templates"

    # Branding
    BASIC_BRANDING = "basic_branding"
    ADVANCED_BRANDING = "advanced_branding"
    CUSTOM_LOGO = "custom_logo"

    # Payments
    PAYMENT_INTEGRATION = "payment_integration"
    RECURRING_INVOICES = "recurring_invoices"
    PAYMENT_REMINDERS = "payment_reminders"

    # Analytics
    ANALYTICS = "analytics"
    REPORTS = "reports"

    # Support
    EMAIL_SUPPORT = "email_support"
    PRIORITY_SUPPORT = "priority_support"

    # Developer
    API_ACCESS = "api_access"


# ============================================================================
# PLAN FEATURE MATRIX
# ============================================================================
FREE_FEATURES = frozenset({
    FeatureFlag.CREATE_INVOICE,
    FeatureFlag.UNLIMITED_INVOICES,
    FeatureFlag.EXPORT_PDF,
    FeatureFlag.SHARE_LINK,
    FeatureFlag.BASIC_BRANDING,
    FeatureFlag.USE_TEMPLATES,
    FeatureFlag.EMAIL_SUPPORT,
})

PLAN_FEATURES = {
    PlanTier.FREE: FREE_FEATURES,
    PlanTier.PRO: frozenset(FeatureFlag),
}

# Subscription statuses that keep paid features switched on
ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})

FEATURE_METADATA = {
    FeatureFlag.CREATE_INVOICE: ("Create Invoices", "Create professional invoices"),
    FeatureFlag.SAVE_INVOICE: ("Save Invoices", "Save and manage your invoices"),
    FeatureFlag.UNLIMITED_INVOICES: ("Unlimited Invoices", "No limit on number of invoices"),
    FeatureFlag.EXPORT_PDF: ("Export PDF", "Download invoices as PDF"),
    FeatureFlag.SHARE_LINK: ("Share Link", "Share invoices via public link"),
    FeatureFlag.MANAGE_CLIENTS: ("Manage Clients", "Store and manage client information"),
    FeatureFlag.CLIENT_MANAGEMENT: ("Client Management", "Full client relationship management system"),
    FeatureFlag.CLIENT_PORTAL: ("Client Portal", "Give clients access to their invoices"),
    FeatureFlag.USE_TEMPLATES: ("Use Templates", "Use pre-designed templates"),
    FeatureFlag.CUSTOM_TEMPLATES: ("Custom Templates", "Create your own templates"),
    FeatureFlag.BASIC_BRANDING: ("Basic Branding", "Add your business name and colors"),
    FeatureFlag.ADVANCED_BRANDING: ("Advanced Branding", "Full customization of invoice appearance"),
    FeatureFlag.CUSTOM_LOGO: ("Custom Logo", "Upload your company logo"),
    FeatureFlag.PAYMENT_INTEGRATION: ("Payment Integration", "Accept payments online"),
    FeatureFlag.RECURRING_INVOICES: ("Recurring Invoices", "Set up automatic recurring invoices"),
    FeatureFlag.PAYMENT_REMINDERS: ("Payment Reminders", "Automatic payment reminders"),
    FeatureFlag.ANALYTICS: ("Analytics", "Track invoice and payment analytics"),
    FeatureFlag.REPORTS: ("Reports", "Generate business reports"),
    FeatureFlag.EMAIL_SUPPORT: ("Email Support", "Get help via email"),
    FeatureFlag.PRIORITY_SUPPORT: ("Priority Support", "Get priority support response"),
    FeatureFlag.API_ACCESS: ("API Access", "Access to developer API"),
}


def parse_tier(tier: Union[PlanTier, str, None], strict: bool = True) -> PlanTier:
    """Coerce a stored tier value to PlanTier.

    Unknown values raise InvalidTierError when strict, otherwise they are
    logged and treated as free.
    """
    if isinstance(tier, PlanTier):
        return tier
    try:
        return PlanTier(tier)
    except ValueError:
        if strict:
            raise InvalidTierError(tier)
        logger.error("UNKNOWN_PLAN_TIER tier=%r falling back to free", tier)
        return PlanTier.FREE


def is_entitled_status(status: Union[SubscriptionStatus, str, None]) -> bool:
    if status is None:
        return False
    try:
        return SubscriptionStatus(status) in ENTITLED_STATUSES
    except ValueError:
        return False


def tier_for_subscription_status(status: Union[SubscriptionStatus, str, None]) -> PlanTier:
    """Pro iff the subscription is active or trialing."""
    return PlanTier.PRO if is_entitled_status(status) else PlanTier.FREE


def _ordered(flags: Iterable[FeatureFlag]) -> Tuple[str, ...]:
    wanted = set(flags)
    return tuple(flag.value for flag in FeatureFlag if flag in wanted)


def resolve_features(
    tier: Union[PlanTier, str, None],
    subscription_status: Union[SubscriptionStatus, str, None] = None,
    strict: bool = True,
) -> Tuple[str, ...]:
    """Resolve the feature flags granted by a plan tier.

    Returns flag values in declaration order without duplicates. When a
    subscription status is supplied and is not active/trialing, the free set
    is returned whatever the tier says.
    """
    plan_tier = parse_tier(tier, strict=strict)
    if subscription_status is not None and not is_entitled_status(subscription_status):
        plan_tier = PlanTier.FREE
    return _ordered(PLAN_FEATURES[plan_tier])


def has_feature(tier: Union[PlanTier, str], feature: Union[FeatureFlag, str], strict: bool = True) -> bool:
    return FeatureFlag(feature).value in resolve_features(tier, strict=strict)


def subscription_status_of(user: Dict[str, Any]) -> Optional[str]:
    """Status of a real subscription, None when the user only has a customer record."""
    subscription = user.get("subscription") or {}
    if not subscription.get("subscription_id"):
        return None
    return subscription.get("status")


def get_entitlement_matrix() -> Dict[str, Dict[str, Any]]:
    """Feature availability per tier, for the pricing page."""
    matrix = {}
    for flag in FeatureFlag:
        name, description = FEATURE_METADATA[flag]
        matrix[flag.value] = {
            "name": name,
            "description": description,
            "plans": {tier.value: flag in PLAN_FEATURES[tier] for tier in PlanTier},
        }
    return matrix


class EntitlementService:
    """Builds entitlement read models for stored users."""

    def __init__(self, strict: bool = True):
        self.strict = strict

    async def get_user_entitlements(self, user_id: str) -> Dict[str, Any]:
        """Complete entitlement information for a user.

        Enabled flags come from the stored `features` list, which the billing
        writers keep in step with `plan.tier`.
        """
        db = database.get_db()
        user = await db.users.find_one(
            {"user_id": user_id},
            {"_id": 0, "plan": 1, "subscription": 1, "features": 1}
        )
        if not user:
            raise UserNotFoundError(f"user_id={user_id}")

        tier = parse_tier((user.get("plan") or {}).get("tier"), strict=self.strict)
        enabled = set(user.get("features") or [])

        features = {}
        for flag in FeatureFlag:
            name, description = FEATURE_METADATA[flag]
            features[flag.value] = {
                "enabled": flag.value in enabled,
                "name": name,
                "description": description,
                "minimum_plan": PlanTier.FREE.value if flag in FREE_FEATURES else PlanTier.PRO.value,
            }

        return {
            "user_id": user_id,
            "plan": tier.value,
            "subscription_status": subscription_status_of(user),
            "features": features,
            "feature_summary": {
                "total": len(features),
                "enabled": sum(1 for f in features.values() if f["enabled"]),
            },
        }


# Singleton instance
entitlement_service = EntitlementService(strict=billing_settings.strict_tiers)
