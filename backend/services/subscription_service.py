"""Subscription Service - checkout, billing portal and plan changes.

This service handles:
- Creating checkout sessions for the Pro plan (monthly or yearly)
- Billing portal access
- Cancel at period end / reactivate
- Subscription status and pricing plans for the frontend

Key Principles:
- Stripe is called first; local state only changes after Stripe agreed
- Plan tier is never changed here; the webhook reconciler owns it
- Metadata includes user_id for webhook tracing
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import stripe

from config import BillingSettings, billing_settings
from database import database
from models import ActorRole, AuditAction, BillingInterval
from services.billing_errors import (
    BillingProviderUnavailableError,
    NoActiveSubscriptionError,
    SubscriptionAlreadyEndedError,
    SubscriptionGoneError,
)
from services.entitlements import is_entitled_status, subscription_status_of
from services.stripe_events import as_dict
from services.stripe_gateway import call_stripe, is_resource_missing
from services.user_service import user_service
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

FREE_PLAN = {
    "id": "free",
    "name": "Free",
    "description": "Perfect for freelancers and small businesses",
    "is_free": True,
    "prices": [],
    "features": [
        "Unlimited invoices",
        "Beautiful templates",
        "PDF export & print",
        "Shareable links",
        "Basic branding",
        "Email support",
    ],
    "metadata": {},
}

_INTERVAL_ORDER = {BillingInterval.MONTH.value: 0, BillingInterval.YEAR.value: 1}


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SubscriptionService:
    """Stripe billing operations for a user's Pro subscription."""

    def __init__(self, settings: BillingSettings):
        self.settings = settings

    async def _stripe(self, func, *args, operation: str, **kwargs):
        return await call_stripe(
            func,
            *args,
            api_key=self.settings.stripe_secret_key,
            timeout=self.settings.stripe_timeout_seconds,
            unavailable_error=BillingProviderUnavailableError,
            operation=operation,
            **kwargs,
        )

    async def _modify_subscription(self, subscription_id: str, operation: str, **kwargs):
        try:
            return await self._stripe(stripe.Subscription.modify, subscription_id, operation=operation, **kwargs)
        except stripe.InvalidRequestError as e:
            if not is_resource_missing(e):
                raise
            logger.error("SUBSCRIPTION_GONE subscription_id=%s operation=%s", subscription_id, operation)
            raise SubscriptionGoneError(subscription_id) from e

    def _price_for(self, interval: BillingInterval) -> str:
        price_id = self.settings.monthly_price_id if interval == BillingInterval.MONTH else self.settings.yearly_price_id
        if not price_id:
            logger.error("STRIPE_PRICE_NOT_CONFIGURED interval=%s", interval.value)
            raise BillingProviderUnavailableError(f"Price ID not configured for {interval.value}ly billing")
        return price_id

    # =========================================================================
    # Checkout / portal
    # =========================================================================

    async def create_checkout_session(self, user_id: str, interval: BillingInterval) -> Dict[str, Any]:
        """
        Create a Stripe checkout session for the Pro plan.

        The Stripe customer is created on first use and its id stored on the
        user so later webhooks can find them.

        Returns:
            Dict with checkout_url and session_id
        """
        user = await user_service.get_user(user_id)
        price_id = self._price_for(interval)
        customer_id = await self._ensure_customer(user)

        session = await self._stripe(
            stripe.checkout.Session.create,
            customer=customer_id,
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=f"{self.settings.frontend_url}/app/subscription?success=true",
            cancel_url=f"{self.settings.frontend_url}/pricing?canceled=true",
            payment_method_collection="always",
            subscription_data={"metadata": {"user_id": user_id}},
            metadata={"user_id": user_id},
            client_reference_id=user_id,
            allow_promotion_codes=True,
            operation="checkout.session.create",
        )
        logger.info("CHECKOUT_SESSION_CREATED user_id=%s session_id=%s interval=%s", user_id, session["id"], interval.value)
        return {"checkout_url": session["url"], "session_id": session["id"]}

    async def _ensure_customer(self, user: Dict[str, Any]) -> str:
        customer_id = (user.get("subscription") or {}).get("customer_id")
        if customer_id:
            return customer_id

        user_id = user["user_id"]
        customer = await self._stripe(
            stripe.Customer.create,
            email=user.get("email"),
            name=user.get("name"),
            metadata={"user_id": user_id},
            idempotency_key=f"billing-customer-{user_id}",
            operation="customer.create",
        )
        customer_id = customer["id"]

        db = database.get_db()
        await db.users.update_one(
            {"user_id": user_id, "subscription.customer_id": {"$exists": False}},
            {"$set": {"subscription.customer_id": customer_id, "updated_at": datetime.now(timezone.utc)}},
        )
        logger.info("STRIPE_CUSTOMER_CREATED user_id=%s customer_id=%s", user_id, customer_id)
        # Re-read so a concurrent checkout that stored first wins
        stored = await user_service.get_user(user_id)
        return (stored.get("subscription") or {}).get("customer_id") or customer_id

    async def create_portal_session(self, user_id: str) -> Dict[str, Any]:
        user = await user_service.get_user(user_id)
        customer_id = (user.get("subscription") or {}).get("customer_id")
        if not customer_id:
            raise NoActiveSubscriptionError("No Stripe customer found. Please subscribe to a plan first.")

        session = await self._stripe(
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=f"{self.settings.frontend_url}/app/subscription",
            operation="billing_portal.session.create",
        )
        return {"portal_url": session["url"]}

    # =========================================================================
    # Cancel / reactivate
    # =========================================================================

    async def cancel_subscription(self, user_id: str) -> Dict[str, Any]:
        """Schedule cancellation at period end. Access (and tier) stay until then."""
        user = await user_service.get_user(user_id)
        subscription = user.get("subscription") or {}
        subscription_id = subscription.get("subscription_id")
        if not subscription_id or not is_entitled_status(subscription.get("status")):
            raise NoActiveSubscriptionError("No active subscription found")

        period_end = _aware(subscription.get("current_period_end"))
        if subscription.get("cancel_at_period_end"):
            return {"success": True, "cancel_at_period_end": True, "current_period_end": period_end}

        updated = await self._modify_subscription(
            subscription_id,
            operation="subscription.cancel_at_period_end",
            cancel_at_period_end=True,
        )

        db = database.get_db()
        await db.users.update_one(
            {"user_id": user_id, "subscription.subscription_id": subscription_id},
            {"$set": {"subscription.cancel_at_period_end": True, "updated_at": datetime.now(timezone.utc)}},
        )

        stripe_period_end = as_dict(updated).get("current_period_end")
        if stripe_period_end:
            period_end = datetime.fromtimestamp(int(stripe_period_end), tz=timezone.utc)
        logger.info("SUBSCRIPTION_CANCEL_REQUESTED user_id=%s subscription_id=%s period_end=%s", user_id, subscription_id, period_end)
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CANCEL_REQUESTED,
            actor_role=ActorRole.USER,
            actor_id=user_id,
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription_id,
        )
        return {"success": True, "cancel_at_period_end": True, "current_period_end": period_end}

    async def reactivate_subscription(self, user_id: str) -> Dict[str, Any]:
        """Undo a scheduled cancellation while the paid period is still running."""
        user = await user_service.get_user(user_id)
        subscription = user.get("subscription") or {}
        subscription_id = subscription.get("subscription_id")
        if not subscription_id:
            raise NoActiveSubscriptionError("No subscription found")

        period_end = _aware(subscription.get("current_period_end"))
        if not is_entitled_status(subscription.get("status")) or period_end is None or period_end <= datetime.now(timezone.utc):
            raise SubscriptionAlreadyEndedError("Subscription has already ended. Please start a new subscription.")

        if not subscription.get("cancel_at_period_end"):
            return {"success": True, "cancel_at_period_end": False, "current_period_end": period_end}

        await self._modify_subscription(
            subscription_id,
            operation="subscription.reactivate",
            cancel_at_period_end=False,
        )

        db = database.get_db()
        await db.users.update_one(
            {
                "user_id": user_id,
                "subscription.subscription_id": subscription_id,
                "subscription.cancel_at_period_end": True,
            },
            {"$set": {"subscription.cancel_at_period_end": False, "updated_at": datetime.now(timezone.utc)}},
        )
        logger.info("SUBSCRIPTION_REACTIVATED user_id=%s subscription_id=%s", user_id, subscription_id)
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_REACTIVATED,
            actor_role=ActorRole.USER,
            actor_id=user_id,
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription_id,
        )
        return {"success": True, "cancel_at_period_end": False, "current_period_end": period_end}

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_subscription_status(self, user_id: str) -> Dict[str, Any]:
        user = await user_service.get_user(user_id)
        subscription = user.get("subscription") or {}
        status = subscription_status_of(user)
        return {
            "tier": (user.get("plan") or {}).get("tier"),
            "has_subscription": status is not None,
            "status": status,
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")) if status else False,
            "current_period_end": _aware(subscription.get("current_period_end")) if status else None,
            "interval": subscription.get("interval") if status else None,
            "features": user.get("features") or [],
        }

    async def get_pricing_plans(self) -> List[Dict[str, Any]]:
        """Free plan first, then active Stripe products with monthly before yearly prices."""
        products = await self._stripe(stripe.Product.list, active=True, limit=100, operation="product.list")
        prices = await self._stripe(stripe.Price.list, active=True, limit=100, operation="price.list")

        plans: Dict[str, Dict[str, Any]] = {}
        for product in as_dict(products).get("data", []):
            product = as_dict(product)
            metadata = dict(product.get("metadata") or {})
            try:
                features = json.loads(metadata["features"]) if metadata.get("features") else []
            except (TypeError, ValueError):
                logger.warning("Invalid features metadata on product %s", product.get("id"))
                features = []
            plans[product["id"]] = {
                "id": product["id"],
                "name": product.get("name"),
                "description": product.get("description"),
                "is_free": False,
                "prices": [],
                "features": features,
                "metadata": metadata,
            }

        for price in as_dict(prices).get("data", []):
            price = as_dict(price)
            product_id = price.get("product")
            if isinstance(product_id, dict):
                product_id = product_id.get("id")
            if product_id not in plans:
                continue
            recurring = price.get("recurring") or {}
            plans[product_id]["prices"].append({
                "id": price["id"],
                "amount": price.get("unit_amount"),
                "currency": price.get("currency"),
                "interval": recurring.get("interval"),
                "interval_count": recurring.get("interval_count"),
            })

        paid_plans = []
        for plan in plans.values():
            if not plan["prices"]:
                continue
            plan["prices"].sort(key=lambda p: _INTERVAL_ORDER.get(p["interval"], len(_INTERVAL_ORDER)))
            paid_plans.append(plan)

        return [dict(FREE_PLAN), *paid_plans]


# Singleton instance
subscription_service = SubscriptionService(billing_settings)
