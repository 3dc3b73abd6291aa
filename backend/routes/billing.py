"""Billing Routes - Pro subscription management.

Endpoints:
- GET /api/billing/plans - Free plan plus active Stripe plans (public)
- GET /api/billing/features - Feature matrix per tier (public)
- POST /api/billing/checkout - Create checkout session for the Pro plan
- POST /api/billing/portal - Create Stripe billing portal session
- GET /api/billing/status - Current subscription status
- POST /api/billing/cancel - Cancel at period end
- POST /api/billing/reactivate - Undo a scheduled cancellation

BillingError subclasses raised by the services are mapped to HTTP status
codes by the handler registered in server.py.
"""
from fastapi import APIRouter, Request
from pydantic import BaseModel
from models import BillingInterval
from services.subscription_service import subscription_service
from services.entitlements import get_entitlement_matrix
from middleware import user_route_guard
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    interval: BillingInterval = BillingInterval.MONTH


@router.get("/plans")
async def get_pricing_plans():
    """Pricing page plans, free first."""
    return {"plans": await subscription_service.get_pricing_plans()}


@router.get("/features")
async def get_feature_matrix():
    return {"features": get_entitlement_matrix()}


@router.post("/checkout")
async def create_checkout(request: Request, body: CheckoutRequest):
    """Create Stripe checkout session for the Pro subscription."""
    user = await user_route_guard(request)
    return await subscription_service.create_checkout_session(user["user_id"], body.interval)


@router.post("/portal")
async def create_portal(request: Request):
    user = await user_route_guard(request)
    return await subscription_service.create_portal_session(user["user_id"])


@router.get("/status")
async def get_billing_status(request: Request):
    """Get current subscription and billing status."""
    user = await user_route_guard(request)
    return await subscription_service.get_subscription_status(user["user_id"])


@router.post("/cancel")
async def cancel_subscription(request: Request):
    """
    Cancel at the end of the current period.

    The user keeps Pro until Stripe ends the subscription.
    """
    user = await user_route_guard(request)
    result = await subscription_service.cancel_subscription(user["user_id"])
    period_end = result.get("current_period_end")
    when = period_end.strftime("%Y-%m-%d") if period_end else "the end of the current period"
    return {
        **result,
        "message": f"Subscription will be cancelled on {when}. You'll keep access until then.",
    }


@router.post("/reactivate")
async def reactivate_subscription(request: Request):
    user = await user_route_guard(request)
    result = await subscription_service.reactivate_subscription(user["user_id"])
    return {**result, "message": "Subscription reactivated successfully! Your subscription will continue."}
