"""Payout Account Routes - Stripe Connect onboarding for accepting payments.

Creating, onboarding and opening the dashboard need the payment_integration
feature (Pro). Status and disconnect stay open so a downgraded user can
still see and detach their account.
"""
from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field
from typing import Optional
from services.connect_service import connect_service
from services.entitlements import FeatureFlag
from middleware import require_feature, user_route_guard
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/connect", tags=["connect"])


class ConnectAccountRequest(BaseModel):
    country: Optional[str] = Field(default=None, min_length=2, max_length=2)


@router.post("/account")
@require_feature(FeatureFlag.PAYMENT_INTEGRATION.value)
async def create_account(request: Request, body: Optional[ConnectAccountRequest] = None):
    """Create or reconnect the user's Connect account. Never creates a second one."""
    user = request.state.user
    logger.info("Creating/reconnecting payout account for user %s", user["user_id"])
    return await connect_service.connect_payout_account(
        user["user_id"],
        email=user.get("email"),
        country=body.country if body else None,
    )


@router.get("/onboarding-link")
@require_feature(FeatureFlag.PAYMENT_INTEGRATION.value)
async def get_onboarding_link(request: Request):
    return await connect_service.create_onboarding_link(request.state.user["user_id"])


@router.get("/dashboard-link")
@require_feature(FeatureFlag.PAYMENT_INTEGRATION.value)
async def get_dashboard_link(request: Request):
    return await connect_service.create_dashboard_link(request.state.user["user_id"])


@router.get("/status")
async def get_account_status(request: Request):
    user = await user_route_guard(request)
    return await connect_service.get_payout_account_status(user["user_id"])


@router.post("/refresh")
@require_feature(FeatureFlag.PAYMENT_INTEGRATION.value)
async def refresh_account_status(request: Request):
    """Pull the latest capability flags from Stripe, e.g. after onboarding."""
    return await connect_service.refresh_payout_account_status(request.state.user["user_id"])


@router.get("/platform-fee")
@require_feature(FeatureFlag.PAYMENT_INTEGRATION.value)
async def get_platform_fee(request: Request, amount_cents: int = Query(..., ge=0)):
    """Fee the platform takes from an invoice payment of `amount_cents`."""
    return connect_service.quote_platform_fee(amount_cents)


@router.post("/disconnect")
async def disconnect_account(request: Request):
    user = await user_route_guard(request)
    result = await connect_service.disconnect_payout_account(user["user_id"])
    return {
        "success": True,
        **result,
        "message": "Stripe account disconnected successfully. You can reconnect at any time.",
    }
