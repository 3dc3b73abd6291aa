"""User Profile Routes - read model for the frontend.

The profile carries the stored plan, subscription, payout account and the
`features` list the UI uses to show or hide Pro functionality.
"""
from fastapi import APIRouter, Request
from middleware import user_route_guard
from models import UserProfile
from services.user_service import user_service
from services.entitlements import entitlement_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/profile", tags=["profile"])

@router.get("", response_model=UserProfile)
async def get_profile(request: Request):
    """Get current user profile."""
    user = await user_route_guard(request)
    return user_service.to_profile(user)

@router.get("/entitlements")
async def get_entitlements(request: Request):
    """Every feature flag with name, description and whether it is enabled."""
    user = await user_route_guard(request)
    return await entitlement_service.get_user_entitlements(user["user_id"])
