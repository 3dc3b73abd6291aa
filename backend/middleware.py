from fastapi import Request, HTTPException, status
from functools import wraps
from typing import Optional
import logging
from auth import decode_access_token
from database import database
from models import ActorRole, AuditAction
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload:
        return None

    return payload

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def user_route_guard(request: Request) -> dict:
    """Guard for user routes - checks auth and that the account still exists."""
    token_user = await require_auth(request)

    db = database.get_db()
    user = await db.users.find_one(
        {"user_id": token_user["user_id"]},
        {"_id": 0, "password_hash": 0}
    )

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found"
        )

    request.state.user = user
    return user

def require_feature(feature_key: str):
    """
    Decorator to enforce plan-based feature access.
    Reads the stored `features` list fresh from the DB; that list is only
    written together with plan.tier, so it is the authoritative gate.

    Usage:
        @router.post("/endpoint")
        @require_feature("payment_integration")
        async def my_endpoint(request: Request):
            ...
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(request: Request, *args, **kwargs):
            user = await user_route_guard(request)

            if feature_key not in (user.get("features") or []):
                tier = (user.get("plan") or {}).get("tier")
                await create_audit_log(
                    action=AuditAction.FEATURE_GATE_DENIED,
                    actor_role=ActorRole.USER,
                    actor_id=user["user_id"],
                    user_id=user["user_id"],
                    metadata={
                        "feature_key": feature_key,
                        "tier": tier,
                        "endpoint": str(request.url.path),
                        "method": request.method
                    }
                )
                logger.warning(
                    "Feature access denied: user_id=%s tier=%s requested_feature=%s endpoint=%s method=%s",
                    user["user_id"], tier, feature_key, request.url.path, request.method
                )
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail={
                        "error_code": "PLAN_NOT_ELIGIBLE",
                        "feature": feature_key,
                        "message": "This feature requires the Pro plan. Please upgrade to access.",
                        "upgrade_required": True,
                    }
                )

            return await func(request, *args, **kwargs)

        return wrapper
    return decorator
