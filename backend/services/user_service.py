"""User accounts and lookups used by the billing services."""
from typing import Any, Dict, Optional
import logging

from pymongo.errors import DuplicateKeyError

from auth import hash_password, verify_password
from database import database
from models import ActorRole, AuditAction, PlanTier, User, UserProfile
from services.billing_errors import UserNotFoundError
from services.entitlements import resolve_features
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


class EmailAlreadyRegisteredError(ValueError):
    pass


class UserService:

    async def create_user(self, email: str, name: str, password: str) -> Dict[str, Any]:
        """Sign up a new user on the free tier with no subscription or payout account."""
        db = database.get_db()
        email = email.strip().lower()

        user = User(
            email=email,
            name=name.strip(),
            password_hash=hash_password(password),
            features=list(resolve_features(PlanTier.FREE)),
        )
        # No subscription or payout_account sub-documents until Stripe gives us ids
        doc = user.model_dump(mode="python", exclude={"subscription", "payout_account"})
        doc["plan"]["tier"] = PlanTier.FREE.value
        try:
            await db.users.insert_one(doc)
        except DuplicateKeyError:
            raise EmailAlreadyRegisteredError("An account with this email already exists")
        doc.pop("_id", None)

        await create_audit_log(
            action=AuditAction.USER_SIGNUP,
            actor_role=ActorRole.USER,
            actor_id=user.user_id,
            user_id=user.user_id,
        )
        logger.info("USER_SIGNUP user_id=%s", user.user_id)
        return doc

    async def authenticate(self, email: str, password: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        user = await db.users.find_one({"email": email.strip().lower()}, {"_id": 0})
        if not user or not verify_password(password, user.get("password_hash", "")):
            await create_audit_log(
                action=AuditAction.USER_LOGIN_FAILED,
                user_id=user["user_id"] if user else None,
                metadata={"email": email, "reason": "invalid_credentials"},
            )
            return None

        await create_audit_log(
            action=AuditAction.USER_LOGIN_SUCCESS,
            actor_role=ActorRole.USER,
            actor_id=user["user_id"],
            user_id=user["user_id"],
        )
        return user

    async def get_user(self, user_id: str) -> Dict[str, Any]:
        db = database.get_db()
        user = await db.users.find_one({"user_id": user_id}, {"_id": 0, "password_hash": 0})
        if not user:
            raise UserNotFoundError(f"user_id={user_id}")
        return user

    async def find_user_by_customer_id(self, customer_id: str) -> Optional[Dict[str, Any]]:
        if not customer_id:
            return None
        db = database.get_db()
        return await db.users.find_one({"subscription.customer_id": customer_id}, {"_id": 0, "password_hash": 0})

    async def find_user_by_account_id(self, account_id: str) -> Optional[Dict[str, Any]]:
        if not account_id:
            return None
        db = database.get_db()
        return await db.users.find_one({"payout_account.account_id": account_id}, {"_id": 0, "password_hash": 0})

    def to_profile(self, user: Dict[str, Any]) -> UserProfile:
        return UserProfile.model_validate(user)


# Singleton instance
user_service = UserService()
