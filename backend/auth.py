"""Password hashing and bearer tokens for invoice app users.

Tokens carry identity only (`sub`/`user_id`, `email`). Plan tier and feature
flags are never put in a token: they change with webhooks, so every guarded
route reads them fresh from the user document.
"""
from passlib.context import CryptContext
from jose import JWTError, jwt
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Dict
import logging
import os

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

JWT_SECRET = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRATION_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))
TOKEN_TYPE_ACCESS = "access"

MIN_PASSWORD_LENGTH = 8


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """False for a wrong password and for a stored hash passlib cannot read."""
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        logger.error("Stored password hash is not a recognised bcrypt hash")
        return False


def create_user_token(user: Mapping[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Signed access token for a stored user document."""
    now = datetime.now(timezone.utc)
    claims = {
        "sub": user["user_id"],
        "user_id": user["user_id"],
        "email": user["email"],
        "typ": TOKEN_TYPE_ACCESS,
        "iat": now,
        "exp": now + (expires_delta or timedelta(hours=JWT_EXPIRATION_HOURS)),
    }
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict]:
    """Claims of a valid, unexpired access token; None otherwise."""
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    if claims.get("typ") != TOKEN_TYPE_ACCESS or not claims.get("user_id") or claims.get("sub") != claims.get("user_id"):
        return None
    return claims


def validate_password_strength(password: str) -> tuple[bool, str]:
    if len(password) < MIN_PASSWORD_LENGTH:
        return False, f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    if not any(c.isalpha() for c in password):
        return False, "Password must contain at least one letter"
    if not any(c.isdigit() for c in password):
        return False, "Password must contain at least one number"
    return True, "Password is valid"
