"""
Authentication for the Vendor Alert service.

Two kinds of credential are accepted:
1. Shopify session tokens (embedded admin loads), signed with the app secret
2. Chat access tokens issued by /chat/auth/login, signed with jwt_secret_key
"""

import logging
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlparse

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vendor_alert.config import settings
from vendor_alert.database import get_db
from vendor_alert.models import User

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


# ============== Passwords ==============

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """Verify a password against a stored hash; missing hashes never match."""
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        logger.exception("Password verification failed due to invalid hash format")
        return False


# ============== Shopify session tokens ==============

def decode_session_token(token: str) -> str:
    """
    Validate a Shopify session token and return the shop domain.

    Args:
        token: JWT from App Bridge

    Returns:
        Shop domain taken from the `dest` claim

    Raises:
        jwt.InvalidTokenError: If signature, audience or expiry is invalid
    """
    payload = jwt.decode(
        token,
        settings.shopify_api_secret,
        algorithms=["HS256"],
        audience=settings.shopify_api_key,
    )
    shop_domain = urlparse(payload.get("dest", "")).netloc
    if not shop_domain:
        raise jwt.InvalidTokenError("Session token has no destination shop")
    return shop_domain


async def get_current_shop(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """
    Resolve the tenant shop domain from the Shopify session token.

    The shop is never taken from query parameters or request bodies.
    """
    if not credentials:
        raise _unauthorized("Session token required")

    try:
        return decode_session_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Session token has expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Rejected session token: {e}")
        raise _unauthorized("Invalid session token")


# ============== Chat tokens ==============

def create_access_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a chat access token for a user."""
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    payload = {
        "sub": str(user.id),
        "role": user.role,
        "email": user.email,
        "exp": expire,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> int:
    """
    Decode a chat access token.

    Returns:
        The user id it was issued for

    Raises:
        jwt.InvalidTokenError: If the token is invalid or expired
    """
    payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise jwt.InvalidTokenError("Token has no subject")


async def get_user_by_token(db: AsyncSession, token: str) -> Optional[User]:
    """Resolve an active user from a chat token, or None if it does not verify."""
    try:
        user_id = decode_access_token(token)
    except jwt.InvalidTokenError:
        return None

    result = await db.execute(select(User).where(User.id == user_id, User.is_active.is_(True)))
    return result.scalar_one_or_none()


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Require a valid chat access token."""
    if not credentials:
        raise _unauthorized("Access token required")

    user = await get_user_by_token(db, credentials.credentials)
    if user is None:
        raise _unauthorized("Invalid or expired token")
    return user
