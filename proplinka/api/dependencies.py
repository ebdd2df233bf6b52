"""
FastAPI dependencies: authentication, role guards, rate limits and cron auth.
"""
import hmac
import uuid
from typing import Awaitable, Callable, Optional

import structlog
from fastapi import Depends, Header, HTTPException, Request, status
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.config import get_settings
from proplinka.core import platform_settings
from proplinka.core.rate_limit import RateLimiter
from proplinka.database.connection import get_db
from proplinka.database.models import Profile
from proplinka.integrations.email_client import EmailClient

logger = structlog.get_logger(__name__)

MUTATING_METHODS = ("POST", "PUT", "PATCH", "DELETE")

_rate_limiter: Optional[RateLimiter] = None
_email_client: Optional[EmailClient] = None


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def get_email_client() -> EmailClient:
    global _email_client
    if _email_client is None:
        _email_client = EmailClient()
    return _email_client


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def decode_access_token(token: str) -> uuid.UUID:
    """
    Validate an auth provider access token and return its subject.

    Raises:
        HTTPException: 401 if the token is invalid or has no usable subject
    """
    settings = get_settings()
    try:
        claims = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            audience=settings.auth_jwt_audience,
        )
        return uuid.UUID(claims["sub"])
    except (JWTError, KeyError, ValueError) as e:
        logger.info("access_token_rejected", error=str(e))
        raise _unauthorized("Invalid or expired token") from e


async def get_optional_user(
    authorization: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> Optional[Profile]:
    """Current profile when a valid token is sent, None for anonymous requests."""
    token = _bearer_token(authorization)
    if token is None:
        return None
    try:
        profile_id = decode_access_token(token)
    except HTTPException:
        # A stale or garbage token on a public endpoint reads as anonymous
        return None
    profile = await db.get(Profile, profile_id)
    if profile is None or profile.is_suspended:
        return None
    return profile


async def get_current_user(
    authorization: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> Profile:
    """
    Authenticated profile for the request.

    Raises:
        HTTPException: 401 without a valid token or profile, 403 when suspended
    """
    token = _bearer_token(authorization)
    if token is None:
        raise _unauthorized("Not authenticated")

    profile = await db.get(Profile, decode_access_token(token))
    if profile is None:
        raise _unauthorized("Profile not found")
    if profile.is_suspended:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account suspended")

    structlog.contextvars.bind_contextvars(user_id=str(profile.id))
    return profile


def require_roles(*roles: str) -> Callable[..., Awaitable[Profile]]:
    """
    Dependency factory for role guards.

    Admins pass every guard.

    Example:
        @router.get("/queue")
        async def queue(user: Profile = Depends(require_roles("moderator"))):
            ...
    """

    async def guard(user: Profile = Depends(get_current_user)) -> Profile:
        if user.role == "admin" or user.role in roles:
            return user
        logger.warning("role_guard_denied", user_id=str(user.id), role=user.role, required=roles)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")

    return guard


def rate_limit(action: str, per_ip: bool = False) -> Callable[..., Awaitable[None]]:
    """
    Dependency factory enforcing the platform limit for an action.

    Authenticated callers are limited per profile, anonymous ones per client IP.
    per_ip counts every caller by address, for sign-up style endpoints where
    one person can hold many accounts.
    """

    async def dependency(
        request: Request,
        user: Optional[Profile] = Depends(get_optional_user),
        db: AsyncSession = Depends(get_db),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> None:
        client_ip = request.client.host if request.client else "anon"
        identifier = str(user.id) if user and not per_ip else client_ip
        limit = await platform_settings.get_rate_limit(db, action)
        result = await limiter.check(action, identifier, limit)
        if not result.allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=f"Rate limit exceeded for {action}. Try again later.",
                headers={
                    "Retry-After": str(result.retry_after),
                    "X-RateLimit-Limit": str(result.limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

    return dependency


async def check_maintenance_mode(
    request: Request,
    user: Optional[Profile] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
) -> None:
    """Reject writes from non-admins while maintenance mode is on."""
    if request.method not in MUTATING_METHODS:
        return
    if user is not None and user.is_admin:
        return
    if await platform_settings.get_setting(db, "maintenance_mode"):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="The platform is under maintenance. Please try again later.",
        )


async def verify_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    """Scheduled job endpoints require Authorization: Bearer <CRON_SECRET>."""
    secret = get_settings().cron_secret
    token = _bearer_token(authorization)
    if not secret or token is None or not hmac.compare_digest(token, secret):
        logger.warning("cron_request_unauthorized")
        raise _unauthorized("Unauthorized")
