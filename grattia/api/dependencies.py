"""
FastAPI Dependencies - Authentication, authorization and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

import hmac
from dataclasses import dataclass
from uuid import UUID

import jwt
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from grattia.config import settings
from grattia.db.session import get_write_db
from grattia.models.api import MemberStatus
from grattia.models.domain import AuthContext
from grattia.services.catalog import (
    GoodyCatalogClient,
    RewardCatalogService,
    RyeCatalogClient,
    build_goody_client,
    build_rye_client,
)
from grattia.services.members import MembersService
from grattia.services.payment_provider import PaymentProvider
from grattia.services.stripe_provider import StripeProvider
from grattia.services.subscriptions import SubscriptionService

logger = get_logger(__name__)

# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)

_stripe_provider = StripeProvider()


@dataclass(frozen=True)
class TokenClaims:
    """Verified identity claims from the access token."""

    user_id: UUID
    email: str | None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_access_token(token: str) -> TokenClaims:
    """
    Verify an access token issued by the identity provider.

    The token's ``sub`` claim is the user id; ``email`` links invited
    profiles on first login.

    Raises:
        HTTPException 401 if the token is invalid, expired or has no subject
    """
    options = {"verify_aud": settings.auth_jwt_audience is not None}
    try:
        payload = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            audience=settings.auth_jwt_audience,
            options=options,
        )
    except jwt.ExpiredSignatureError as exc:
        raise _unauthorized("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        logger.warning("access_token_invalid", error=str(exc))
        raise _unauthorized("Invalid token") from exc

    try:
        user_id = UUID(str(payload["sub"]))
    except (KeyError, ValueError) as exc:
        raise _unauthorized("Invalid token: missing user ID") from exc

    return TokenClaims(user_id=user_id, email=payload.get("email"))


# ============================================================================
# Service Wiring
# ============================================================================


def get_payment_provider() -> PaymentProvider:
    return _stripe_provider


def get_goody_client() -> GoodyCatalogClient:
    return build_goody_client()


def get_rye_client() -> RyeCatalogClient:
    return build_rye_client()


def get_subscription_service(
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> SubscriptionService:
    return SubscriptionService(db, provider)


def get_members_service(
    db: AsyncSession = Depends(get_write_db),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> MembersService:
    return MembersService(db, subscriptions)


def get_catalog_service(
    db: AsyncSession = Depends(get_write_db),
    goody: GoodyCatalogClient = Depends(get_goody_client),
    rye: RyeCatalogClient = Depends(get_rye_client),
) -> RewardCatalogService:
    return RewardCatalogService(db, goody, rye)


# ============================================================================
# Caller Identity
# ============================================================================


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_write_db),
) -> AuthContext:
    """
    Resolve the calling member from ``Authorization: Bearer {token}``.

    Usage:
        @router.get("/v1/points/history")
        async def history(actor: AuthContext = Depends(get_auth_context)):
            ...

    Raises:
        HTTPException 401 if no token, invalid token or no profile
        HTTPException 403 if the member has been removed
    """
    if credentials is None:
        raise _unauthorized("Authorization header required")

    claims = decode_access_token(credentials.credentials)
    profile = await MembersService(db).resolve_profile(claims.user_id, claims.email)
    if profile is None:
        logger.warning("auth_profile_not_found", user_id=str(claims.user_id))
        raise _unauthorized("No profile for this user")

    member_status = MemberStatus(profile.status)
    if member_status == MemberStatus.DEACTIVATED:
        logger.warning("auth_member_deactivated", profile_id=str(profile.id))
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Member account is deactivated",
        )

    return AuthContext(
        user_id=claims.user_id,
        profile_id=profile.id,
        company_id=profile.company_id,
        email=profile.email,
        is_admin=profile.is_admin,
        is_platform_admin=profile.is_platform_admin,
        status=member_status,
    )


async def require_company_admin(
    actor: AuthContext = Depends(get_auth_context),
) -> AuthContext:
    """Caller must administer their company."""
    if not actor.is_admin:
        logger.warning("company_admin_required", profile_id=str(actor.profile_id))
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Company admin role required",
        )
    return actor


async def require_platform_admin(
    actor: AuthContext = Depends(get_auth_context),
) -> AuthContext:
    """Caller must be a platform operator."""
    if not actor.is_platform_admin:
        logger.warning("platform_admin_required", profile_id=str(actor.profile_id))
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Platform admin role required",
        )
    return actor


async def require_scheduler(
    x_scheduler_secret: str | None = Header(None, description="Shared scheduler secret"),
) -> None:
    """
    Guard for endpoints invoked by the external job scheduler.

    An unset secret disables the endpoints entirely.
    """
    expected = settings.scheduler_secret
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduler secret not configured",
        )
    if x_scheduler_secret is None or not hmac.compare_digest(x_scheduler_secret, expected):
        logger.warning("scheduler_auth_failed")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid scheduler secret",
        )
