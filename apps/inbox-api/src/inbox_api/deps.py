"""API dependencies: database session, bearer authentication, permissions and rate limits."""

from typing import Callable
from uuid import UUID

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from inbox.persistence.models import Organization
from inbox.persistence.repo import InboxRepository
from inbox.security.auth import UserClaims, claims_from_token
from inbox.security.rbac import Action, Resource, check_permission
from inbox.security.ratelimit import RateLimiter
from inbox.streams.producer import InboxStreamProducer
from inboxcore.db import get_db, set_tenant_context
from inboxcore.errors import NotFoundError, PermissionDeniedError, RateLimitError
from inboxcore.redis import get_redis_client

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> UserClaims:
    """
    Authenticate the bearer token and load the active profile.

    Role and organization come from the database so that role changes and
    deactivation take effect before the token expires.
    """
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated", headers={"WWW-Authenticate": "Bearer"})

    claims = claims_from_token(credentials.credentials)
    if claims is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token", headers={"WWW-Authenticate": "Bearer"})

    profile = InboxRepository(db).get_profile(claims.id)
    if not profile or not profile.is_active:
        raise HTTPException(status_code=401, detail="User is inactive", headers={"WWW-Authenticate": "Bearer"})

    user = UserClaims(
        id=profile.id,
        organization_id=profile.organization_id,
        email=profile.email,
        role=profile.role,
    )
    if user.organization_id:
        set_tenant_context(db, user.organization_id)
    return user


def require_organization(user: UserClaims = Depends(get_current_user)) -> UUID:
    """Organization of the current user; super admins without one get 403."""
    if not user.organization_id:
        raise PermissionDeniedError("This endpoint requires an organization member")
    return user.organization_id


def get_current_organization(
    organization_id: UUID = Depends(require_organization),
    db: Session = Depends(get_db),
) -> Organization:
    organization = InboxRepository(db).get_organization(organization_id)
    if not organization:
        raise NotFoundError("Organization not found")
    if not organization.is_active:
        raise PermissionDeniedError("Organization is suspended", code="ORGANIZATION_SUSPENDED")
    return organization


def require_permission(resource: Resource, action: Action) -> Callable[..., UserClaims]:
    """Dependency factory enforcing a role grant."""

    def dependency(user: UserClaims = Depends(get_current_user)) -> UserClaims:
        check_permission(user.role, resource, action)
        return user

    return dependency


def require_super_admin(user: UserClaims = Depends(get_current_user)) -> UserClaims:
    if not user.is_super_admin:
        raise PermissionDeniedError("Super admin access required")
    return user


def get_redis():
    return get_redis_client()


def get_producer(redis_client=Depends(get_redis)) -> InboxStreamProducer:
    return InboxStreamProducer(redis_client)


def rate_limit(endpoint: str) -> Callable[..., None]:
    """Dependency factory counting requests per user (or client IP) and endpoint."""

    def dependency(
        request: Request,
        credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
        redis_client=Depends(get_redis),
    ) -> None:
        claims = claims_from_token(credentials.credentials) if credentials else None
        if claims:
            subject = f"user:{claims.id}"
        else:
            subject = f"ip:{request.client.host if request.client else 'unknown'}"

        allowed, retry_after = RateLimiter(redis_client).check_rate_limit(subject, endpoint)
        if not allowed:
            raise RateLimitError("Rate limit exceeded", retry_after=retry_after)

    return dependency
