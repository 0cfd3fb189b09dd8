"""Authentication routes."""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from inbox.persistence.repo import InboxRepository
from inbox.security.auth import UserClaims, create_access_token, verify_password
from inbox_api.deps import get_current_user, rate_limit
from inbox_api.schemas import LoginRequest, TokenResponse
from inboxcore.db import get_db
from inboxcore.errors import AppError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


class InvalidCredentialsError(AppError):
    status_code = 401
    default_code = "INVALID_CREDENTIALS"


@router.post("/login", response_model=TokenResponse, dependencies=[Depends(rate_limit("auth_login"))])
def login(body: LoginRequest, db: Session = Depends(get_db)):
    repo = InboxRepository(db)
    profile = repo.get_profile_by_email(body.email.lower())

    if not profile or not profile.is_active or not verify_password(body.password, profile.password_hash):
        logger.warning("Failed login attempt", extra={"email": body.email})
        raise InvalidCredentialsError("Invalid email or password")

    profile.last_seen_at = datetime.utcnow()
    db.commit()

    token = create_access_token(profile.id, profile.organization_id, profile.email, profile.role)
    logger.info(f"User {profile.id} logged in", extra={"organization_id": str(profile.organization_id)})
    return TokenResponse(
        access_token=token,
        user_id=profile.id,
        organization_id=profile.organization_id,
        role=profile.role,
    )


@router.get("/me")
def me(user: UserClaims = Depends(get_current_user)):
    return {
        "id": str(user.id),
        "organization_id": str(user.organization_id) if user.organization_id else None,
        "email": user.email,
        "role": user.role,
    }
