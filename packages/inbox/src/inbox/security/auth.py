from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import bcrypt
from jose import JWTError, jwt

from inboxcore.settings import get_settings


@dataclass
class UserClaims:
    """User information extracted from an access token."""

    id: UUID
    organization_id: UUID | None
    email: str
    role: str

    @property
    def is_super_admin(self) -> bool:
        return self.role == "super_admin"


def verify_password(plain_password: str, hashed_password: str | bytes | None) -> bool:
    """Verify a password against a bcrypt hash."""
    if not hashed_password:
        return False
    if isinstance(hashed_password, str):
        hashed_password = hashed_password.encode("utf-8")

    return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password)


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for a password."""
    salt = bcrypt.gensalt(rounds=12)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def create_access_token(
    profile_id: UUID,
    organization_id: UUID | None,
    email: str,
    role: str,
    expires_delta: timedelta | None = None,
) -> str:
    settings = get_settings()
    expire = datetime.utcnow() + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode: dict[str, Any] = {
        "sub": str(profile_id),
        "org": str(organization_id) if organization_id else None,
        "email": email,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any] | None:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None


def claims_from_token(token: str) -> UserClaims | None:
    """Decode a token into UserClaims; None if invalid, expired or incomplete."""
    payload = decode_access_token(token)
    if payload is None:
        return None

    user_id = payload.get("sub")
    email = payload.get("email")
    role = payload.get("role")
    org = payload.get("org")

    if not user_id or not email or not role:
        return None

    try:
        return UserClaims(
            id=UUID(user_id),
            organization_id=UUID(org) if org else None,
            email=email,
            role=role,
        )
    except ValueError:
        return None
