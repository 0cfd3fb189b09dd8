"""Authentication, permissions and rate limiting."""

from inbox.security.auth import UserClaims, claims_from_token, create_access_token
from inbox.security.rbac import Action, Resource, can_manage_role, check_permission, has_permission

__all__ = [
    "Action",
    "Resource",
    "UserClaims",
    "can_manage_role",
    "check_permission",
    "claims_from_token",
    "create_access_token",
    "has_permission",
]
