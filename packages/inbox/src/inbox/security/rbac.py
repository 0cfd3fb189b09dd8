"""
Role-Based Access Control

Static grants per role. Organization scoping is enforced separately by the
repositories (organization_id filters) and by row-level security.
"""

from enum import Enum

from inboxcore.errors import PermissionDeniedError


class Resource(str, Enum):
    ORGANIZATIONS = "organizations"
    USERS = "users"
    CONVERSATIONS = "conversations"
    CONTACTS = "contacts"
    MESSAGES = "messages"
    TEMPLATES = "templates"
    BROADCASTS = "broadcasts"
    ANALYTICS = "analytics"
    BILLING = "billing"
    SETTINGS = "settings"
    WEBHOOKS = "webhooks"
    REFUNDS = "refunds"
    ADMIN = "admin"


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    LIST = "list"
    ASSIGN = "assign"
    CLOSE = "close"
    USE = "use"
    EXPORT = "export"
    ALL = "*"


ALL = "*"
READ_ONLY = {Action.READ, Action.LIST}

# Higher priority roles may manage lower ones
ROLE_PRIORITY: dict[str, int] = {
    "super_admin": 1000,
    "owner": 900,
    "admin": 800,
    "agent": 600,
    "viewer": 100,
}

ROLE_GRANTS: dict[str, dict[str, set[Action]]] = {
    "super_admin": {
        ALL: {Action.ALL},
    },
    "owner": {
        Resource.ORGANIZATIONS.value: {Action.ALL},
        Resource.USERS.value: {Action.ALL},
        Resource.CONVERSATIONS.value: {Action.ALL},
        Resource.CONTACTS.value: {Action.ALL},
        Resource.MESSAGES.value: {Action.ALL},
        Resource.TEMPLATES.value: {Action.ALL},
        Resource.BROADCASTS.value: {Action.ALL},
        Resource.ANALYTICS.value: {Action.ALL},
        Resource.BILLING.value: {Action.ALL},
        Resource.SETTINGS.value: {Action.ALL},
        Resource.WEBHOOKS.value: {Action.ALL},
    },
    "admin": {
        Resource.ORGANIZATIONS.value: {Action.READ, Action.UPDATE},
        Resource.USERS.value: {Action.READ, Action.LIST, Action.CREATE, Action.UPDATE},
        Resource.CONVERSATIONS.value: {Action.ALL},
        Resource.CONTACTS.value: {Action.ALL},
        Resource.MESSAGES.value: {Action.ALL},
        Resource.TEMPLATES.value: {Action.ALL},
        Resource.BROADCASTS.value: {Action.CREATE},
        Resource.ANALYTICS.value: {Action.READ, Action.EXPORT},
        Resource.BILLING.value: {Action.READ},
        Resource.SETTINGS.value: {Action.READ, Action.UPDATE},
    },
    "agent": {
        Resource.CONVERSATIONS.value: {
            Action.READ,
            Action.LIST,
            Action.CREATE,
            Action.UPDATE,
            Action.ASSIGN,
            Action.CLOSE,
        },
        Resource.CONTACTS.value: {Action.READ, Action.LIST, Action.CREATE, Action.UPDATE},
        Resource.MESSAGES.value: {Action.READ, Action.LIST, Action.CREATE},
        Resource.TEMPLATES.value: {Action.READ, Action.LIST, Action.USE},
        Resource.USERS.value: {Action.LIST},
    },
    "viewer": {
        Resource.CONVERSATIONS.value: set(READ_ONLY),
        Resource.CONTACTS.value: set(READ_ONLY),
        Resource.MESSAGES.value: set(READ_ONLY),
        Resource.TEMPLATES.value: set(READ_ONLY),
        Resource.ANALYTICS.value: {Action.READ},
    },
}


def has_permission(role: str, resource: Resource | str, action: Action | str) -> bool:
    """Check whether a role may perform an action on a resource."""
    grants = ROLE_GRANTS.get(role)
    if not grants:
        return False

    resource_key = resource.value if isinstance(resource, Resource) else resource
    action = Action(action)

    for key in (ALL, resource_key):
        allowed = grants.get(key)
        if allowed and (Action.ALL in allowed or action in allowed):
            return True
    return False


def check_permission(role: str, resource: Resource | str, action: Action | str) -> None:
    """Raise PermissionDeniedError unless the role is allowed."""
    if not has_permission(role, resource, action):
        resource_key = resource.value if isinstance(resource, Resource) else resource
        action_key = action.value if isinstance(action, Action) else action
        raise PermissionDeniedError(
            f"Role '{role}' cannot {action_key} {resource_key}",
            details={"role": role, "resource": resource_key, "action": action_key},
        )


def can_manage_role(actor_role: str, target_role: str) -> bool:
    """
    Whether actor_role may grant, change or revoke target_role.

    Only super admins grant super_admin; otherwise the target must not outrank the actor.
    """
    if target_role not in ROLE_PRIORITY or actor_role not in ROLE_PRIORITY:
        return False
    if target_role == "super_admin":
        return actor_role == "super_admin"
    return ROLE_PRIORITY[actor_role] >= ROLE_PRIORITY[target_role]
