# permissions.py — Role policy shared by server-side guards and client UI gating
# Served verbatim at GET /api/v1/permissions so the browser never keeps its own copy.
from typing import Dict, Iterable, List, Union

from models import UserRole

# Bump whenever a role gains or loses a permission
POLICY_VERSION = "2"

RoleLike = Union[UserRole, str]


# ============================================================
# ROLE POLICY
# ============================================================

ROLE_POLICY: Dict[UserRole, dict] = {
    UserRole.USER: {
        "level": 1,
        "description": "Regular user with limited access",
        "permissions": [
            "view_own_tickets", "create_tickets", "update_own_tickets",
            "view_own_changes", "create_changes", "update_own_changes", "delete_own_changes",
            "view_knowledge", "comment_on_knowledge",
        ],
    },
    UserRole.EDITOR: {
        "level": 2,
        "description": "Editor/Knowledge Manager",
        "permissions": [
            "view_own_tickets", "create_tickets", "update_own_tickets",
            "view_all_changes", "create_changes", "update_changes", "delete_own_changes",
            "view_knowledge", "create_knowledge", "update_knowledge",
            "view_solutions", "create_solutions", "update_solutions",
            "comment_on_knowledge", "assign_tickets",
        ],
    },
    UserRole.STAFF: {
        "level": 2,
        "description": "Service desk staff handling tickets and change reviews",
        "permissions": [
            "view_all_tickets", "create_tickets", "update_tickets",
            "view_all_changes", "create_changes", "update_changes", "delete_own_changes",
            "review_changes",
            "view_knowledge", "view_solutions",
            "comment_on_knowledge", "assign_tickets", "view_users",
        ],
    },
    UserRole.ADMIN: {
        "level": 3,
        "description": "Administrator with access to all features except enterprise admin features",
        "permissions": [
            "view_all_tickets", "create_tickets", "update_tickets", "delete_tickets",
            "view_all_changes", "create_changes", "update_changes", "delete_changes",
            "review_changes",
            "view_knowledge", "view_solutions",
            "comment_on_knowledge", "assign_tickets",
            "view_users", "manage_users", "manage_settings", "reset_user_passwords",
            "send_notifications",
        ],
    },
    UserRole.ENTERPRISE_ADMIN: {
        "level": 4,
        "description": "Enterprise Administrator with full access to all features",
        "permissions": [
            "view_all_tickets", "create_tickets", "update_tickets", "delete_tickets",
            "view_all_changes", "create_changes", "update_changes", "delete_changes",
            "review_changes",
            "view_knowledge", "create_knowledge", "update_knowledge", "delete_knowledge",
            "view_solutions", "create_solutions", "update_solutions", "delete_solutions",
            "comment_on_knowledge", "assign_tickets",
            "view_users", "manage_users", "manage_settings", "manage_admins",
            "reset_user_passwords", "reset_admin_passwords",
            "send_notifications",
        ],
    },
}

ACCESS_DENIED_MESSAGES = {
    "view_all_changes": "You don't have permission to view all changes",
    "update_changes": "You don't have permission to update this change",
    "delete_changes": "You don't have permission to delete changes",
    "review_changes": "You don't have permission to review changes",
    "view_users": "You don't have permission to view users",
    "manage_users": "You don't have permission to manage users",
    "manage_settings": "You don't have permission to manage system settings",
    "manage_admins": "You don't have permission to manage administrators",
    "send_notifications": "You don't have permission to send notifications",
}


# ============================================================
# ROLE SETS used by the change workflow
# ============================================================

# May read/list every change and update any change
CHANGE_VIEW_ALL_ROLES = frozenset({
    UserRole.ADMIN, UserRole.STAFF, UserRole.EDITOR, UserRole.ENTERPRISE_ADMIN,
})
CHANGE_EDIT_ROLES = CHANGE_VIEW_ALL_ROLES
# Staff and editors may edit but not delete
CHANGE_DELETE_ROLES = frozenset({UserRole.ADMIN, UserRole.ENTERPRISE_ADMIN})
# Receive workflow notifications for every change
CHANGE_NOTIFY_ROLES = frozenset({UserRole.ADMIN, UserRole.STAFF, UserRole.ENTERPRISE_ADMIN})


# ============================================================
# HELPERS
# ============================================================

def to_role(role: RoleLike) -> UserRole:
    return role if isinstance(role, UserRole) else UserRole(role)


def is_authorized(role: RoleLike, required_roles: Iterable[RoleLike]) -> bool:
    """Access guard for role-gated operations.

    enterprise_admin is always allowed. admin is allowed unless the required
    set names enterprise_admin. Every other role must be listed explicitly.
    """
    try:
        user_role = to_role(role)
    except ValueError:
        return False
    required = {to_role(r) for r in required_roles}

    if user_role == UserRole.ENTERPRISE_ADMIN:
        return True
    if user_role == UserRole.ADMIN:
        return UserRole.ENTERPRISE_ADMIN not in required
    return user_role in required


def get_role_permissions(role: RoleLike) -> List[str]:
    try:
        return list(ROLE_POLICY[to_role(role)]["permissions"])
    except (ValueError, KeyError):
        return []


def has_permission(role: RoleLike, permission: str) -> bool:
    return permission in get_role_permissions(role)


def access_denied_message(permission: str) -> str:
    return ACCESS_DENIED_MESSAGES.get(permission, "You don't have permission to perform this action")


def policy_document() -> dict:
    return {
        "version": POLICY_VERSION,
        "roles": {
            role.value: {
                "level": entry["level"],
                "description": entry["description"],
                "permissions": list(entry["permissions"]),
            }
            for role, entry in ROLE_POLICY.items()
        },
        "messages": dict(ACCESS_DENIED_MESSAGES),
    }
