"""
Built-in role / permission matrix for the Pew backend.

This is the default seed for the role registry when neither the roles table
nor config/roles.yaml is available. Deployments normally provision the same
matrix into the database once (see scripts/seed_roles.py).

Role Hierarchy (level is monotonic with privilege):
- ADMIN (100) > MANAGER (50) > USER (10)

Permission naming convention: resource:action
"""

from enum import Enum
from typing import FrozenSet


class Role(str, Enum):
    """Built-in roles. Keep in sync with config/roles.yaml."""
    USER = "user"
    MANAGER = "manager"
    ADMIN = "admin"


class Permission(str, Enum):
    """
    All permissions in the system.

    Naming convention: RESOURCE_ACTION
    """
    # Content
    POSTS_CREATE = "posts:create"
    POSTS_MODERATE = "posts:moderate"

    # Chat / streaming
    CHAT_SEND = "chat:send"
    STREAM_BROADCAST = "stream:broadcast"
    STREAM_MODERATE = "stream:moderate"

    # Economy
    GIFTS_SEND = "gifts:send"
    WALLET_VIEW = "wallet:view"
    WALLET_WITHDRAW = "wallet:withdraw"
    P2P_TRADE = "p2p:trade"
    ESCROW_RESOLVE = "escrow:resolve"

    # Community management
    USERS_VIEW = "users:view"
    USERS_SUSPEND = "users:suspend"
    ANALYTICS_VIEW = "analytics:view"
    TRANSLATIONS_MANAGE = "translations:manage"

    # Administration
    MANAGERS_MANAGE = "managers:manage"
    ROLES_MANAGE = "roles:manage"
    OVERRIDES_MANAGE = "overrides:manage"
    POLICIES_MANAGE = "policies:manage"
    COMPLIANCE_MANAGE = "compliance:manage"
    EXPERIMENTS_MANAGE = "experiments:manage"
    AUDIT_VIEW = "audit:view"


ROLE_LEVELS: dict[Role, int] = {
    Role.USER: 10,
    Role.MANAGER: 50,
    Role.ADMIN: 100,
}


_USER_PERMISSIONS: FrozenSet[Permission] = frozenset({
    Permission.POSTS_CREATE,
    Permission.CHAT_SEND,
    Permission.STREAM_BROADCAST,
    Permission.GIFTS_SEND,
    Permission.WALLET_VIEW,
    Permission.WALLET_WITHDRAW,
    Permission.P2P_TRADE,
})

_MANAGER_PERMISSIONS: FrozenSet[Permission] = _USER_PERMISSIONS | frozenset({
    Permission.POSTS_MODERATE,
    Permission.STREAM_MODERATE,
    Permission.ESCROW_RESOLVE,
    Permission.USERS_VIEW,
    Permission.USERS_SUSPEND,
    Permission.ANALYTICS_VIEW,
    Permission.TRANSLATIONS_MANAGE,
})

# Admin gets everything
_ADMIN_PERMISSIONS: FrozenSet[Permission] = frozenset(Permission)


ROLE_PERMISSIONS: dict[Role, FrozenSet[Permission]] = {
    Role.USER: _USER_PERMISSIONS,
    Role.MANAGER: _MANAGER_PERMISSIONS,
    Role.ADMIN: _ADMIN_PERMISSIONS,
}


def get_permissions_for_role(role: Role) -> FrozenSet[Permission]:
    """Get the built-in permission set for a role."""
    return ROLE_PERMISSIONS.get(role, frozenset())
