"""
Permission resolution for principals.

Merges a principal's base role permissions with tier/trust overrides.
Conflict policy: a revoke for a permission always beats a grant for the
same permission, whatever order they were created in.

Usage:
    resolver = PermissionResolver(registry)
    resolved = resolver.resolve(principal)
    if has_permission(resolved.permissions, "p2p:trade"):
        ...
"""

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional, Union

from pew_access.platform.errors import NotFoundError, ValidationError
from pew_access.platform.principal import Principal
from pew_access.rbac.models import OverrideAction, RoleDefinition, UserOverride
from pew_access.rbac.registry import RoleRegistry, RoleTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedPermissions:
    """Effective role and permission set for one principal."""
    role_name: str
    level: int
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    granted: FrozenSet[str] = field(default_factory=frozenset)
    revoked: FrozenSet[str] = field(default_factory=frozenset)
    fallback: bool = False

    def to_dict(self) -> dict:
        return {
            "role": self.role_name,
            "level": self.level,
            "permissions": sorted(self.permissions),
            "granted": sorted(self.granted),
            "revoked": sorted(self.revoked),
            "fallback": self.fallback,
        }


def apply_overrides(
    base: FrozenSet[str],
    overrides: Iterable[UserOverride],
    user_id: Optional[str] = None,
) -> tuple[FrozenSet[str], FrozenSet[str], FrozenSet[str]]:
    """
    Apply tier/trust overrides to a base permission set.

    Any revoke for a permission removes it, whatever its type and whatever
    grants exist for the same permission, earlier or later. Admins lift a
    revoke by deleting it.

    Returns (effective, granted, revoked).
    """
    granted: set[str] = set()
    revoked: set[str] = set()

    for override in overrides:
        if not override.affects_permissions:
            continue
        try:
            action = override.permission_action()
        except ValidationError:
            logger.warning(
                "Ignoring override with unreadable grant/revoke value",
                extra={
                    "user_id": user_id or override.user_id,
                    "override_type": override.override_type.value,
                    "key": override.key,
                },
            )
            continue
        if action == OverrideAction.REVOKE:
            revoked.add(override.key)
        else:
            granted.add(override.key)

    effective = (set(base) | granted) - revoked
    return frozenset(effective), frozenset(granted - revoked), frozenset(revoked)


class PermissionResolver:
    """Resolves a principal's effective role and permissions."""

    def __init__(self, registry: RoleRegistry):
        self.registry = registry

    def _role_for(self, table: RoleTable, principal: Principal) -> tuple[RoleDefinition, bool]:
        role = table.get(principal.assigned_role) if principal.assigned_role else None
        if role is not None:
            return role, False
        lowest = table.lowest
        logger.warning(
            "Unknown role on principal, resolving to lowest role",
            extra={
                "user_id": principal.id,
                "assigned_role": principal.assigned_role,
                "fallback_role": lowest.name,
            },
        )
        return lowest, True

    def resolve(self, principal: Principal) -> ResolvedPermissions:
        """
        Resolve the principal's effective permissions.

        Raises ConfigurationError if the role table cannot be loaded.
        """
        table = self.registry.snapshot()
        role, fallback = self._role_for(table, principal)
        effective, granted, revoked = apply_overrides(
            role.permissions, principal.overrides, user_id=principal.id
        )
        return ResolvedPermissions(
            role_name=role.name,
            level=role.level,
            permissions=effective,
            granted=granted,
            revoked=revoked,
            fallback=fallback,
        )

    def has_role(
        self,
        resolved: ResolvedPermissions,
        required: str,
        exact: bool = False,
    ) -> bool:
        return has_role(resolved, required, self.registry, exact=exact)


def has_permission(
    permissions: Union[ResolvedPermissions, Iterable[str]],
    required: str,
) -> bool:
    """Check a permission against a resolved set or a plain collection."""
    if isinstance(permissions, ResolvedPermissions):
        permissions = permissions.permissions
    return required in permissions


def has_role(
    resolved: ResolvedPermissions,
    required: str,
    registry: RoleRegistry,
    exact: bool = False,
) -> bool:
    """
    Role check by level, or by name when exact=True.

    exact is for non-hierarchical checks: admin-only routes require the
    name "admin" rather than "admin's level or higher".

    Raises NotFoundError if `required` is not a known role.
    """
    if exact:
        if registry.snapshot().get(required) is None:
            raise NotFoundError("role", required)
        return resolved.role_name == required
    required_role = registry.get_role(required)
    return resolved.level >= required_role.level
