"""
RBAC models - canonical types for roles, permissions and user overrides.

Provides:
- PermissionDefinition: atomic capability (resource:action)
- RoleDefinition: immutable role with permission set and hierarchy level
- UserOverride: admin-issued per-user override (premium, fee, tier, ...)
- RoleRecord / RolePermissionRecord / PermissionRecord: SQLAlchemy models
- UserOverrideRecord: SQLAlchemy model for persistent overrides

Overrides never expire on their own; removal is an explicit admin action.
"""

import logging
from datetime import datetime, timezone
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, FrozenSet, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from pew_access.db_base import Base
from pew_access.models.base import JSONType, TimestampMixin, generate_uuid, utcnow
from pew_access.platform.errors import ValidationError

logger = logging.getLogger(__name__)


class OverrideType(str, Enum):
    """Kinds of admin overrides that can be attached to a user."""
    PREMIUM = "premium"
    FEE = "fee"
    MONETIZATION = "monetization"
    TIER = "tier"
    TRUST = "trust"


# Override types whose key/value pair names a permission to grant or revoke
PERMISSION_OVERRIDE_TYPES: FrozenSet[OverrideType] = frozenset({
    OverrideType.TIER,
    OverrideType.TRUST,
})


class OverrideAction(str, Enum):
    GRANT = "grant"
    REVOKE = "revoke"


# ---------------------------------------------------------------------------
# Value objects (frozen dataclasses)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PermissionDefinition:
    """A single capability. The name is always 'resource:action'."""
    name: str
    resource: str
    action: str

    @classmethod
    def from_name(cls, name: str) -> "PermissionDefinition":
        resource, sep, action = name.partition(":")
        if not sep or not resource or not action:
            raise ValidationError(
                f"Permission name '{name}' must look like 'resource:action'",
                details={"permission": name},
            )
        return cls(name=name, resource=resource, action=action)


@dataclass(frozen=True)
class RoleDefinition:
    """
    Immutable role definition.

    Immutable; shared between request threads.
    """
    name: str
    level: int
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    description: Optional[str] = None

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


@dataclass(frozen=True)
class UserOverride:
    """In-memory representation of an admin override on a user."""
    user_id: str
    override_type: OverrideType
    key: str
    value: Any
    reason: str
    admin_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: Optional[str] = None

    @property
    def affects_permissions(self) -> bool:
        return self.override_type in PERMISSION_OVERRIDE_TYPES

    def permission_action(self) -> OverrideAction:
        """
        Interpret a tier/trust override as a grant or revoke of `key`.

        Accepts "grant"/"revoke" strings or booleans (True = grant).
        """
        if not self.affects_permissions:
            raise ValidationError(
                f"Override type '{self.override_type.value}' does not carry a permission",
                details={"override_type": self.override_type.value},
            )
        value = self.value
        if isinstance(value, bool):
            return OverrideAction.GRANT if value else OverrideAction.REVOKE
        if isinstance(value, str):
            try:
                return OverrideAction(value.strip().lower())
            except ValueError:
                pass
        raise ValidationError(
            f"Override value {value!r} is not a grant/revoke flag",
            details={"user_id": self.user_id, "key": self.key},
        )


# ---------------------------------------------------------------------------
# SQLAlchemy models
# ---------------------------------------------------------------------------

class RoleRecord(Base, TimestampMixin):
    """
    Role row. Level is the hierarchy rank (higher = more privileged).

    Roles referenced by users are not edited in place; renames and level
    changes go through an explicit migration.
    """

    __tablename__ = "roles"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(100), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    level = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    permissions = relationship(
        "RolePermissionRecord",
        back_populates="role",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<RoleRecord(name={self.name}, level={self.level})>"

    def to_definition(self) -> RoleDefinition:
        return RoleDefinition(
            name=self.name,
            level=self.level,
            permissions=frozenset(
                rp.permission for rp in self.permissions if rp.is_active
            ),
            description=self.description,
        )


class RolePermissionRecord(Base, TimestampMixin):
    """Explicit permission grant for a role, stored as 'resource:action'."""

    __tablename__ = "role_permissions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    role_id = Column(
        String(36),
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    permission = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    role = relationship("RoleRecord", back_populates="permissions")

    __table_args__ = (
        UniqueConstraint("role_id", "permission", name="uq_role_permissions_role_perm"),
    )


class PermissionRecord(Base, TimestampMixin):
    """Catalogue of known permissions."""

    __tablename__ = "permissions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False, unique=True)
    resource = Column(String(100), nullable=False, index=True)
    action = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    def to_definition(self) -> PermissionDefinition:
        return PermissionDefinition(name=self.name, resource=self.resource, action=self.action)


class UserOverrideRecord(Base):
    """
    Persistent user override.

    Rows are deleted explicitly by admins; there is no expiry column.
    Deleting the user cascades to its overrides at the database level.
    """

    __tablename__ = "user_overrides"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False, index=True)
    override_type = Column(String(50), nullable=False)
    key = Column(String(255), nullable=False)
    value = Column(JSONType, nullable=True)
    reason = Column(Text, nullable=False, default="")
    admin_id = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_user_overrides_user_type", "user_id", "override_type"),
    )

    def to_override(self) -> UserOverride:
        return UserOverride(
            id=self.id,
            user_id=self.user_id,
            override_type=OverrideType(self.override_type),
            key=self.key,
            value=self.value,
            reason=self.reason or "",
            admin_id=self.admin_id,
            # SQLite drops tzinfo on the way back
            created_at=(
                self.created_at.replace(tzinfo=timezone.utc)
                if self.created_at is not None and self.created_at.tzinfo is None
                else self.created_at
            ),
        )
