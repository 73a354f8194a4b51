"""
Policy models.

Provides:
- PolicyPriority / PolicyStatus enums
- Policy: immutable policy as consumed by the engine
- PolicyEvaluation: outcome of evaluating a feature's policies
- PolicyRecord: SQLAlchemy model for the policies table
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import Column, DateTime, Index, String, Text

from pew_access.db_base import Base
from pew_access.models.base import JSONType, TimestampMixin, generate_uuid
from pew_access.platform.errors import ValidationError


class PolicyPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    PolicyPriority.LOW: 1,
    PolicyPriority.MEDIUM: 2,
    PolicyPriority.HIGH: 3,
}


class PolicyStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    DRAFT = "DRAFT"


class PolicyEffect(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


def _epoch() -> datetime:
    return datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class Policy:
    """
    Operator-defined rule for a feature.

    `rules` is the raw rule document; it is parsed into a predicate tree at
    evaluation time so a malformed document only affects this policy.
    """
    id: str
    name: str
    feature: str
    priority: PolicyPriority = PolicyPriority.MEDIUM
    status: PolicyStatus = PolicyStatus.DRAFT
    rules: dict[str, Any] = field(default_factory=dict)
    target_criteria: dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=_epoch)
    updated_at: datetime = field(default_factory=_epoch)

    @property
    def is_active(self) -> bool:
        return self.status == PolicyStatus.ACTIVE


@dataclass
class PolicyEvaluation:
    """Result of evaluating all policies for a feature."""
    allowed: bool = True
    restrictions: list[str] = field(default_factory=list)
    matched_policy_ids: list[str] = field(default_factory=list)
    consulted_policy_ids: list[str] = field(default_factory=list)
    skipped_policy_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "restrictions": list(self.restrictions),
            "matched_policy_ids": list(self.matched_policy_ids),
            "consulted_policy_ids": list(self.consulted_policy_ids),
            "skipped_policy_ids": list(self.skipped_policy_ids),
        }


class PolicyRecord(Base, TimestampMixin):
    """
    Persisted policy.

    Only rows with status ACTIVE are ever handed to the live engine.
    """

    __tablename__ = "policies"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    feature = Column(String(100), nullable=False)
    priority = Column(String(20), nullable=False, default=PolicyPriority.MEDIUM.value)
    status = Column(String(20), nullable=False, default=PolicyStatus.DRAFT.value)
    rules = Column(JSONType, nullable=False, default=dict)
    target_criteria = Column(JSONType, nullable=True)
    created_by = Column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_policies_feature_status", "feature", "status"),
    )

    def __repr__(self) -> str:
        return f"<PolicyRecord(id={self.id}, feature={self.feature}, status={self.status})>"

    def to_policy(self) -> Policy:
        """Raises ValidationError when the stored row cannot form a Policy."""
        try:
            priority = PolicyPriority(self.priority)
            status = PolicyStatus(self.status)
        except ValueError as e:
            raise ValidationError(
                f"Policy {self.id} has an unknown priority or status: {e}",
                details={"policy_id": self.id},
            ) from e
        rules = self.rules or {}
        target_criteria = self.target_criteria or {}
        if not isinstance(rules, dict) or not isinstance(target_criteria, dict):
            raise ValidationError(
                f"Policy {self.id} rules and target criteria must be objects",
                details={"policy_id": self.id},
            )
        return Policy(
            id=self.id,
            name=self.name,
            feature=self.feature,
            priority=priority,
            status=status,
            rules=dict(rules),
            target_criteria=dict(target_criteria),
            description=self.description,
            created_by=self.created_by,
            created_at=_aware(self.created_at),
            updated_at=_aware(self.updated_at),
        )


def _aware(value: Optional[datetime]) -> datetime:
    # SQLite drops tzinfo on the way back
    if value is None:
        return _epoch()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
