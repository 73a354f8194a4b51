"""
Compliance rule models.

A rule scopes a feature either to one user (user_id) or to everyone in a
location (user_id == "*", optionally narrowed by country / region).
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import Boolean, Column, Index, String, Text

from pew_access.db_base import Base
from pew_access.models.base import JSONType, TimestampMixin, generate_uuid
from pew_access.platform.errors import ValidationError

WILDCARD_USER = "*"


@dataclass(frozen=True)
class ComplianceRule:
    id: str
    user_id: str
    feature: str
    is_allowed: bool
    restrictions: tuple[str, ...] = ()
    reason: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.restrictions, tuple):
            object.__setattr__(self, "restrictions", tuple(self.restrictions))

    @property
    def is_wildcard(self) -> bool:
        return self.user_id == WILDCARD_USER

    @property
    def specificity(self) -> int:
        """Region+country beats country beats a location-free wildcard."""
        return (1 if self.country else 0) + (2 if self.region else 0)

    def matches_location(self, country: Optional[str], region: Optional[str]) -> bool:
        if self.country and (not country or self.country.upper() != country.upper()):
            return False
        if self.region and (not region or self.region.upper() != region.upper()):
            return False
        return True


@dataclass
class ComplianceResult:
    """
    Outcome of a compliance check.

    rule_id is kept for the audit trail only; to_dict() leaves it out so
    callers never learn which rule fired.
    """
    feature: str
    allowed: bool = True
    restrictions: list[str] = field(default_factory=list)
    message: Optional[str] = None
    rule_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature": self.feature,
            "allowed": self.allowed,
            "restrictions": list(self.restrictions),
            "message": self.message,
        }


class ComplianceRuleRecord(Base, TimestampMixin):
    """Persisted compliance / sanctions rule."""

    __tablename__ = "compliance_rules"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False, default=WILDCARD_USER)
    feature = Column(String(100), nullable=False)
    is_allowed = Column(Boolean, nullable=False, default=False)
    restrictions = Column(JSONType, nullable=True)
    reason = Column(Text, nullable=True)
    country = Column(String(2), nullable=True)
    region = Column(String(32), nullable=True)

    __table_args__ = (
        Index("ix_compliance_rules_user_feature", "user_id", "feature"),
        Index("ix_compliance_rules_feature", "feature"),
    )

    def to_rule(self, restrictions: Optional[tuple[str, ...]] = None) -> ComplianceRule:
        """Raises ValidationError for unreadable restrictions unless `restrictions` is given."""
        if restrictions is None:
            restrictions = normalise_restrictions(self.restrictions)
        return ComplianceRule(
            id=self.id,
            user_id=self.user_id,
            feature=self.feature,
            is_allowed=bool(self.is_allowed),
            restrictions=restrictions,
            reason=self.reason,
            country=self.country,
            region=self.region,
        )


def normalise_restrictions(value: Any) -> tuple[str, ...]:
    """
    Stored restrictions as a tuple of names.

    A bare string is one restriction. Raises ValidationError for anything
    that is not a string or a list of strings.
    """
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return tuple(value)
    raise ValidationError(
        "Compliance restrictions must be a string or a list of strings",
        details={"restrictions": value},
    )
