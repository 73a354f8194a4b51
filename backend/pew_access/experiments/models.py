"""
A/B test models.

Provides:
- ABTestStatus enum
- Variant / ABTest: immutable experiment definitions
- VariantAssignment: result of assigning a principal to a test
- ABTestRecord: SQLAlchemy model for the ab_tests table
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import Column, DateTime, Index, String, Text

from pew_access.db_base import Base
from pew_access.models.base import JSONType, TimestampMixin, generate_uuid
from pew_access.platform.errors import ValidationError

CONTROL_VARIANT = "control"

# Float percentages such as 33.33 / 33.33 / 33.34 must still add up
_PERCENT_TOLERANCE = 0.01


class ABTestStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"


@dataclass(frozen=True)
class Variant:
    name: str
    percentage: float
    config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Variant":
        try:
            return cls(
                name=str(data["name"]),
                percentage=float(data["percentage"]),
                config=dict(data.get("config") or {}),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(
                f"Malformed variant definition: {e}",
                details={"variant": data},
            ) from e

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "percentage": self.percentage, "config": dict(self.config)}


@dataclass(frozen=True)
class ABTest:
    id: str
    name: str
    feature: str
    variants: tuple[Variant, ...]
    status: ABTestStatus = ABTestStatus.DRAFT
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    target_criteria: dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.variants, tuple):
            object.__setattr__(self, "variants", tuple(self.variants))

    def validate(self) -> None:
        """Raise ValidationError unless the variants form a valid split."""
        if not self.variants:
            raise ValidationError(
                f"A/B test '{self.id}' has no variants",
                details={"test_id": self.id},
            )
        names = [v.name for v in self.variants]
        if len(set(names)) != len(names):
            raise ValidationError(
                f"A/B test '{self.id}' has duplicate variant names",
                details={"test_id": self.id, "variants": names},
            )
        if any(v.percentage < 0 for v in self.variants):
            raise ValidationError(
                f"A/B test '{self.id}' has a negative variant percentage",
                details={"test_id": self.id},
            )
        total = sum(v.percentage for v in self.variants)
        if abs(total - 100) > _PERCENT_TOLERANCE:
            raise ValidationError(
                f"Variant percentages for A/B test '{self.id}' sum to {total}, expected 100",
                details={"test_id": self.id, "total": total},
            )

    def is_running(self, now: datetime) -> bool:
        if self.status != ABTestStatus.ACTIVE:
            return False
        if self.start_date and now < _aware(self.start_date):
            return False
        if self.end_date and now > _aware(self.end_date):
            return False
        return True


@dataclass(frozen=True)
class VariantAssignment:
    """
    Assignment of one principal to one test.

    variant is "control" when the test is not running and None when the
    principal is outside the test's target audience.
    """
    test_id: str
    variant: Optional[str]
    in_experiment: bool
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "test_id": self.test_id,
            "variant": self.variant,
            "in_experiment": self.in_experiment,
        }


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ABTestRecord(Base, TimestampMixin):
    """Persisted A/B test definition. Variants are stored as a JSON list."""

    __tablename__ = "ab_tests"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    feature = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default=ABTestStatus.DRAFT.value)
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    target_criteria = Column(JSONType, nullable=True)
    variants = Column(JSONType, nullable=False, default=list)

    __table_args__ = (
        Index("ix_ab_tests_feature_status", "feature", "status"),
    )

    def to_test(self) -> ABTest:
        """Raises ValidationError when the stored row cannot form an ABTest."""
        try:
            status = ABTestStatus(self.status)
        except ValueError as e:
            raise ValidationError(
                f"A/B test {self.id} has an unknown status: {e}",
                details={"test_id": self.id},
            ) from e
        if not isinstance(self.variants or [], list) or not isinstance(self.target_criteria or {}, dict):
            raise ValidationError(
                f"A/B test {self.id} variants must be a list and target criteria an object",
                details={"test_id": self.id},
            )
        return ABTest(
            id=self.id,
            name=self.name,
            feature=self.feature,
            variants=tuple(Variant.from_dict(v) for v in (self.variants or [])),
            status=status,
            start_date=_aware(self.start_date) if self.start_date else None,
            end_date=_aware(self.end_date) if self.end_date else None,
            target_criteria=dict(self.target_criteria or {}),
            description=self.description,
        )
