"""
Access decision returned by the route guard.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class DecisionReason(str, Enum):
    PUBLIC = "public"
    ALLOWED = "allowed"
    UNAUTHENTICATED = "unauthenticated"
    INSUFFICIENT_ROLE = "insufficient_role"
    COMPLIANCE_RESTRICTED = "compliance_restricted"
    POLICY_RESTRICTED = "policy_restricted"
    EVALUATION_ERROR = "evaluation_error"


@dataclass(frozen=True)
class Decision:
    """
    Terminal result of one access evaluation.

    Carries the feature-level restriction list only; which policy or
    compliance rule produced it stays in the audit trail.
    """
    allowed: bool
    reason: DecisionReason
    required_role: Optional[str] = None
    required_permission: Optional[str] = None
    restrictions: tuple[str, ...] = ()
    variant: Optional[str] = None
    feature: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.restrictions, tuple):
            object.__setattr__(self, "restrictions", tuple(self.restrictions))

    @classmethod
    def allow(cls, reason: DecisionReason = DecisionReason.ALLOWED, **kwargs) -> "Decision":
        return cls(allowed=True, reason=reason, **kwargs)

    @classmethod
    def deny(cls, reason: DecisionReason, **kwargs) -> "Decision":
        return cls(allowed=False, reason=reason, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value,
            "required_role": self.required_role,
            "required_permission": self.required_permission,
            "restrictions": list(self.restrictions),
            "variant": self.variant,
            "feature": self.feature,
        }
