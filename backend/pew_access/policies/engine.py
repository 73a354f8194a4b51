"""
Policy engine.

Evaluates the ACTIVE policies of a feature in priority order:
1. Sort by priority (HIGH first), then most recently updated first
2. Skip policies whose target criteria do not match the context
3. The first policy whose rule predicate is true decides (effect and
   restrictions) and evaluation stops
4. A policy whose predicate is false falls through to the next one
5. No deciding policy -> allowed, no restrictions

A malformed policy, or one whose rule needs a context attribute that is not
present, is skipped and reported in skipped_policy_ids; the remaining
policies still run.

Usage:
    engine = PolicyEngine(policy_source)
    evaluation = engine.evaluate("matching", {"country": "US"})
    if not evaluation.allowed:
        ...
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from pew_access.platform.errors import NotFoundError, ValidationError
from pew_access.policies.matcher import matches_target
from pew_access.policies.models import Policy, PolicyEvaluation
from pew_access.policies.predicates import parse_rules

logger = logging.getLogger(__name__)


class PolicySource:
    """Provides the policies the engine evaluates."""

    def active_policies(self, feature: str) -> list[Policy]:
        raise NotImplementedError

    def load_active(self, feature: str) -> tuple[list[Policy], list[str]]:
        """
        Active policies plus the ids of stored policies that could not be
        loaded. Sources that cannot hold unreadable policies report none.
        """
        return self.active_policies(feature), []

    def get_policy(self, policy_id: str) -> Policy:
        raise NotImplementedError


class StaticPolicySource(PolicySource):
    """Fixed in-memory policy list (fixtures, tests, config-defined policies)."""

    def __init__(self, policies: Iterable[Policy] = ()):
        self._policies = list(policies)

    def active_policies(self, feature: str) -> list[Policy]:
        return [p for p in self._policies if p.feature == feature and p.is_active]

    def get_policy(self, policy_id: str) -> Policy:
        for policy in self._policies:
            if policy.id == policy_id:
                return policy
        raise NotFoundError("policy", policy_id)


@dataclass
class PolicyTestResult:
    """Outcome of a sandboxed single-policy evaluation."""
    policy_id: str
    status: str
    target_matched: bool = False
    condition_met: bool = False
    would_allow: bool = True
    restrictions: list[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "status": self.status,
            "target_matched": self.target_matched,
            "condition_met": self.condition_met,
            "would_allow": self.would_allow,
            "restrictions": list(self.restrictions),
            "error": self.error,
        }


def _sort_key(policy: Policy):
    return (policy.priority.rank, policy.updated_at)


class PolicyEngine:
    """Priority-ordered, first-true-wins policy evaluation."""

    def __init__(self, source: PolicySource):
        self.source = source

    def evaluate(self, feature: str, context: Mapping[str, Any]) -> PolicyEvaluation:
        """
        Evaluate the feature's ACTIVE policies against a flat context.

        Only policy-local ValidationError / NotFoundError are absorbed.
        Anything else propagates so the caller can fail closed.
        """
        loaded, unreadable = self.source.load_active(feature)
        policies = [p for p in loaded if p.is_active and p.feature == feature]
        policies.sort(key=_sort_key, reverse=True)

        evaluation = PolicyEvaluation()
        for policy_id in unreadable:
            evaluation.consulted_policy_ids.append(policy_id)
            evaluation.skipped_policy_ids.append(policy_id)
        for policy in policies:
            evaluation.consulted_policy_ids.append(policy.id)
            try:
                if not matches_target(policy.target_criteria, context):
                    continue
                rules = parse_rules(policy.rules)
                if not rules.when.evaluate(context):
                    continue
            except (ValidationError, NotFoundError) as e:
                evaluation.skipped_policy_ids.append(policy.id)
                logger.warning(
                    "Skipping policy that could not be evaluated",
                    extra={
                        "policy_id": policy.id,
                        "feature": feature,
                        "error_code": e.error_code,
                        "error": e.message,
                    },
                )
                continue

            evaluation.matched_policy_ids.append(policy.id)
            evaluation.allowed = rules.allows
            evaluation.restrictions = list(rules.restrictions)
            logger.debug(
                "Policy decided feature",
                extra={
                    "policy_id": policy.id,
                    "feature": feature,
                    "allowed": evaluation.allowed,
                },
            )
            break

        return evaluation

    def test_policy(self, policy: Policy, context: Mapping[str, Any]) -> PolicyTestResult:
        """
        Sandboxed evaluation of one policy, whatever its status.

        Used by the admin "test policy" endpoint. Has no effect on live
        decisions and writes no audit record. Rule errors are reported in
        the result rather than raised.
        """
        result = PolicyTestResult(policy_id=policy.id, status=policy.status.value)
        try:
            result.target_matched = matches_target(policy.target_criteria, context)
            if not result.target_matched:
                return result
            rules = parse_rules(policy.rules)
            result.condition_met = rules.when.evaluate(context)
        except (ValidationError, NotFoundError) as e:
            result.error = e.message
            return result
        if result.condition_met:
            result.would_allow = rules.allows
            result.restrictions = list(rules.restrictions)
        return result

    def test_policy_by_id(self, policy_id: str, context: Mapping[str, Any]) -> PolicyTestResult:
        """Look up a policy by id (any status) and sandbox-evaluate it."""
        return self.test_policy(self.source.get_policy(policy_id), context)
