"""
Compliance / geo gate.

Precedence for a (user, feature) pair:
1. A rule for this exact user decides, allow or deny
2. Otherwise the most specific wildcard rule whose country/region matches
   the request location decides
3. No rule -> allowed

Usage:
    gate = ComplianceGate(rule_source)
    result = gate.check_compliance("u1", "p2p", {"country": "US"})
"""

import logging
from typing import Any, Iterable, Mapping, Optional

from pew_access.compliance.models import ComplianceResult, ComplianceRule

logger = logging.getLogger(__name__)

DEFAULT_DENIAL_MESSAGE = "This feature is not available for your account or location"


class ComplianceRuleSource:
    """Provides compliance rules to the gate."""

    def rules_for(self, user_id: Optional[str], feature: str) -> list[ComplianceRule]:
        """User-specific and wildcard rules for a feature."""
        raise NotImplementedError

    def rules_for_user(self, user_id: str) -> list[ComplianceRule]:
        """All user-specific rules for a user, any feature."""
        raise NotImplementedError


class StaticComplianceSource(ComplianceRuleSource):
    def __init__(self, rules: Iterable[ComplianceRule] = ()):
        self._rules = list(rules)

    def rules_for(self, user_id: Optional[str], feature: str) -> list[ComplianceRule]:
        return [
            r for r in self._rules
            if r.feature == feature and (r.is_wildcard or r.user_id == user_id)
        ]

    def rules_for_user(self, user_id: str) -> list[ComplianceRule]:
        return [r for r in self._rules if not r.is_wildcard and r.user_id == user_id]


def _result_from_rule(feature: str, rule: Optional[ComplianceRule]) -> ComplianceResult:
    if rule is None or rule.is_allowed:
        return ComplianceResult(
            feature=feature,
            allowed=True,
            restrictions=list(rule.restrictions) if rule else [],
            rule_id=rule.id if rule else None,
        )
    return ComplianceResult(
        feature=feature,
        allowed=False,
        restrictions=list(rule.restrictions),
        message=rule.reason or DEFAULT_DENIAL_MESSAGE,
        rule_id=rule.id,
    )


def _pick_wildcard(
    rules: Iterable[ComplianceRule],
    country: Optional[str],
    region: Optional[str],
) -> Optional[ComplianceRule]:
    candidates = [r for r in rules if r.is_wildcard and r.matches_location(country, region)]
    if not candidates:
        return None
    # Most specific first; among equals a denial wins
    candidates.sort(key=lambda r: (r.specificity, not r.is_allowed), reverse=True)
    return candidates[0]


class ComplianceGate:
    """Fail-open jurisdiction and per-user feature gate."""

    def __init__(self, source: ComplianceRuleSource):
        self.source = source

    def check_compliance(
        self,
        user_id: Optional[str],
        feature: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> ComplianceResult:
        context = context or {}
        rules = self.source.rules_for(user_id, feature)

        user_rules = [r for r in rules if not r.is_wildcard and r.user_id == user_id]
        if user_id and user_rules:
            # Several user rules for one feature: a denial wins
            rule = min(user_rules, key=lambda r: r.is_allowed)
        else:
            rule = _pick_wildcard(rules, context.get("country"), context.get("region"))

        result = _result_from_rule(feature, rule)
        if not result.allowed:
            logger.info(
                "Compliance rule denied feature",
                extra={
                    "user_id": user_id,
                    "feature": feature,
                    "rule_id": rule.id,
                    "country": context.get("country"),
                    "region": context.get("region"),
                },
            )
        return result

    def batch_check(
        self,
        user_id: Optional[str],
        features: Iterable[str],
        context: Optional[Mapping[str, Any]] = None,
    ) -> dict[str, ComplianceResult]:
        return {
            feature: self.check_compliance(user_id, feature, context)
            for feature in dict.fromkeys(features)
        }

    def get_user_restrictions(self, user_id: str) -> list[str]:
        """Union of restrictions from the user's own denying rules."""
        restrictions: set[str] = set()
        for rule in self.source.rules_for_user(user_id):
            if not rule.is_allowed:
                restrictions.update(rule.restrictions)
        return sorted(restrictions)

    def get_feature_availability(
        self,
        feature: str,
        country: Optional[str] = None,
        region: Optional[str] = None,
    ) -> ComplianceResult:
        """Location-only check: user-specific rules are ignored."""
        rule = _pick_wildcard(self.source.rules_for(None, feature), country, region)
        return _result_from_rule(feature, rule)
