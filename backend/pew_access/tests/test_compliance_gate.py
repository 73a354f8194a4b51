"""
Tests for the compliance / geo gate.
"""

from pew_access.compliance.gate import (
    DEFAULT_DENIAL_MESSAGE,
    ComplianceGate,
    StaticComplianceSource,
)
from pew_access.compliance.models import WILDCARD_USER, ComplianceRule


def _rule(rule_id, user_id=WILDCARD_USER, feature="p2p", allowed=False,
          restrictions=("p2p",), reason=None, country=None, region=None):
    return ComplianceRule(
        id=rule_id,
        user_id=user_id,
        feature=feature,
        is_allowed=allowed,
        restrictions=restrictions,
        reason=reason,
        country=country,
        region=region,
    )


def _gate(*rules):
    return ComplianceGate(StaticComplianceSource(rules))


# =============================================================================
# Precedence
# =============================================================================


class TestCheckCompliance:

    def test_user_rule_denies(self):
        gate = _gate(_rule("r1", user_id="u1"))
        result = gate.check_compliance("u1", "p2p", {})
        assert not result.allowed
        assert result.restrictions == ["p2p"]
        assert result.message == DEFAULT_DENIAL_MESSAGE

    def test_no_rules_is_allowed(self):
        result = _gate().check_compliance("u1", "p2p", {"country": "US"})
        assert result.allowed
        assert result.restrictions == []
        assert result.message is None

    def test_other_users_rule_ignored(self):
        assert _gate(_rule("r1", user_id="u2")).check_compliance("u1", "p2p").allowed

    def test_user_allow_overrides_wildcard_deny(self):
        gate = _gate(
            _rule("geo", country="KP"),
            _rule("exempt", user_id="u1", allowed=True, restrictions=()),
        )
        assert gate.check_compliance("u1", "p2p", {"country": "KP"}).allowed
        assert not gate.check_compliance("u2", "p2p", {"country": "KP"}).allowed

    def test_conflicting_user_rules_deny(self):
        gate = _gate(
            _rule("allow", user_id="u1", allowed=True, restrictions=()),
            _rule("deny", user_id="u1", reason="Under review"),
        )
        result = gate.check_compliance("u1", "p2p")
        assert not result.allowed
        assert result.message == "Under review"

    def test_wildcard_country_match_is_case_insensitive(self):
        gate = _gate(_rule("geo", country="US"))
        assert not gate.check_compliance("u1", "p2p", {"country": "us"}).allowed
        assert gate.check_compliance("u1", "p2p", {"country": "CA"}).allowed
        assert gate.check_compliance("u1", "p2p", {}).allowed

    def test_more_specific_wildcard_wins(self):
        gate = _gate(
            _rule("us-deny", country="US"),
            _rule("ny-allow", country="US", region="NY", allowed=True, restrictions=("kyc",)),
        )
        ny = gate.check_compliance("u1", "p2p", {"country": "US", "region": "NY"})
        assert ny.allowed
        assert ny.restrictions == ["kyc"]
        assert not gate.check_compliance("u1", "p2p", {"country": "US", "region": "TX"}).allowed

    def test_equal_specificity_denial_wins(self):
        gate = _gate(
            _rule("allow", country="US", allowed=True, restrictions=()),
            _rule("deny", country="US"),
        )
        assert not gate.check_compliance("u1", "p2p", {"country": "US"}).allowed

    def test_anonymous_uses_wildcards_only(self):
        gate = _gate(_rule("geo", country="IR"))
        assert not gate.check_compliance(None, "p2p", {"country": "IR"}).allowed

    def test_result_hides_rule_id(self):
        result = _gate(_rule("secret-rule", user_id="u1")).check_compliance("u1", "p2p")
        assert result.rule_id == "secret-rule"
        assert "rule_id" not in result.to_dict()
        assert "secret-rule" not in str(result.to_dict())


# =============================================================================
# Batch / listing helpers
# =============================================================================


class TestBatchAndListing:

    def test_batch_check(self):
        gate = _gate(
            _rule("r1", user_id="u1", feature="p2p"),
            _rule("r2", feature="gifting", country="US", restrictions=("gifting",)),
        )
        results = gate.batch_check("u1", ["p2p", "gifting", "chat", "p2p"], {"country": "US"})

        assert list(results) == ["p2p", "gifting", "chat"]
        assert not results["p2p"].allowed
        assert not results["gifting"].allowed
        assert results["chat"].allowed

    def test_user_restrictions_union(self):
        gate = _gate(
            _rule("r1", user_id="u1", feature="p2p", restrictions=("p2p", "escrow")),
            _rule("r2", user_id="u1", feature="gifting", restrictions=("gifting",)),
            _rule("r3", user_id="u1", feature="chat", allowed=True, restrictions=("slow_mode",)),
            _rule("geo", feature="streaming", restrictions=("streaming",)),
        )
        assert gate.get_user_restrictions("u1") == ["escrow", "gifting", "p2p"]

    def test_feature_availability_ignores_user_rules(self):
        gate = _gate(
            _rule("user", user_id="u1"),
            _rule("geo", country="CU", reason="Sanctioned jurisdiction"),
        )
        assert gate.get_feature_availability("p2p", country="US").allowed
        cuba = gate.get_feature_availability("p2p", country="CU")
        assert not cuba.allowed
        assert cuba.message == "Sanctioned jurisdiction"
