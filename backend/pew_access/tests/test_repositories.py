"""
Tests for the database repositories and database-backed evaluator sources.
"""

from datetime import datetime, timedelta, timezone

import pytest

from pew_access.compliance.gate import ComplianceGate
from pew_access.compliance.models import WILDCARD_USER, ComplianceRuleRecord
from pew_access.experiments.models import ABTestRecord
from pew_access.experiments.targeting import ExperimentTargeting
from pew_access.guard.access import AccessGuard
from pew_access.guard.decision import DecisionReason
from pew_access.platform.errors import NotFoundError, ValidationError
from pew_access.policies.engine import PolicyEngine
from pew_access.policies.models import PolicyRecord, PolicyStatus
from pew_access.rbac.models import OverrideType, RoleDefinition
from pew_access.rbac.resolver import apply_overrides
from pew_access.repositories.ab_tests_repo import ABTestRepository, DatabaseABTestSource
from pew_access.repositories.compliance_repo import (
    ComplianceRuleRepository,
    DatabaseComplianceSource,
)
from pew_access.repositories.overrides_repo import UserOverrideRepository
from pew_access.repositories.policies_repo import DatabasePolicySource, PolicyRepository
from pew_access.repositories.roles_repo import PermissionRepository, RoleRepository

T0 = datetime(2025, 3, 1, tzinfo=timezone.utc)


# =============================================================================
# Roles and permissions
# =============================================================================


class TestRoleRepository:

    def test_upsert_deactivates_dropped_permissions(self, db_session):
        repo = RoleRepository(db_session)
        repo.upsert_role(RoleDefinition("manager", 50, frozenset({"posts:moderate", "users:view"})))
        repo.upsert_role(RoleDefinition("manager", 60, frozenset({"posts:moderate"})))

        (manager,) = repo.list_active()
        assert manager.level == 60
        assert manager.permissions == frozenset({"posts:moderate"})

    def test_permission_catalogue(self, db_session):
        repo = PermissionRepository(db_session)
        first = repo.ensure("p2p:trade", "Trade peer to peer")
        again = repo.ensure("p2p:trade")

        assert first.id == again.id
        (definition,) = repo.list_definitions()
        assert (definition.resource, definition.action) == ("p2p", "trade")

    def test_malformed_permission_name(self, db_session):
        with pytest.raises(ValidationError):
            PermissionRepository(db_session).ensure("trade")


# =============================================================================
# Overrides
# =============================================================================


class TestUserOverrideRepository:

    def test_add_list_remove(self, db_session):
        repo = UserOverrideRepository(db_session)
        repo.add_override("u1", OverrideType.TIER, "escrow:resolve", "grant", "admin-1", created_at=T0)
        repo.add_override("u1", OverrideType.TRUST, "escrow:resolve", "revoke", "admin-2",
                          reason="Chargeback", created_at=T0 + timedelta(hours=1))
        repo.add_override("u2", OverrideType.FEE, "withdrawal_fee", 0.5, "admin-1", created_at=T0)

        overrides = repo.list_for_user("u1")
        assert [o.value for o in overrides] == ["grant", "revoke"]
        assert overrides[1].reason == "Chargeback"
        assert overrides[0].created_at.tzinfo is not None

        effective, _, revoked = apply_overrides(frozenset(), overrides)
        assert "escrow:resolve" not in effective
        assert revoked == frozenset({"escrow:resolve"})

        record_id = repo.get_all()[0].id
        assert repo.remove_override(record_id, "admin-1")
        assert not repo.remove_override(record_id, "admin-1")

    def test_permission_override_value_checked_on_write(self, db_session):
        with pytest.raises(ValidationError):
            UserOverrideRepository(db_session).add_override(
                "u1", OverrideType.TRUST, "p2p:trade", "sometimes", "admin-1"
            )


# =============================================================================
# Policies
# =============================================================================


class TestPolicyRepository:

    def test_create_and_activate(self, db_session, session_factory):
        repo = PolicyRepository(db_session)
        policy = repo.create_policy({
            "name": "US night pause",
            "feature": "matching",
            "priority": "HIGH",
            "status": "DRAFT",
            "rules": {"effect": "deny", "restrictions": ["matching"], "when": True},
            "target_criteria": {"country": "US"},
        })
        engine = PolicyEngine(DatabasePolicySource(session_factory))

        assert engine.evaluate("matching", {"country": "US"}).allowed
        assert engine.test_policy_by_id(policy.id, {"country": "US"}).would_allow is False

        repo.set_status(policy.id, PolicyStatus.ACTIVE)
        evaluation = engine.evaluate("matching", {"country": "US"})
        assert not evaluation.allowed
        assert evaluation.consulted_policy_ids == [policy.id]

    def test_malformed_rules_rejected_on_write(self, db_session):
        with pytest.raises(ValidationError):
            PolicyRepository(db_session).create_policy({
                "name": "bad", "feature": "matching", "rules": {"effect": "sometimes"},
            })

    def test_unknown_policy(self, db_session):
        with pytest.raises(NotFoundError):
            PolicyRepository(db_session).get_policy("missing")
        with pytest.raises(NotFoundError):
            PolicyRepository(db_session).set_status("missing", PolicyStatus.ACTIVE)


# =============================================================================
# Compliance rules
# =============================================================================


class TestComplianceRuleRepository:

    def test_database_source_feeds_gate(self, db_session, session_factory):
        repo = ComplianceRuleRepository(db_session)
        repo.create({"user_id": "u1", "feature": "p2p", "is_allowed": False, "restrictions": ["p2p"]})
        repo.create({"user_id": WILDCARD_USER, "feature": "p2p", "is_allowed": False,
                     "restrictions": ["p2p"], "country": "CU"})
        repo.create({"user_id": "u9", "feature": "p2p", "is_allowed": False, "restrictions": ["p2p"]})

        assert {r.user_id for r in repo.rules_for("u1", "p2p")} == {"u1", WILDCARD_USER}
        assert {r.user_id for r in repo.rules_for(None, "p2p")} == {WILDCARD_USER}

        gate = ComplianceGate(DatabaseComplianceSource(session_factory))
        assert not gate.check_compliance("u1", "p2p", {"country": "US"}).allowed
        assert gate.check_compliance("u2", "p2p", {"country": "US"}).allowed
        assert not gate.check_compliance("u2", "p2p", {"country": "CU"}).allowed
        assert gate.get_user_restrictions("u1") == ["p2p"]


# =============================================================================
# A/B tests
# =============================================================================


class TestABTestRepository:

    def test_create_and_assign(self, db_session, session_factory, make_principal):
        test = ABTestRepository(db_session).create_test({
            "name": "feed ranking",
            "feature": "matching",
            "status": "ACTIVE",
            "start_date": T0,
            "variants": [
                {"name": "control", "percentage": 50},
                {"name": "ranked", "percentage": 50, "config": {"model": "v2"}},
            ],
        })
        targeting = ExperimentTargeting(DatabaseABTestSource(session_factory))

        assignment = targeting.assign_for_feature("matching", make_principal(), now=T0 + timedelta(days=1))
        assert assignment.test_id == test.id
        assert assignment.variant in ("control", "ranked")
        assert targeting.source.get_test(test.id).variants[1].config == {"model": "v2"}

    def test_invalid_split_rejected_on_write(self, db_session):
        with pytest.raises(ValidationError):
            ABTestRepository(db_session).create_test({
                "name": "bad", "feature": "matching",
                "variants": [{"name": "a", "percentage": 70}, {"name": "b", "percentage": 20}],
            })

    def test_unknown_test(self, session_factory):
        with pytest.raises(NotFoundError):
            DatabaseABTestSource(session_factory).get_test("missing")


# =============================================================================
# Engine configuration
# =============================================================================


class TestDatabaseSession:

    def test_normalize_database_url(self):
        from pew_access.database.session import normalize_database_url

        assert normalize_database_url("postgres://u@h/db") == "postgresql://u@h/db"
        assert normalize_database_url("sqlite:///pew.db") == "sqlite:///pew.db"
        with pytest.raises(ValueError):
            normalize_database_url(None)

    def test_session_factory_from_settings(self):
        from pew_access.config.settings import AccessControlSettings
        from pew_access.database.session import dispose_engine, get_engine, get_session_factory

        dispose_engine()
        try:
            factory = get_session_factory(AccessControlSettings(database_url="sqlite://"))
            assert get_engine().dialect.name == "sqlite"
            assert factory is get_session_factory()
        finally:
            dispose_engine()


# =============================================================================
# Unreadable rows
# =============================================================================


@pytest.fixture
def db_guard(session_factory, role_registry, route_table, audit_sink):
    """AccessGuard reading policies, compliance rules and A/B tests from the database."""
    return AccessGuard(
        registry=role_registry,
        routes=route_table,
        policy_engine=PolicyEngine(DatabasePolicySource(session_factory)),
        compliance_gate=ComplianceGate(DatabaseComplianceSource(session_factory)),
        targeting=ExperimentTargeting(DatabaseABTestSource(session_factory)),
        audit_sink=audit_sink,
    )


class TestUnreadableRowsAreIsolated:

    def test_bad_policy_rows_do_not_block_feature(self, db_session, db_guard, make_principal, audit_sink):
        db_session.add_all([
            PolicyRecord(id="p-bad", name="bad", feature="matching", priority="URGENT",
                         status="ACTIVE", rules={"effect": "allow", "when": True}),
            PolicyRecord(id="p-nested", name="nested", feature="matching", priority="HIGH",
                         status="ACTIVE", rules={"effect": "allow", "when": True},
                         target_criteria={"country": [{"nested": "x"}]}),
            PolicyRecord(id="p-ok", name="pause", feature="matching", priority="LOW",
                         status="ACTIVE",
                         rules={"effect": "deny", "restrictions": ["matching"], "when": True}),
        ])
        db_session.commit()

        decision = db_guard.decide(make_principal(country="US"), "matching")

        assert decision.reason == DecisionReason.POLICY_RESTRICTED
        assert decision.restrictions == ("matching",)
        context = audit_sink.records[0].context
        assert context["skipped_policies"] == ["p-bad", "p-nested"]
        assert context["matched_policies"] == ["p-ok"]

    def test_bad_ab_test_rows_do_not_drop_running_test(self, db_session, db_guard, make_principal, audit_sink):
        good = ABTestRepository(db_session).create_test({
            "name": "feed ranking",
            "feature": "matching",
            "status": "ACTIVE",
            "start_date": T0,
            "variants": [{"name": "control", "percentage": 50}, {"name": "ranked", "percentage": 50}],
        })
        db_session.add_all([
            ABTestRecord(id="ab-object", name="bad", feature="matching", status="ACTIVE",
                         start_date=T0 + timedelta(days=1), variants={"control": 100}),
            ABTestRecord(id="ab-status", name="bad", feature="matching", status="RUNNING",
                         start_date=T0 + timedelta(days=1),
                         variants=[{"name": "control", "percentage": 100}]),
        ])
        db_session.commit()

        decision = db_guard.decide(make_principal(), "matching", now=T0 + timedelta(days=2))

        assert decision.allowed
        assert decision.variant in ("control", "ranked")
        assert audit_sink.records[0].context["test_id"] == good.id

    def test_bad_compliance_restrictions_keep_verdict(self, db_session, db_guard, make_principal):
        db_session.add_all([
            ComplianceRuleRecord(id="r-str", user_id="u1", feature="p2p", is_allowed=False,
                                 restrictions="p2p"),
            ComplianceRuleRecord(id="r-obj", user_id=WILDCARD_USER, feature="gifting",
                                 is_allowed=False, restrictions={"gifting": True}),
        ])
        db_session.commit()
        principal = make_principal(user_id="u1")

        p2p = db_guard.decide(principal, "p2p")
        assert p2p.reason == DecisionReason.COMPLIANCE_RESTRICTED
        assert p2p.restrictions == ("p2p",)

        gifting = db_guard.decide(principal, "gifting")
        assert gifting.reason == DecisionReason.COMPLIANCE_RESTRICTED
        assert gifting.restrictions == ("gifting",)

        assert db_guard.decide(principal, "chat").allowed


class TestWriteValidation:

    @pytest.mark.parametrize("overrides", [
        {"priority": "URGENT"},
        {"status": "LIVE"},
        {"target_criteria": {"country": [{"nested": "x"}]}},
    ])
    def test_policy_fields_checked(self, db_session, overrides):
        data = {"name": "p", "feature": "matching", "rules": {"when": True}}
        data.update(overrides)
        with pytest.raises(ValidationError):
            PolicyRepository(db_session).create_policy(data)

    def test_ab_test_status_checked(self, db_session):
        with pytest.raises(ValidationError):
            ABTestRepository(db_session).create_test({
                "name": "t", "feature": "matching", "status": "RUNNING",
                "variants": [{"name": "control", "percentage": 100}],
            })

    def test_compliance_restrictions_normalised(self, db_session):
        repo = ComplianceRuleRepository(db_session)
        record = repo.create({"user_id": "u1", "feature": "p2p", "restrictions": "p2p"})
        assert record.restrictions == ["p2p"]
        with pytest.raises(ValidationError):
            repo.create({"user_id": "u1", "feature": "p2p", "restrictions": {"p2p": True}})
