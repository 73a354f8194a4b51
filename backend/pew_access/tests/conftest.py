"""
Shared fixtures for the access-control test suite.

- db_engine / db_session: SQLite in-memory database with every table
- session_factory: sessionmaker bound to the test connection, for the
  database-backed sources and audit sink
- audit_sink: in-memory sink that records what the guard writes
- role_registry / route_table: registry and routes from the real config files
- make_principal / make_guard: factories for principals and wired guards
"""

import os
from datetime import datetime, timezone
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pew_access.compliance.gate import ComplianceGate, StaticComplianceSource
from pew_access.config.settings import DEFAULT_ROLES_CONFIG, DEFAULT_ROUTES_CONFIG
from pew_access.experiments.targeting import ExperimentTargeting, StaticABTestSource
from pew_access.guard.access import AccessGuard
from pew_access.guard.routes import load_route_table
from pew_access.models import import_all_models
from pew_access.platform.audit import AuditSink
from pew_access.platform.principal import Principal, PrincipalAttributes
from pew_access.policies.engine import PolicyEngine, StaticPolicySource
from pew_access.rbac.models import OverrideType, UserOverride
from pew_access.rbac.registry import RoleRegistry, YamlRoleSource

os.environ.setdefault("ENV", "test")


# =============================================================================
# Database
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    """SQLite in-memory engine shared by the whole session."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    metadata = import_all_models()
    metadata.create_all(bind=engine)

    yield engine

    metadata.drop_all(bind=engine)


@pytest.fixture
def db_connection(db_engine):
    """Connection with an outer transaction rolled back after each test."""
    connection = db_engine.connect()
    transaction = connection.begin()
    yield connection
    transaction.rollback()
    connection.close()


@pytest.fixture
def session_factory(db_connection):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_connection)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Audit
# =============================================================================


class RecordingAuditSink(AuditSink):
    """Keeps every record in memory."""

    def __init__(self):
        self.records = []

    def write(self, record):
        self.records.append(record)


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


# =============================================================================
# Registry, routes, principals
# =============================================================================


@pytest.fixture
def role_registry():
    return RoleRegistry(YamlRoleSource(DEFAULT_ROLES_CONFIG))


@pytest.fixture
def route_table():
    return load_route_table(DEFAULT_ROUTES_CONFIG)


def _override(user_id, key, value, created_at, override_type=OverrideType.TIER):
    return UserOverride(
        user_id=user_id,
        override_type=override_type,
        key=key,
        value=value,
        reason="test",
        admin_id="admin-1",
        created_at=created_at,
    )


@pytest.fixture
def make_override():
    """Factory: make_override(user_id, key, value, created_at, override_type=TIER)."""
    return _override


@pytest.fixture
def make_principal():
    """Factory for principals; role defaults to "user"."""

    def _make(
        user_id="u1",
        role="user",
        country=None,
        region=None,
        overrides=(),
        trust_score=None,
        tier=None,
    ):
        return Principal(
            id=user_id,
            assigned_role=role,
            overrides=tuple(overrides),
            attributes=PrincipalAttributes(
                country=country,
                region=region,
                created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
                trust_score=trust_score,
                tier=tier,
            ),
        )

    return _make


@pytest.fixture
def make_guard(role_registry, route_table, audit_sink):
    """
    Factory for an AccessGuard over in-memory rule sets.

    make_guard(policies=[...], rules=[...], tests=[...], registry=None)
    """

    def _make(policies=(), rules=(), tests=(), registry=None, sink=audit_sink):
        return AccessGuard(
            registry=registry or role_registry,
            routes=route_table,
            policy_engine=PolicyEngine(StaticPolicySource(policies)),
            compliance_gate=ComplianceGate(StaticComplianceSource(rules)),
            targeting=ExperimentTargeting(StaticABTestSource(tests)),
            audit_sink=sink,
        )

    return _make
