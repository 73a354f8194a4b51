"""
Tests for the role registry.

Test classes:
- TestRoleSources: built-in matrix, YAML seed file, roles table
- TestRoleTable: ordering and validation of a snapshot
- TestRoleRegistryLookup: get_role / list_roles / lowest_role
- TestRoleRegistryReload: lazy load, atomic swap, failure handling
"""

import pytest

from pew_access.constants.permissions import Permission
from pew_access.platform.errors import ConfigurationError, NotFoundError
from pew_access.rbac.models import RoleDefinition
from pew_access.rbac.registry import (
    BuiltinRoleSource,
    DatabaseRoleSource,
    RoleRegistry,
    RoleSource,
    RoleTable,
    YamlRoleSource,
)
from pew_access.repositories.roles_repo import RoleRepository


# =============================================================================
# Fixtures
# =============================================================================


class CountingSource(RoleSource):
    """Source whose result can be swapped or made to fail between loads."""

    name = "counting"

    def __init__(self, roles):
        self.roles = list(roles)
        self.calls = 0
        self.fail = False

    def load(self):
        self.calls += 1
        if self.fail:
            raise ConfigurationError("store unreachable")
        return list(self.roles)


def _roles(*specs):
    return [RoleDefinition(name=n, level=lvl, permissions=frozenset(p)) for n, lvl, p in specs]


@pytest.fixture
def counting_source():
    return CountingSource(_roles(
        ("user", 10, {"posts:create"}),
        ("admin", 100, {"posts:create", "roles:manage"}),
    ))


# =============================================================================
# TestRoleSources
# =============================================================================


class TestRoleSources:

    def test_builtin_source_has_three_levels(self):
        roles = {r.name: r for r in BuiltinRoleSource().load()}
        assert roles["user"].level < roles["manager"].level < roles["admin"].level

    def test_builtin_admin_has_every_permission(self):
        roles = {r.name: r for r in BuiltinRoleSource().load()}
        assert roles["admin"].permissions == frozenset(p.value for p in Permission)

    def test_yaml_inherits_parent_permissions(self, role_registry):
        user = role_registry.get_role("user")
        manager = role_registry.get_role("manager")
        assert user.permissions <= manager.permissions
        assert "escrow:resolve" in manager.permissions
        assert "escrow:resolve" not in user.permissions

    def test_yaml_wildcard_expands_to_catalogue(self, role_registry):
        admin = role_registry.get_role("admin")
        assert "roles:manage" in admin.permissions
        assert "p2p:trade" in admin.permissions

    def test_yaml_matches_builtin_matrix(self, role_registry):
        builtin = {r.name: r.permissions for r in BuiltinRoleSource().load()}
        yaml_roles = {r.name: r.permissions for r in role_registry.list_roles()}
        assert yaml_roles == builtin

    def test_yaml_missing_file_is_configuration_error(self, tmp_path):
        with pytest.raises(ConfigurationError):
            YamlRoleSource(tmp_path / "missing.yaml").load()

    def test_yaml_inheritance_cycle_rejected(self, tmp_path):
        path = tmp_path / "roles.yaml"
        path.write_text(
            "roles:\n"
            "  - {name: a, level: 1, inherits: b}\n"
            "  - {name: b, level: 2, inherits: a}\n"
        )
        with pytest.raises(ConfigurationError, match="cycle"):
            YamlRoleSource(path).load()

    def test_database_source_reads_active_roles(self, db_session, session_factory):
        repo = RoleRepository(db_session)
        repo.seed(_roles(
            ("user", 10, {"posts:create"}),
            ("manager", 50, {"posts:create", "posts:moderate"}),
        ))
        retired = repo.upsert_role(RoleDefinition(name="legacy", level=5))
        repo.update(retired.id, {"is_active": False})

        roles = {r.name: r for r in DatabaseRoleSource(session_factory).load()}
        assert set(roles) == {"user", "manager"}
        assert roles["manager"].permissions == frozenset({"posts:create", "posts:moderate"})

    def test_database_source_unreachable(self):
        def broken_factory():
            raise RuntimeError("connection refused")

        with pytest.raises(ConfigurationError, match="unreachable"):
            DatabaseRoleSource(broken_factory).load()


# =============================================================================
# TestRoleTable
# =============================================================================


class TestRoleTable:

    def test_roles_sorted_by_level(self):
        table = RoleTable(_roles(("admin", 100, ()), ("user", 10, ()), ("manager", 50, ())))
        assert [r.name for r in table.roles] == ["user", "manager", "admin"]
        assert table.lowest.name == "user"

    def test_empty_table_rejected(self):
        with pytest.raises(ConfigurationError):
            RoleTable([])

    def test_duplicate_names_rejected(self):
        with pytest.raises(ConfigurationError, match="Duplicate"):
            RoleTable(_roles(("user", 10, ()), ("user", 20, ())))

    def test_non_monotonic_permissions_logged(self, caplog):
        RoleTable(_roles(("user", 10, {"chat:send"}), ("manager", 50, set())))
        assert any("lacks permissions" in r.message for r in caplog.records)


# =============================================================================
# TestRoleRegistryLookup
# =============================================================================


class TestRoleRegistryLookup:

    def test_get_role(self, role_registry):
        assert role_registry.get_role("manager").level == 50

    def test_unknown_role_not_found(self, role_registry):
        with pytest.raises(NotFoundError) as exc_info:
            role_registry.get_role("superuser")
        assert exc_info.value.kind == "role"

    def test_list_roles_ascending(self, role_registry):
        levels = [r.level for r in role_registry.list_roles()]
        assert levels == sorted(levels)

    def test_lowest_role(self, role_registry):
        assert role_registry.lowest_role().name == "user"


# =============================================================================
# TestRoleRegistryReload
# =============================================================================


class TestRoleRegistryReload:

    def test_lazy_load_on_first_use(self, counting_source):
        registry = RoleRegistry(counting_source)
        assert counting_source.calls == 0
        assert not registry.is_loaded

        registry.get_role("user")
        registry.list_roles()
        assert counting_source.calls == 1

    def test_unreachable_without_cache_raises(self, counting_source):
        counting_source.fail = True
        registry = RoleRegistry(counting_source)
        with pytest.raises(ConfigurationError):
            registry.list_roles()
        with pytest.raises(ConfigurationError):
            registry.reload()

    def test_reload_swaps_table(self, counting_source):
        registry = RoleRegistry(counting_source)
        before = registry.snapshot()

        counting_source.roles = _roles(
            ("user", 10, {"posts:create"}),
            ("manager", 50, {"posts:create"}),
            ("admin", 100, {"posts:create", "roles:manage"}),
        )
        assert registry.reload() is True

        after = registry.snapshot()
        assert after is not before
        assert [r.name for r in after.roles] == ["user", "manager", "admin"]
        # The old snapshot is untouched; readers holding it keep a consistent view
        assert [r.name for r in before.roles] == ["user", "admin"]

    def test_failed_reload_keeps_cached_table(self, counting_source, caplog):
        registry = RoleRegistry(counting_source)
        before = registry.snapshot()

        counting_source.fail = True
        assert registry.reload() is False
        assert registry.snapshot() is before
        assert registry.get_role("admin").level == 100
        assert any("keeping cached table" in r.message for r in caplog.records)
