"""
Role Registry - process-wide, read-mostly table of roles.

Provides:
- RoleSource implementations: built-in matrix, config/roles.yaml, roles table
- RoleTable: immutable snapshot of all roles ordered by level
- RoleRegistry: lazy loader with reload() that swaps the whole snapshot

Readers never lock. reload() builds a complete new RoleTable and replaces
the reference in one assignment, so a concurrent reader sees either the old
table or the new one, never a mix.

Usage:
    registry = RoleRegistry(YamlRoleSource("config/roles.yaml"))
    admin = registry.get_role("admin")
    for role in registry.list_roles():
        ...
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Optional

import yaml
from sqlalchemy.orm import Session

from pew_access.constants.permissions import ROLE_LEVELS, ROLE_PERMISSIONS
from pew_access.platform.errors import ConfigurationError, NotFoundError
from pew_access.rbac.models import PermissionDefinition, RoleDefinition, RoleRecord

logger = logging.getLogger(__name__)

WILDCARD_PERMISSION = "*"


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------

class RoleSource:
    """Backing store for role definitions."""

    name = "abstract"

    def load(self) -> list[RoleDefinition]:
        raise NotImplementedError


class BuiltinRoleSource(RoleSource):
    """The hardcoded matrix in constants.permissions."""

    name = "builtin"

    def load(self) -> list[RoleDefinition]:
        return [
            RoleDefinition(
                name=role.value,
                level=ROLE_LEVELS[role],
                permissions=frozenset(p.value for p in perms),
            )
            for role, perms in ROLE_PERMISSIONS.items()
        ]


class YamlRoleSource(RoleSource):
    """
    Role seed file (config/roles.yaml).

    Supports `inherits: <role>` to pull in another role's permissions and
    the "*" wildcard, which expands to every permission in the catalogue.
    """

    name = "yaml"

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> list[RoleDefinition]:
        try:
            with open(self.path, "r") as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Cannot read role seed file {self.path}: {e}",
                details={"path": str(self.path)},
            ) from e

        catalogue = [PermissionDefinition.from_name(p).name for p in raw.get("permissions", [])]
        entries = {entry["name"]: entry for entry in raw.get("roles", [])}

        resolved: dict[str, frozenset[str]] = {}

        def expand(name: str, seen: tuple[str, ...] = ()) -> frozenset[str]:
            if name in resolved:
                return resolved[name]
            if name in seen:
                raise ConfigurationError(
                    f"Role inheritance cycle: {' -> '.join(seen + (name,))}"
                )
            entry = entries.get(name)
            if entry is None:
                raise ConfigurationError(f"Role '{name}' inherited but not defined")
            perms: set[str] = set()
            for perm in entry.get("permissions", []):
                if perm == WILDCARD_PERMISSION:
                    perms.update(catalogue)
                else:
                    perms.add(perm)
            parent = entry.get("inherits")
            if parent:
                perms.update(expand(parent, seen + (name,)))
            resolved[name] = frozenset(perms)
            return resolved[name]

        return [
            RoleDefinition(
                name=name,
                level=int(entry["level"]),
                permissions=expand(name),
                description=entry.get("description"),
            )
            for name, entry in entries.items()
        ]


class DatabaseRoleSource(RoleSource):
    """roles / role_permissions tables."""

    name = "database"

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def load(self) -> list[RoleDefinition]:
        try:
            session = self._session_factory()
        except Exception as e:
            raise ConfigurationError(f"Role store unreachable: {e}") from e
        try:
            rows = session.query(RoleRecord).filter(RoleRecord.is_active.is_(True)).all()
            return [row.to_definition() for row in rows]
        except Exception as e:
            raise ConfigurationError(f"Failed to read roles table: {e}") from e
        finally:
            session.close()


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

class RoleTable:
    """Immutable snapshot of the role set, ordered by level ascending."""

    def __init__(self, roles: Iterable[RoleDefinition], source: str = "unknown"):
        ordered = sorted(roles, key=lambda r: (r.level, r.name))
        if not ordered:
            raise ConfigurationError("Role table is empty", details={"source": source})

        by_name: dict[str, RoleDefinition] = {}
        for role in ordered:
            if role.name in by_name:
                raise ConfigurationError(
                    f"Duplicate role name '{role.name}'", details={"source": source}
                )
            by_name[role.name] = role

        self._ordered: tuple[RoleDefinition, ...] = tuple(ordered)
        self._by_name: Mapping[str, RoleDefinition] = MappingProxyType(by_name)
        self.source = source
        self.loaded_at = datetime.now(timezone.utc)
        self._warn_non_monotonic()

    def _warn_non_monotonic(self) -> None:
        for lower, higher in zip(self._ordered, self._ordered[1:]):
            missing = lower.permissions - higher.permissions
            if missing:
                logger.warning(
                    "Higher role lacks permissions held by a lower role",
                    extra={
                        "lower_role": lower.name,
                        "higher_role": higher.name,
                        "missing": sorted(missing),
                    },
                )

    def get(self, name: str) -> Optional[RoleDefinition]:
        return self._by_name.get(name)

    @property
    def roles(self) -> tuple[RoleDefinition, ...]:
        return self._ordered

    @property
    def lowest(self) -> RoleDefinition:
        return self._ordered[0]

    def __len__(self) -> int:
        return len(self._ordered)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class RoleRegistry:
    """
    Lazily-loaded role registry.

    Raises ConfigurationError when the source is unreachable and nothing has
    been cached yet. Callers treat that as "public routes only".
    """

    def __init__(self, source: RoleSource):
        self._source = source
        self._table: Optional[RoleTable] = None
        # Serialises loads only; lookups never take this lock
        self._load_lock = Lock()

    def _build(self) -> RoleTable:
        roles = self._source.load()
        table = RoleTable(roles, source=self._source.name)
        logger.info(
            "Role table loaded",
            extra={"source": self._source.name, "roles": [r.name for r in table.roles]},
        )
        return table

    def _current(self) -> RoleTable:
        table = self._table
        if table is not None:
            return table
        with self._load_lock:
            if self._table is None:
                self._table = self._build()
            return self._table

    @property
    def is_loaded(self) -> bool:
        return self._table is not None

    def snapshot(self) -> RoleTable:
        """Current table. Hold on to it to get a consistent view across calls."""
        return self._current()

    def get_role(self, name: str) -> RoleDefinition:
        role = self._current().get(name)
        if role is None:
            raise NotFoundError("role", name)
        return role

    def list_roles(self) -> tuple[RoleDefinition, ...]:
        return self._current().roles

    def lowest_role(self) -> RoleDefinition:
        return self._current().lowest

    def reload(self) -> bool:
        """
        Rebuild the table from the source and swap it in.

        If the source fails and a table is already cached, the cached table
        stays in place and False is returned. With no cached table the
        ConfigurationError propagates.
        """
        with self._load_lock:
            try:
                new_table = self._build()
            except ConfigurationError:
                if self._table is None:
                    raise
                logger.warning(
                    "Role reload failed, keeping cached table",
                    extra={"source": self._source.name, "loaded_at": self._table.loaded_at.isoformat()},
                    exc_info=True,
                )
                return False
            self._table = new_table
            return True


_registry: Optional[RoleRegistry] = None
_registry_lock = Lock()


def build_role_source(settings=None) -> RoleSource:
    """Pick the role source named by settings.role_source."""
    from pew_access.config.settings import AccessControlSettings

    settings = settings or AccessControlSettings.from_env()
    if settings.role_source == "database":
        from pew_access.database.session import get_session_factory
        return DatabaseRoleSource(lambda: get_session_factory(settings)())
    if settings.role_source == "builtin":
        return BuiltinRoleSource()
    return YamlRoleSource(settings.roles_config_path)


def get_role_registry() -> RoleRegistry:
    """Process-wide registry used by the default app wiring."""
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                _registry = RoleRegistry(build_role_source())
    return _registry


def set_role_registry(registry: Optional[RoleRegistry]) -> None:
    """Replace the process-wide registry (tests, alternative wiring)."""
    global _registry
    with _registry_lock:
        _registry = registry
