"""
Declarative route table for the access guard.

Loads config/routes.yaml: a public allow-list plus route rules that declare
the role, permission and feature each route needs. Routes never implement
their own checks; the guard reads these declarations.

Usage:
    from pew_access.guard.routes import get_route_table_loader

    table = get_route_table_loader().table
    rule = table.resolve_target("/api/p2p/offers")
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Iterable, Optional

import yaml

from pew_access.platform.errors import ConfigurationError

logger = logging.getLogger(__name__)


def _match_path(request_path: str, pattern: str) -> bool:
    """
    Simple path pattern matching.

    "/api/escrow/{trade_id}/resolve" matches "/api/escrow/t-9/resolve";
    a trailing "/*" matches the prefix itself and anything below it.
    """
    pattern = pattern.rstrip("/") or "/"
    request_path = request_path.rstrip("/") or "/"

    wildcard = pattern.endswith("/*")
    if wildcard:
        pattern = pattern[:-2]
        if not pattern:
            return True

    pattern_parts = pattern.split("/")
    path_parts = request_path.split("/")

    if wildcard:
        if len(path_parts) < len(pattern_parts):
            return False
        path_parts = path_parts[:len(pattern_parts)]
    elif len(pattern_parts) != len(path_parts):
        return False

    for pattern_part, path_part in zip(pattern_parts, path_parts):
        if pattern_part.startswith("{") and pattern_part.endswith("}"):
            if not path_part:
                return False
            continue  # Path parameter
        if pattern_part != path_part:
            return False

    return True


@dataclass(frozen=True)
class RouteRule:
    """What a route (or bare feature) requires."""
    pattern: str
    require_role: Optional[str] = None
    exact_role: bool = False
    require_permission: Optional[str] = None
    feature: Optional[str] = None

    def matches(self, path: str) -> bool:
        return _match_path(path, self.pattern)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RouteRule":
        if "pattern" not in data:
            raise ConfigurationError("Route entry without 'pattern'", details={"entry": data})
        return cls(
            pattern=str(data["pattern"]),
            require_role=data.get("require_role"),
            exact_role=bool(data.get("exact_role", False)),
            require_permission=data.get("require_permission"),
            feature=data.get("feature"),
        )


class RouteTable:
    """Public allow-list plus ordered route rules. First match wins."""

    def __init__(self, public: Iterable[str] = (), rules: Iterable[RouteRule] = ()):
        self.public = tuple(public)
        self.rules = tuple(rules)

    def is_public(self, target: str) -> bool:
        if not target.startswith("/"):
            return False
        return any(_match_path(target, pattern) for pattern in self.public)

    def match(self, path: str) -> Optional[RouteRule]:
        for rule in self.rules:
            if rule.matches(path):
                return rule
        return None

    def resolve_target(self, target: str) -> RouteRule:
        """
        Requirements for a route path or a bare feature name.

        A path that matches no declared rule needs authentication only. A
        target that is not a path is a feature name.
        """
        if target.startswith("/"):
            return self.match(target) or RouteRule(pattern=target)
        return RouteRule(pattern=target, feature=target)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "RouteTable":
        return cls(
            public=[str(p) for p in raw.get("public", [])],
            rules=[RouteRule.from_dict(entry) for entry in raw.get("routes", [])],
        )


class RouteTableLoader:
    """
    Thread-safe singleton loader for config/routes.yaml.
    """

    _instance: Optional["RouteTableLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return
        self._config_path = config_path
        self._table = RouteTable()
        self._load_lock = Lock()
        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)
        from pew_access.config.settings import AccessControlSettings
        return AccessControlSettings.from_env().routes_config_path

    def _load(self) -> None:
        with self._load_lock:
            path = self._resolve_path()
            logger.info("Loading route declarations from %s", path)
            try:
                with open(path, "r") as f:
                    raw = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigurationError(
                    f"Cannot read route declarations {path}: {e}",
                    details={"path": str(path)},
                ) from e
            self._table = RouteTable.from_dict(raw)
            logger.info(
                "Loaded %d public routes and %d route rules",
                len(self._table.public),
                len(self._table.rules),
            )

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    @property
    def table(self) -> RouteTable:
        return self._table

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton (tests)."""
        with cls._lock:
            cls._instance = None


def get_route_table_loader() -> RouteTableLoader:
    return RouteTableLoader()


def load_route_table(path: Path) -> RouteTable:
    """Read a route table from a specific file without touching the singleton."""
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read route declarations {path}: {e}") from e
    return RouteTable.from_dict(raw)
