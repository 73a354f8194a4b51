"""
Environment-driven settings for the access-control core.

Environment variables:
    PEW_ROLES_CONFIG       Path to the role seed YAML (default: config/roles.yaml)
    PEW_ROUTES_CONFIG      Path to the route declaration YAML (default: config/routes.yaml)
    PEW_ROLE_SOURCE        "database", "yaml" or "builtin" (default: yaml)
    PEW_AUDIT_ASYNC        "true" to write audit records from a background queue
    PEW_AUDIT_QUEUE_SIZE   Max queued audit records before synchronous fallback
    PEW_GEO_COUNTRY_HEADER Header carrying the edge geo-IP country code
    PEW_GEO_REGION_HEADER  Header carrying the edge geo-IP region code
    PEW_DB_POOL_SIZE       Persistent connections per process (default: 5)
    PEW_DB_MAX_OVERFLOW    Extra connections allowed under load (default: 10)
    DATABASE_URL           Enables the database-backed sources and audit table
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_BACKEND_DIR = Path(__file__).resolve().parent.parent.parent

DEFAULT_ROLES_CONFIG = _BACKEND_DIR / "config" / "roles.yaml"
DEFAULT_ROUTES_CONFIG = _BACKEND_DIR / "config" / "routes.yaml"

_TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(
            "Invalid integer in environment, using default",
            extra={"variable": name, "value": raw, "default": default},
        )
        return default


@dataclass(frozen=True)
class AccessControlSettings:
    """Resolved settings snapshot. Build with from_env()."""
    roles_config_path: Path = DEFAULT_ROLES_CONFIG
    routes_config_path: Path = DEFAULT_ROUTES_CONFIG
    role_source: str = "yaml"
    audit_async: bool = False
    audit_queue_size: int = 10000
    geo_country_header: str = "CF-IPCountry"
    geo_region_header: str = "X-Geo-Region"
    database_url: Optional[str] = None
    db_pool_size: int = 5
    db_max_overflow: int = 10

    @classmethod
    def from_env(cls) -> "AccessControlSettings":
        role_source = os.getenv("PEW_ROLE_SOURCE", "yaml").strip().lower()
        if role_source not in ("database", "yaml", "builtin"):
            logger.warning(
                "Unknown PEW_ROLE_SOURCE, falling back to yaml",
                extra={"value": role_source},
            )
            role_source = "yaml"

        return cls(
            roles_config_path=Path(os.getenv("PEW_ROLES_CONFIG", str(DEFAULT_ROLES_CONFIG))),
            routes_config_path=Path(os.getenv("PEW_ROUTES_CONFIG", str(DEFAULT_ROUTES_CONFIG))),
            role_source=role_source,
            audit_async=_env_bool("PEW_AUDIT_ASYNC", False),
            audit_queue_size=_env_int("PEW_AUDIT_QUEUE_SIZE", 10000),
            geo_country_header=os.getenv("PEW_GEO_COUNTRY_HEADER", "CF-IPCountry"),
            geo_region_header=os.getenv("PEW_GEO_REGION_HEADER", "X-Geo-Region"),
            database_url=os.getenv("DATABASE_URL"),
            db_pool_size=_env_int("PEW_DB_POOL_SIZE", 5),
            db_max_overflow=_env_int("PEW_DB_MAX_OVERFLOW", 10),
        )
