"""
Role / Permission Seed Script

Loads config/roles.yaml and writes the permission catalogue, roles and
role permissions into the database. Safe to re-run: existing roles are
updated in place and permissions dropped from the file are deactivated.

Usage:
    python -m scripts.seed_roles
    python -m scripts.seed_roles --dry-run (to preview without saving)
    python -m scripts.seed_roles --config path/to/roles.yaml

Environment variables:
    DATABASE_URL: PostgreSQL connection string (required unless --dry-run)
"""

import argparse
import logging
import sys
from pathlib import Path

import yaml

# Add backend directory to path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from sqlalchemy.exc import SQLAlchemyError

from pew_access.config.settings import DEFAULT_ROLES_CONFIG
from pew_access.database.session import get_session_factory
from pew_access.platform.errors import AccessControlError
from pew_access.rbac.registry import RoleTable, YamlRoleSource
from pew_access.repositories.roles_repo import PermissionRepository, RoleRepository

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def load_catalogue(path: Path) -> list[str]:
    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}
    return list(raw.get("permissions", []))


def seed(config_path: Path, dry_run: bool = False) -> int:
    # Building a RoleTable runs the same validation the registry does
    table = RoleTable(YamlRoleSource(config_path).load(), source="yaml")
    catalogue = load_catalogue(config_path)

    for role in table.roles:
        logger.info(
            "Role %s (level %d): %d permissions",
            role.name, role.level, len(role.permissions),
        )
    if dry_run:
        logger.info("Dry run, nothing written")
        return 0

    session = get_session_factory()()
    try:
        permissions = PermissionRepository(session)
        for name in catalogue:
            permissions.ensure(name)
        count = RoleRepository(session).seed(table.roles)
        logger.info("Seeded %d roles and %d permissions", count, len(catalogue))
        return 0
    except SQLAlchemyError as e:
        logger.error("Seeding failed: %s", e)
        return 1
    finally:
        session.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed roles and permissions")
    parser.add_argument("--config", type=Path, default=DEFAULT_ROLES_CONFIG)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    try:
        return seed(args.config, dry_run=args.dry_run)
    except (AccessControlError, ValueError) as e:
        logger.error("Cannot seed roles: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
