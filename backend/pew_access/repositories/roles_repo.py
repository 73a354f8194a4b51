"""
Repository for roles, role permissions and the permission catalogue.

The registry reads roles through DatabaseRoleSource; this repository is the
write side used by seeding and admin tooling.
"""

import logging
from typing import Iterable, List, Optional

from pew_access.rbac.models import (
    PermissionDefinition,
    PermissionRecord,
    RoleDefinition,
    RolePermissionRecord,
    RoleRecord,
)
from pew_access.repositories.base_repo import BaseRepository

logger = logging.getLogger(__name__)


class RoleRepository(BaseRepository[RoleRecord]):

    def _get_model_class(self) -> type[RoleRecord]:
        return RoleRecord

    def get_by_name(self, name: str) -> Optional[RoleRecord]:
        return self.db_session.query(RoleRecord).filter(RoleRecord.name == name).first()

    def list_active(self) -> List[RoleDefinition]:
        rows = (
            self.db_session.query(RoleRecord)
            .filter(RoleRecord.is_active.is_(True))
            .order_by(RoleRecord.level.asc())
            .all()
        )
        return [row.to_definition() for row in rows]

    def upsert_role(self, definition: RoleDefinition) -> RoleRecord:
        """
        Create the role or bring an existing one in line with the definition.

        Permissions missing from the definition are deactivated, not deleted.
        """
        record = self.get_by_name(definition.name)
        if record is None:
            record = RoleRecord(name=definition.name)
            self.db_session.add(record)
        record.level = definition.level
        record.description = definition.description
        record.is_active = True

        existing = {rp.permission: rp for rp in record.permissions}
        for permission in definition.permissions:
            if permission in existing:
                existing[permission].is_active = True
            else:
                record.permissions.append(RolePermissionRecord(permission=permission, is_active=True))
        for permission, rp in existing.items():
            if permission not in definition.permissions:
                rp.is_active = False

        self._commit("upsert", record)
        return record

    def seed(self, definitions: Iterable[RoleDefinition]) -> int:
        count = 0
        for definition in definitions:
            self.upsert_role(definition)
            count += 1
        logger.info("Seeded roles", extra={"count": count})
        return count


class PermissionRepository(BaseRepository[PermissionRecord]):

    def _get_model_class(self) -> type[PermissionRecord]:
        return PermissionRecord

    def get_by_name(self, name: str) -> Optional[PermissionRecord]:
        return (
            self.db_session.query(PermissionRecord)
            .filter(PermissionRecord.name == name)
            .first()
        )

    def ensure(self, name: str, description: Optional[str] = None) -> PermissionRecord:
        record = self.get_by_name(name)
        if record is not None:
            return record
        definition = PermissionDefinition.from_name(name)
        return self.create({
            "name": definition.name,
            "resource": definition.resource,
            "action": definition.action,
            "description": description,
        })

    def list_definitions(self) -> List[PermissionDefinition]:
        rows = self.db_session.query(PermissionRecord).order_by(PermissionRecord.name).all()
        return [row.to_definition() for row in rows]
