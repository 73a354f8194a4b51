"""
Repository for admin-issued user overrides.

Overrides are never edited and never expire. A tier/trust revoke stays in
force over any grant for the same permission until an admin deletes it.
"""

import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from pew_access.rbac.models import OverrideType, UserOverride, UserOverrideRecord
from pew_access.repositories.base_repo import BaseRepository

logger = logging.getLogger(__name__)


class UserOverrideRepository(BaseRepository[UserOverrideRecord]):

    def _get_model_class(self) -> type[UserOverrideRecord]:
        return UserOverrideRecord

    def list_for_user(self, user_id: str) -> List[UserOverride]:
        rows = (
            self.db_session.query(UserOverrideRecord)
            .filter(UserOverrideRecord.user_id == user_id)
            .order_by(UserOverrideRecord.created_at.asc())
            .all()
        )
        return [row.to_override() for row in rows]

    def add_override(
        self,
        user_id: str,
        override_type: OverrideType,
        key: str,
        value: Any,
        admin_id: str,
        reason: str = "",
        created_at: Optional[datetime] = None,
    ) -> UserOverride:
        override_type = OverrideType(override_type)
        candidate = UserOverride(
            user_id=user_id,
            override_type=override_type,
            key=key,
            value=value,
            reason=reason,
            admin_id=admin_id,
        )
        if candidate.affects_permissions:
            # Raises ValidationError for anything but a grant/revoke flag
            candidate.permission_action()

        record = self.create({
            "user_id": user_id,
            "override_type": override_type.value,
            "key": key,
            "value": value,
            "reason": reason,
            "admin_id": admin_id,
            "created_at": created_at or datetime.now(timezone.utc),
        })
        logger.info(
            "User override added",
            extra={
                "user_id": user_id,
                "override_type": record.override_type,
                "key": key,
                "admin_id": admin_id,
            },
        )
        return record.to_override()

    def remove_override(self, override_id: str, admin_id: str) -> bool:
        removed = self.delete(override_id)
        if removed:
            logger.info(
                "User override removed",
                extra={"override_id": override_id, "admin_id": admin_id},
            )
        return removed
