"""
Repository for compliance rules, plus the database-backed rule source the
compliance gate reads from.
"""

import logging
from typing import Callable, Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from pew_access.compliance.gate import ComplianceRuleSource
from pew_access.compliance.models import (
    WILDCARD_USER,
    ComplianceRule,
    ComplianceRuleRecord,
    normalise_restrictions,
)
from pew_access.platform.errors import ValidationError
from pew_access.repositories.base_repo import BaseRepository, session_scope

logger = logging.getLogger(__name__)


def _to_rules(rows: Iterable[ComplianceRuleRecord]) -> List[ComplianceRule]:
    rules = []
    for row in rows:
        try:
            rules.append(row.to_rule())
        except ValidationError as e:
            # Keep the rule's verdict; a denial still restricts its own feature
            logger.warning(
                "Compliance rule has unreadable restrictions",
                extra={"rule_id": row.id, "feature": row.feature, "error": e.message},
            )
            rules.append(row.to_rule(restrictions=() if row.is_allowed else (row.feature,)))
    return rules


class ComplianceRuleRepository(BaseRepository[ComplianceRuleRecord]):

    def _get_model_class(self) -> type[ComplianceRuleRecord]:
        return ComplianceRuleRecord

    def create(self, entity_data: dict) -> ComplianceRuleRecord:
        """Insert a rule; restrictions are stored as a list of names."""
        entity_data = dict(entity_data)
        entity_data["restrictions"] = list(normalise_restrictions(entity_data.get("restrictions")))
        return super().create(entity_data)

    def rules_for(self, user_id: Optional[str], feature: str) -> List[ComplianceRule]:
        user_filter = ComplianceRuleRecord.user_id == WILDCARD_USER
        if user_id:
            user_filter = or_(user_filter, ComplianceRuleRecord.user_id == user_id)
        rows = (
            self.db_session.query(ComplianceRuleRecord)
            .filter(ComplianceRuleRecord.feature == feature, user_filter)
            .all()
        )
        return _to_rules(rows)

    def rules_for_user(self, user_id: str) -> List[ComplianceRule]:
        rows = (
            self.db_session.query(ComplianceRuleRecord)
            .filter(ComplianceRuleRecord.user_id == user_id)
            .all()
        )
        return _to_rules(rows)


class DatabaseComplianceSource(ComplianceRuleSource):
    """Opens a short-lived session per lookup."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def rules_for(self, user_id: Optional[str], feature: str) -> List[ComplianceRule]:
        with session_scope(self._session_factory) as session:
            return ComplianceRuleRepository(session).rules_for(user_id, feature)

    def rules_for_user(self, user_id: str) -> List[ComplianceRule]:
        with session_scope(self._session_factory) as session:
            return ComplianceRuleRepository(session).rules_for_user(user_id)
