"""
Repository for feature policies, plus the database-backed PolicySource the
live engine reads from.
"""

import logging
from typing import Callable, List

from sqlalchemy.orm import Session

from pew_access.platform.errors import NotFoundError, ValidationError
from pew_access.policies.engine import PolicySource
from pew_access.policies.matcher import validate_criteria
from pew_access.policies.models import Policy, PolicyPriority, PolicyRecord, PolicyStatus
from pew_access.policies.predicates import parse_rules
from pew_access.repositories.base_repo import BaseRepository, session_scope

logger = logging.getLogger(__name__)


class PolicyRepository(BaseRepository[PolicyRecord]):

    def _get_model_class(self) -> type[PolicyRecord]:
        return PolicyRecord

    def load_active(self, feature: str) -> tuple[List[Policy], List[str]]:
        """
        ACTIVE policies for a feature, plus the ids of rows that could not be
        turned into a Policy. An unreadable row is logged and left out so the
        feature's other policies still apply.
        """
        rows = (
            self.db_session.query(PolicyRecord)
            .filter(
                PolicyRecord.feature == feature,
                PolicyRecord.status == PolicyStatus.ACTIVE.value,
            )
            .all()
        )
        policies: List[Policy] = []
        unreadable: List[str] = []
        for row in rows:
            try:
                policies.append(row.to_policy())
            except ValidationError as e:
                unreadable.append(row.id)
                logger.warning(
                    "Skipping unreadable policy row",
                    extra={"policy_id": row.id, "feature": feature, "error": e.message},
                )
        return policies, unreadable

    def list_active(self, feature: str) -> List[Policy]:
        return self.load_active(feature)[0]

    def get_policy(self, policy_id: str) -> Policy:
        """Any status. Raises NotFoundError."""
        row = self.get_by_id(policy_id)
        if row is None:
            raise NotFoundError("policy", policy_id)
        return row.to_policy()

    def create_policy(self, data: dict) -> Policy:
        """
        Insert a policy. The rule document, priority, status and target
        criteria are checked first so a malformed policy is rejected at
        write time, not skipped at every evaluation.
        """
        data = dict(data)
        parse_rules(data.get("rules"))
        validate_criteria(data.get("target_criteria"))
        try:
            data["priority"] = PolicyPriority(data.get("priority", PolicyPriority.MEDIUM)).value
            data["status"] = PolicyStatus(data.get("status", PolicyStatus.DRAFT)).value
        except ValueError as e:
            raise ValidationError(
                f"Unknown policy priority or status: {e}",
                details={"priority": data.get("priority"), "status": data.get("status")},
            ) from e
        return self.create(data).to_policy()

    def set_status(self, policy_id: str, status: PolicyStatus) -> Policy:
        row = self.update(policy_id, {"status": PolicyStatus(status).value})
        if row is None:
            raise NotFoundError("policy", policy_id)
        logger.info("Policy status changed", extra={"policy_id": policy_id, "status": row.status})
        return row.to_policy()


class DatabasePolicySource(PolicySource):
    """Opens a short-lived session per lookup."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def active_policies(self, feature: str) -> List[Policy]:
        with session_scope(self._session_factory) as session:
            return PolicyRepository(session).list_active(feature)

    def load_active(self, feature: str) -> tuple[List[Policy], List[str]]:
        with session_scope(self._session_factory) as session:
            return PolicyRepository(session).load_active(feature)

    def get_policy(self, policy_id: str) -> Policy:
        with session_scope(self._session_factory) as session:
            return PolicyRepository(session).get_policy(policy_id)
