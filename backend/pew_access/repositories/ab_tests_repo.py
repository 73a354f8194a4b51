"""
Repository for A/B test definitions, plus the database-backed test source
used by experiment targeting.
"""

import logging
from typing import Callable, List

from sqlalchemy.orm import Session

from pew_access.experiments.models import ABTest, ABTestRecord, ABTestStatus, Variant
from pew_access.experiments.targeting import ABTestSource
from pew_access.platform.errors import NotFoundError, ValidationError
from pew_access.policies.matcher import validate_criteria
from pew_access.repositories.base_repo import BaseRepository, session_scope

logger = logging.getLogger(__name__)


class ABTestRepository(BaseRepository[ABTestRecord]):

    def _get_model_class(self) -> type[ABTestRecord]:
        return ABTestRecord

    def list_for_feature(self, feature: str) -> List[ABTest]:
        """Tests on a feature. Unreadable rows are logged and left out."""
        rows = self.db_session.query(ABTestRecord).filter(ABTestRecord.feature == feature).all()
        tests: List[ABTest] = []
        for row in rows:
            try:
                tests.append(row.to_test())
            except ValidationError as e:
                logger.warning(
                    "Skipping unreadable A/B test row",
                    extra={"test_id": row.id, "feature": feature, "error": e.message},
                )
        return tests

    def get_test(self, test_id: str) -> ABTest:
        row = self.get_by_id(test_id)
        if row is None:
            raise NotFoundError("ab_test", test_id)
        return row.to_test()

    def create_test(self, data: dict) -> ABTest:
        """Insert a test; the variant split, status and target criteria are checked first."""
        data = dict(data)
        variants = [Variant.from_dict(v) for v in data.get("variants", [])]
        ABTest(
            id=data.get("id") or "new",
            name=data.get("name", ""),
            feature=data.get("feature", ""),
            variants=tuple(variants),
        ).validate()
        validate_criteria(data.get("target_criteria"))
        try:
            data["status"] = ABTestStatus(data.get("status", ABTestStatus.DRAFT)).value
        except ValueError as e:
            raise ValidationError(
                f"Unknown A/B test status: {e}", details={"status": data.get("status")}
            ) from e
        data["variants"] = [v.to_dict() for v in variants]
        return self.create(data).to_test()


class DatabaseABTestSource(ABTestSource):
    """Opens a short-lived session per lookup."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def tests_for_feature(self, feature: str) -> List[ABTest]:
        with session_scope(self._session_factory) as session:
            return ABTestRepository(session).list_for_feature(feature)

    def get_test(self, test_id: str) -> ABTest:
        with session_scope(self._session_factory) as session:
            return ABTestRepository(session).get_test(test_id)
