"""
Deterministic A/B variant assignment.

A principal's bucket is derived from SHA-256 of "{test_id}:{principal_id}",
so the same pair always lands in the same variant across processes and
restarts. Buckets 0..9999 are laid over the variants' cumulative
percentages in declaration order.

Usage:
    targeting = ExperimentTargeting(test_source)
    assignment = targeting.assign_variant(test, principal)
"""

import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from pew_access.experiments.models import (
    CONTROL_VARIANT,
    ABTest,
    Variant,
    VariantAssignment,
)
from pew_access.platform.errors import NotFoundError
from pew_access.platform.principal import Principal, build_evaluation_context
from pew_access.policies.matcher import matches_target

logger = logging.getLogger(__name__)

BUCKET_COUNT = 10000


class ABTestSource:
    """Provides A/B test definitions."""

    def tests_for_feature(self, feature: str) -> list[ABTest]:
        raise NotImplementedError

    def get_test(self, test_id: str) -> ABTest:
        raise NotImplementedError


class StaticABTestSource(ABTestSource):
    def __init__(self, tests: Iterable[ABTest] = ()):
        self._tests = list(tests)

    def tests_for_feature(self, feature: str) -> list[ABTest]:
        return [t for t in self._tests if t.feature == feature]

    def get_test(self, test_id: str) -> ABTest:
        for test in self._tests:
            if test.id == test_id:
                return test
        raise NotFoundError("ab_test", test_id)


def bucket_for(test_id: str, principal_id: str) -> int:
    digest = hashlib.sha256(f"{test_id}:{principal_id}".encode("utf-8")).hexdigest()
    return int(digest[:16], 16) % BUCKET_COUNT


def variant_for_bucket(variants: Iterable[Variant], bucket: int) -> Variant:
    variants = list(variants)
    cumulative = 0.0
    for variant in variants:
        cumulative += variant.percentage * BUCKET_COUNT / 100
        if bucket < round(cumulative):
            return variant
    # Float rounding can leave the top bucket uncovered
    return variants[-1]


def _principal_id(principal: Any) -> str:
    return principal.id if isinstance(principal, Principal) else str(principal)


class ExperimentTargeting:
    """Assigns principals to variants of the A/B tests attached to features."""

    def __init__(self, source: Optional[ABTestSource] = None):
        self.source = source

    def assign_variant(
        self,
        test: ABTest,
        principal: Principal,
        context: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> VariantAssignment:
        """
        Assign the principal to one of the test's variants.

        Raises ValidationError if the variant percentages are malformed.
        """
        test.validate()
        now = now or datetime.now(timezone.utc)

        if not test.is_running(now):
            return VariantAssignment(test_id=test.id, variant=CONTROL_VARIANT, in_experiment=False)

        if test.target_criteria:
            if context is None:
                context = build_evaluation_context(principal, None)
            if not matches_target(test.target_criteria, context):
                return VariantAssignment(test_id=test.id, variant=None, in_experiment=False)

        variant = variant_for_bucket(test.variants, bucket_for(test.id, _principal_id(principal)))
        return VariantAssignment(
            test_id=test.id,
            variant=variant.name,
            in_experiment=True,
            config=dict(variant.config),
        )

    def assign_for_feature(
        self,
        feature: str,
        principal: Principal,
        context: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[VariantAssignment]:
        """
        Assignment for the feature's running experiment, if it has one.

        With several running tests on one feature the one started most
        recently is used.
        """
        if self.source is None:
            return None
        now = now or datetime.now(timezone.utc)
        running = [t for t in self.source.tests_for_feature(feature) if t.is_running(now)]
        if not running:
            return None
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        test = max(running, key=lambda t: (t.start_date or epoch, t.id))
        return self.assign_variant(test, principal, context=context, now=now)

    def variant_distribution(self, test: ABTest, principal_ids: Iterable[str]) -> dict[str, int]:
        """
        Count how the given principals split across the test's variants.

        Uses the raw hash allocation, ignoring status, schedule and targeting.
        """
        test.validate()
        counts = {variant.name: 0 for variant in test.variants}
        for principal_id in principal_ids:
            variant = variant_for_bucket(test.variants, bucket_for(test.id, principal_id))
            counts[variant.name] += 1
        return counts
