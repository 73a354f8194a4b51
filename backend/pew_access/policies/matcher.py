"""
Target-criteria matcher shared by policies and experiments.

Criteria are a flat mapping of context attribute to expected value:
- scalar: context value must be equal (strings compare case-insensitively)
- list: context value must be one of the listed values

Empty criteria match every context. A criterion on an attribute the
context does not carry never matches. Criteria that cannot be compared
(not a mapping, or nested objects inside a list) raise ValidationError so
the owning policy or experiment is skipped on its own.
"""

from typing import Any, Mapping, Optional

from pew_access.platform.errors import ValidationError

_COLLECTIONS = (list, tuple, set, frozenset)


def _normalise(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


def _matches_value(actual: Any, expected: Any) -> bool:
    if isinstance(expected, _COLLECTIONS):
        expected_set = {_normalise(v) for v in expected}
        if isinstance(actual, _COLLECTIONS):
            return any(_normalise(a) in expected_set for a in actual)
        return _normalise(actual) in expected_set
    if isinstance(actual, _COLLECTIONS):
        return _normalise(expected) in {_normalise(a) for a in actual}
    return _normalise(actual) == _normalise(expected)


def validate_criteria(criteria: Any) -> None:
    """Raise ValidationError unless `criteria` is something matches_target can use."""
    if not criteria:
        return
    if not isinstance(criteria, Mapping):
        raise ValidationError(
            "Target criteria must be a mapping",
            details={"type": type(criteria).__name__},
        )
    for attribute, expected in criteria.items():
        values = expected if isinstance(expected, _COLLECTIONS) else [expected]
        for value in values:
            if isinstance(value, (Mapping, *_COLLECTIONS)):
                raise ValidationError(
                    f"Target criterion '{attribute}' holds a nested value",
                    details={"attribute": attribute},
                )


def matches_target(criteria: Optional[Mapping[str, Any]], context: Mapping[str, Any]) -> bool:
    """True when every criterion is satisfied by the context."""
    if not criteria:
        return True
    if not isinstance(criteria, Mapping):
        validate_criteria(criteria)
    for attribute, expected in criteria.items():
        if attribute not in context or context[attribute] is None:
            return False
        try:
            matched = _matches_value(context[attribute], expected)
        except TypeError as e:
            raise ValidationError(
                f"Target criterion '{attribute}' cannot be compared: {e}",
                details={"attribute": attribute},
            ) from e
        if not matched:
            return False
    return True
