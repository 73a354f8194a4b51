"""
Predicate trees for policy rules.

A rule document is parsed into a small tagged tree that is evaluated
against a flat context dict:

    {"and": [<node>, ...]}
    {"or": [<node>, ...]}
    {"not": <node>}
    {"attribute": "country", "operator": "in", "value": ["US", "CA"]}
    true / false / {"const": true}

A full rule document wraps the tree with the outcome it implies:

    {"effect": "deny", "restrictions": ["p2p"], "when": <node>}

Parsing rejects anything it does not recognise with ValidationError, so the
engine can skip a malformed policy instead of guessing.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Mapping, Union

from pew_access.platform.errors import ValidationError
from pew_access.policies.models import PolicyEffect


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_THAN = "less_than"
    LESS_OR_EQUAL = "less_or_equal"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    EXISTS = "exists"
    BETWEEN = "between"


_MISSING = object()


@dataclass(frozen=True)
class Constant:
    value: bool

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return self.value


@dataclass(frozen=True)
class Compare:
    attribute: str
    operator: Operator
    value: Any = None

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        actual = context.get(self.attribute, _MISSING)
        if self.operator == Operator.EXISTS:
            present = actual is not _MISSING and actual is not None
            return present if self.value is None else present == bool(self.value)
        if actual is _MISSING or actual is None:
            raise ValidationError(
                f"Context attribute '{self.attribute}' required by rule is missing",
                details={"attribute": self.attribute, "operator": self.operator.value},
            )
        try:
            return _compare(self.operator, actual, self.value)
        except TypeError as e:
            raise ValidationError(
                f"Cannot apply '{self.operator.value}' to attribute '{self.attribute}'",
                details={"attribute": self.attribute, "error": str(e)},
            ) from e


@dataclass(frozen=True)
class Not:
    child: "Predicate"

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return not self.child.evaluate(context)


@dataclass(frozen=True)
class And:
    children: tuple["Predicate", ...]

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return all(child.evaluate(context) for child in self.children)


@dataclass(frozen=True)
class Or:
    children: tuple["Predicate", ...]

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return any(child.evaluate(context) for child in self.children)


Predicate = Union[Constant, Compare, Not, And, Or]

ALWAYS_TRUE = Constant(True)


@dataclass(frozen=True)
class RuleSet:
    """Parsed rule document: outcome plus the condition that triggers it."""
    effect: PolicyEffect = PolicyEffect.ALLOW
    restrictions: tuple[str, ...] = field(default_factory=tuple)
    when: Predicate = ALWAYS_TRUE

    @property
    def allows(self) -> bool:
        return self.effect == PolicyEffect.ALLOW


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------

def _coerce(actual: Any, expected: Any) -> Any:
    """Let ISO strings in rules compare against datetime context values."""
    if isinstance(actual, datetime) and isinstance(expected, str):
        try:
            parsed = datetime.fromisoformat(expected)
        except ValueError:
            return expected
        if parsed.tzinfo is None and actual.tzinfo is not None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    if isinstance(actual, date) and not isinstance(actual, datetime) and isinstance(expected, str):
        try:
            return date.fromisoformat(expected)
        except ValueError:
            return expected
    return expected


def _compare(operator: Operator, actual: Any, expected: Any) -> bool:
    if operator == Operator.EQUALS:
        return actual == _coerce(actual, expected)
    if operator == Operator.NOT_EQUALS:
        return actual != _coerce(actual, expected)
    if operator == Operator.GREATER_THAN:
        return actual > _coerce(actual, expected)
    if operator == Operator.GREATER_OR_EQUAL:
        return actual >= _coerce(actual, expected)
    if operator == Operator.LESS_THAN:
        return actual < _coerce(actual, expected)
    if operator == Operator.LESS_OR_EQUAL:
        return actual <= _coerce(actual, expected)
    if operator == Operator.IN:
        return actual in expected
    if operator == Operator.NOT_IN:
        return actual not in expected
    if operator == Operator.CONTAINS:
        return expected in actual
    if operator == Operator.BETWEEN:
        low, high = (_coerce(actual, v) for v in expected)
        if low <= high:
            return low <= actual <= high
        # Wrapping range, e.g. hours 22..6
        return actual >= low or actual <= high
    raise ValidationError(f"Unsupported operator '{operator}'")


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def parse_predicate(node: Any) -> Predicate:
    """Parse one node of a rule document into a predicate."""
    if isinstance(node, bool):
        return Constant(node)
    if not isinstance(node, Mapping):
        raise ValidationError(
            f"Predicate node must be an object or boolean, got {type(node).__name__}"
        )

    if "const" in node:
        if not isinstance(node["const"], bool):
            raise ValidationError("'const' node must hold a boolean")
        return Constant(node["const"])

    if "and" in node or "or" in node:
        tag = "and" if "and" in node else "or"
        children = node[tag]
        if not isinstance(children, list):
            raise ValidationError(f"'{tag}' node must hold a list")
        parsed = tuple(parse_predicate(child) for child in children)
        return And(parsed) if tag == "and" else Or(parsed)

    if "not" in node:
        return Not(parse_predicate(node["not"]))

    if "attribute" in node:
        attribute = node["attribute"]
        if not isinstance(attribute, str) or not attribute:
            raise ValidationError("Comparison 'attribute' must be a non-empty string")
        try:
            operator = Operator(node.get("operator", Operator.EQUALS.value))
        except ValueError:
            raise ValidationError(
                f"Unknown operator '{node.get('operator')}'",
                details={"attribute": attribute},
            )
        value = node.get("value")
        _validate_operand(operator, attribute, value)
        if operator in (Operator.IN, Operator.NOT_IN):
            value = tuple(value)
        return Compare(attribute=attribute, operator=operator, value=value)

    raise ValidationError(
        "Unrecognised predicate node",
        details={"keys": sorted(str(k) for k in node.keys())},
    )


def _validate_operand(operator: Operator, attribute: str, value: Any) -> None:
    if operator in (Operator.IN, Operator.NOT_IN) and not isinstance(value, (list, tuple)):
        raise ValidationError(
            f"Operator '{operator.value}' needs a list value",
            details={"attribute": attribute},
        )
    if operator == Operator.BETWEEN and (
        not isinstance(value, (list, tuple)) or len(value) != 2
    ):
        raise ValidationError(
            "Operator 'between' needs a [low, high] pair",
            details={"attribute": attribute},
        )
    if operator not in (Operator.EXISTS,) and value is None:
        raise ValidationError(
            f"Operator '{operator.value}' needs a value",
            details={"attribute": attribute},
        )


def parse_rules(document: Any) -> RuleSet:
    """
    Parse a policy's rule document.

    Missing effect means allow; missing `when` means the policy always
    applies once its target criteria match.
    """
    if document is None:
        document = {}
    if isinstance(document, bool):
        return RuleSet(when=Constant(document))
    if not isinstance(document, Mapping):
        raise ValidationError("Policy rules must be an object")

    try:
        effect = PolicyEffect(str(document.get("effect", PolicyEffect.ALLOW.value)).lower())
    except ValueError:
        raise ValidationError(
            f"Unknown policy effect '{document.get('effect')}'",
            details={"effect": document.get("effect")},
        )

    restrictions = document.get("restrictions", [])
    if not isinstance(restrictions, list) or not all(isinstance(r, str) for r in restrictions):
        raise ValidationError("Policy 'restrictions' must be a list of strings")

    when = parse_predicate(document["when"]) if "when" in document else ALWAYS_TRUE
    return RuleSet(effect=effect, restrictions=tuple(restrictions), when=when)
