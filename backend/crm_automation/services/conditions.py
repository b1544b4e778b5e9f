import logging
from typing import Any, Callable, Dict, List, Optional

from crm_automation.exceptions import UnknownOperatorError
from crm_automation.models.automation import Condition

logger = logging.getLogger(__name__)


class _Missing:
    def __repr__(self):
        return "<missing>"


MISSING = _Missing()

CUSTOM_FIELDS_ALIAS = "customFields."
ENTITY_PREFIXES = ("contact", "deal")


def resolve_field(snapshot: Optional[Dict[str, Any]], field: str) -> Any:
    """Walk a dotted path through the snapshot; MISSING when any segment is absent."""
    if not snapshot or not field:
        return MISSING

    path = field
    if path.startswith(CUSTOM_FIELDS_ALIAS):
        path = "custom_fields." + path[len(CUSTOM_FIELDS_ALIAS):]

    parts = path.split(".")
    if len(parts) > 1 and parts[0] in ENTITY_PREFIXES and parts[0] not in snapshot:
        parts = parts[1:]

    current: Any = snapshot
    for part in parts:
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            logger.debug(f"[CONDITIONS] Field '{field}' not found in snapshot, treating as missing")
            return MISSING
    return current


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None or value is MISSING:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _is_empty(actual: Any, expected: Any = None) -> bool:
    return actual is MISSING or actual is None or actual == "" or actual == [] or actual == {}


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, (int, float)) or isinstance(expected, (int, float)):
        left, right = _to_number(actual), _to_number(expected)
        if left is not None and right is not None:
            return left == right
    return actual == expected


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, (list, tuple, set)):
        return expected in actual
    if isinstance(actual, str) and isinstance(expected, str):
        return expected in actual
    return False


def _not_contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, (list, tuple, set)):
        return expected not in actual
    if isinstance(actual, str) and isinstance(expected, str):
        return expected not in actual
    return False


def _numeric(compare: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def apply(actual: Any, expected: Any) -> bool:
        left, right = _to_number(actual), _to_number(expected)
        if left is None or right is None:
            return False
        return compare(left, right)
    return apply


def _has_tag(actual: Any, expected: Any) -> bool:
    return isinstance(actual, (list, tuple, set)) and expected in actual


def _not_has_tag(actual: Any, expected: Any) -> bool:
    return isinstance(actual, (list, tuple, set)) and expected not in actual


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": _equals,
    "not_equals": lambda actual, expected: not _equals(actual, expected),
    "contains": _contains,
    "not_contains": _not_contains,
    "greater_than": _numeric(lambda a, b: a > b),
    "less_than": _numeric(lambda a, b: a < b),
    "greater_than_or_equal": _numeric(lambda a, b: a >= b),
    "less_than_or_equal": _numeric(lambda a, b: a <= b),
    "is_empty": _is_empty,
    "is_not_empty": lambda actual, expected: not _is_empty(actual),
    "has_tag": _has_tag,
    "not_has_tag": _not_has_tag,
}

KNOWN_OPERATORS = frozenset(OPERATORS)

TAG_OPERATORS = ("has_tag", "not_has_tag")


def apply_operator(actual: Any, operator: str, expected: Any) -> bool:
    if operator not in OPERATORS:
        raise UnknownOperatorError(operator)
    # A missing field fails every operator except is_empty
    if actual is MISSING and operator != "is_empty":
        return False
    return bool(OPERATORS[operator](actual, expected))


def evaluate_clause(condition: Condition, snapshot: Optional[Dict[str, Any]]) -> bool:
    field = condition.field
    if condition.operator in TAG_OPERATORS and not field:
        field = "tags"
    actual = resolve_field(snapshot, field)
    return apply_operator(actual, condition.operator, condition.value)


def evaluate(conditions: List[Condition], snapshot: Optional[Dict[str, Any]]) -> bool:
    """
    Fold the clauses left to right. The first clause seeds the result; each later
    clause combines with it through its own logic (AND unless OR). An empty list
    is vacuously true.

    An unknown operator makes the whole list false.
    """
    result = True
    for position, condition in enumerate(conditions):
        try:
            clause = evaluate_clause(condition, snapshot)
        except UnknownOperatorError:
            logger.warning(f"[CONDITIONS] Unknown operator '{condition.operator}' on field '{condition.field}', treating as no match")
            return False
        except Exception as e:
            # Fail closed on evaluation errors
            logger.warning(f"[CONDITIONS] Failed to evaluate {condition.field} {condition.operator}: {e}", exc_info=True)
            clause = False

        if position == 0:
            result = clause
        elif condition.logic == "OR":
            result = result or clause
        else:
            result = result and clause
    return result


def unknown_operators(conditions: List[Condition]) -> List[str]:
    return [c.operator for c in conditions if c.operator not in KNOWN_OPERATORS]
