import logging
import math
from typing import Any

from ruleflow.core.observability import log_event

logger = logging.getLogger("ruleflow.conditions")

CONDITION_OPERATORS = (
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "greater_than",
    "less_than",
    "is_set",
    "is_not_set",
    "in_list",
)

_MISSING = object()


def evaluate_conditions(conditions: list[dict[str, Any]] | None, event_data: dict[str, Any] | None) -> bool:
    """AND-combine every condition term against the event-data bag.

    An empty list matches. Type mismatches never raise: numeric comparisons
    against values that do not coerce evaluate False, and an operator outside
    CONDITION_OPERATORS evaluates True.
    """
    if not conditions:
        return True
    bag = event_data if isinstance(event_data, dict) else {}
    for condition in conditions:
        if not isinstance(condition, dict):
            continue
        if not evaluate_condition(condition, bag):
            return False
    return True


def evaluate_condition(condition: dict[str, Any], event_data: dict[str, Any]) -> bool:
    field = str(condition.get("field") or "").strip()
    operator = str(condition.get("operator") or "").strip().lower()
    expected = condition.get("value")
    actual = resolve_field(event_data, field)

    if operator == "is_set":
        return _is_set(actual)
    if operator == "is_not_set":
        return not _is_set(actual)
    if operator == "equals":
        return _strict_equals(actual, expected)
    if operator == "not_equals":
        return not _strict_equals(actual, expected)
    if operator == "contains":
        return _as_text(expected) in _as_text(actual)
    if operator == "not_contains":
        return _as_text(expected) not in _as_text(actual)
    if operator == "greater_than":
        return _to_number(actual) > _to_number(expected)
    if operator == "less_than":
        return _to_number(actual) < _to_number(expected)
    if operator == "in_list":
        if not isinstance(expected, list):
            return False
        return any(_strict_equals(actual, item) for item in expected)

    log_event(logger, "condition.unknown_operator", level=logging.DEBUG, field=field, operator=operator)
    return True


def resolve_field(container: Any, path: str) -> Any:
    """Descend a dot-path into nested dicts and lists; missing segments resolve to the _MISSING sentinel."""
    normalized = (path or "").strip()
    if not normalized:
        return _MISSING

    current: Any = container
    for part in normalized.split("."):
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
            continue
        if isinstance(current, list):
            if not part.isdigit():
                return _MISSING
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
            continue
        return _MISSING
    return current


def is_missing(value: Any) -> bool:
    return value is _MISSING


def resolve_value(container: Any, path: str) -> Any:
    value = resolve_field(container, path)
    return None if value is _MISSING else value


def _is_set(value: Any) -> bool:
    return value is not _MISSING and value is not None


def _strict_equals(left: Any, right: Any) -> bool:
    if left is _MISSING:
        return False
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    left_numeric = isinstance(left, (int, float))
    right_numeric = isinstance(right, (int, float))
    if left_numeric != right_numeric:
        return False
    return left == right


def _as_text(value: Any) -> str:
    if value is _MISSING or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, list):
        return ",".join(_as_text(item) for item in value)
    return str(value)


def _to_number(value: Any) -> float:
    if value is _MISSING or isinstance(value, (list, dict)):
        return math.nan
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        return math.nan
