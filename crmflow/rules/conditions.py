"""Condition language for business rules and workflow triggers.

A condition is a JSON-like tree evaluated against an event snapshot:

* leaf ``{"field": "stage", "operator": "equals", "value": "won"}``; ``field``
  is a dotted path into the snapshot (``$event.entity_type`` and
  ``$previous.stage`` address the event envelope and the prior snapshot);
* a list is the conjunction of its members;
* ``{"all": [...]}``, ``{"any": [...]}`` and ``{"not": cond}`` combine;
* ``None`` or an empty list is always true.

Evaluation has no side effects and never mutates the snapshot.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Dict, Mapping, Optional

from ..contracts import DomainEvent
from ..errors import ConditionError

_MISSING = object()


def build_context(event: DomainEvent) -> Dict[str, Any]:
    """Snapshot a condition is evaluated against."""
    context = dict(event.data)
    context["$event"] = {
        "event_id": event.event_id,
        "entity_type": event.entity_type,
        "entity_id": event.entity_id,
        "trigger": event.trigger,
        "actor": event.actor,
    }
    context["$previous"] = dict(event.previous)
    return context


def resolve_field(data: Mapping[str, Any], path: str) -> Any:
    """Follow a dotted ``path``; return ``None`` when any segment is missing."""
    current: Any = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
        if current is _MISSING:
            return None
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _compare(actual: Any, expected: Any) -> Optional[int]:
    if _is_number(actual) and _is_number(expected):
        return (actual > expected) - (actual < expected)
    if isinstance(actual, str) and isinstance(expected, str):
        return (actual > expected) - (actual < expected)
    return None


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, bool) or isinstance(expected, bool):
        return type(actual) is type(expected) and actual == expected
    return actual == expected


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str) and isinstance(expected, str):
        return expected.lower() in actual.lower()
    if isinstance(actual, list):
        return any(_equals(item, expected) for item in actual)
    return False


def _affix(check: Callable[[str, str], bool]) -> Callable[[Any, Any], bool]:
    def op(actual: Any, expected: Any) -> bool:
        if isinstance(actual, str) and isinstance(expected, str):
            return check(actual.lower(), expected.lower())
        return False

    return op


def _in(actual: Any, expected: Any) -> bool:
    if actual is None or not isinstance(expected, list):
        return False
    return any(_equals(actual, item) for item in expected)


def _ordered(predicate: Callable[[int], bool]) -> Callable[[Any, Any], bool]:
    def op(actual: Any, expected: Any) -> bool:
        result = _compare(actual, expected)
        return result is not None and predicate(result)

    return op


def _matches_regex(actual: Any, expected: Any) -> bool:
    if not isinstance(actual, str) or not isinstance(expected, str):
        return False
    try:
        return re.fullmatch(expected, actual) is not None
    except re.error as exc:
        raise ConditionError(f"Invalid regex {expected!r}: {exc}", {"pattern": expected})


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": _equals,
    "not_equals": lambda a, e: not _equals(a, e),
    "greater_than": _ordered(lambda r: r > 0),
    "less_than": _ordered(lambda r: r < 0),
    "greater_than_or_equal": _ordered(lambda r: r >= 0),
    "less_than_or_equal": _ordered(lambda r: r <= 0),
    "contains": _contains,
    "starts_with": _affix(str.startswith),
    "ends_with": _affix(str.endswith),
    "in": _in,
    "not_in": lambda a, e: not _in(a, e),
    "is_null": lambda a, _: a is None,
    "is_not_null": lambda a, _: a is not None,
    "matches_regex": _matches_regex,
}


def evaluate_condition(condition: Any, context: Mapping[str, Any]) -> bool:
    """Evaluate ``condition`` against ``context``; raise ``ConditionError`` if malformed."""
    if condition is None:
        return True
    if isinstance(condition, list):
        return all(evaluate_condition(c, context) for c in condition)
    if not isinstance(condition, Mapping):
        raise ConditionError(f"Unsupported condition node: {condition!r}")

    for combinator, reduce in (("all", all), ("any", any)):
        if combinator in condition:
            members = condition[combinator]
            if not isinstance(members, list):
                raise ConditionError(
                    f"'{combinator}' expects a list of conditions", {"condition": dict(condition)}
                )
            return reduce(evaluate_condition(c, context) for c in members)
    if "not" in condition:
        return not evaluate_condition(condition["not"], context)

    field = condition.get("field")
    operator = str(condition.get("operator", "equals")).lower()
    if not field or not isinstance(field, str):
        raise ConditionError("Condition needs a non-empty 'field'", {"condition": dict(condition)})
    expected = condition.get("value")
    actual = resolve_field(context, field)

    if operator == "changed_to":
        previous = resolve_field(context.get("$previous", {}), field)
        return _equals(actual, expected) and not _equals(previous, expected)

    op = OPERATORS.get(operator)
    if op is None:
        raise ConditionError(f"Unsupported operator: {operator}", {"field": field})
    return op(actual, expected)
