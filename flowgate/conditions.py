"""Condition evaluation for trigger rules and branch steps.

Expressions are JSON-shaped so they can be stored alongside workflow
definitions::

    {"field": "project.budget", "op": "gte", "value": 1000}
    {"all": [<expr>, ...]}
    {"any": [<expr>, ...]}
    {"not": <expr>}

Evaluation is pure and total: a missing field, a type mismatch or a malformed
node makes the affected leaf ``False`` instead of raising. Payload shapes vary
by event type, so this is the expected case rather than an error.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


def resolve_path(data: Any, path: str) -> Any:
    """Walk a dotted ``path`` through nested mappings and sequences.

    Returns :data:`MISSING` when any segment is absent.
    """
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_number(value: Any) -> Optional[float]:
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _compare(predicate: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def _op(actual: Any, expected: Any) -> bool:
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False
        return predicate(left, right)

    return _op


def _empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return str(expected) in actual
    if isinstance(actual, (list, tuple, set)):
        return expected in actual
    if isinstance(actual, Mapping):
        return expected in actual
    return False


def _member(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple, set)):
        return False
    return actual in expected


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda actual, expected: actual == expected,
    "ne": lambda actual, expected: actual != expected,
    "gt": _compare(lambda a, b: a > b),
    "gte": _compare(lambda a, b: a >= b),
    "lt": _compare(lambda a, b: a < b),
    "lte": _compare(lambda a, b: a <= b),
    "in": _member,
    "not_in": lambda actual, expected: isinstance(expected, (list, tuple, set))
    and actual not in expected,
    "contains": _contains,
    "exists": lambda actual, expected: True,
    "is_empty": lambda actual, expected: _empty(actual),
    "not_empty": lambda actual, expected: not _empty(actual),
}

# Aliases used by the legacy ``condition_operator`` step config.
_ALIASES = {
    "equals": "eq",
    "==": "eq",
    "not_equals": "ne",
    "!=": "ne",
    ">": "gt",
    ">=": "gte",
    "<": "lt",
    "<=": "lte",
}

OPERATORS = frozenset(_OPERATORS)


def _normalize_op(op: Any) -> Optional[str]:
    if not isinstance(op, str):
        return None
    op = op.strip().lower()
    if op in _OPERATORS:
        return op
    return _ALIASES.get(op)


def evaluate(expression: Optional[Mapping[str, Any]], payload: Mapping[str, Any]) -> bool:
    """Return whether ``payload`` satisfies ``expression``.

    An absent or empty expression always matches.
    """
    if not expression:
        return True
    return _evaluate(expression, payload)


def _evaluate(node: Any, payload: Mapping[str, Any]) -> bool:
    if not isinstance(node, Mapping):
        logger.debug(f"Ignoring malformed condition node: {node!r}")
        return False

    if "all" in node:
        children = node["all"]
        return isinstance(children, list) and all(
            _evaluate(child, payload) for child in children
        )
    if "any" in node:
        children = node["any"]
        return isinstance(children, list) and any(
            _evaluate(child, payload) for child in children
        )
    if "not" in node:
        return not _evaluate(node["not"], payload)

    field = node.get("field")
    op = _normalize_op(node.get("op", "eq"))
    if not isinstance(field, str) or op is None:
        logger.debug(f"Ignoring malformed condition leaf: {dict(node)!r}")
        return False

    actual = resolve_path(payload, field)
    if actual is MISSING:
        # Missing is "empty"; every other operator is false on a missing field.
        return op == "is_empty"
    try:
        return bool(_OPERATORS[op](actual, node.get("value")))
    except TypeError:
        return False


def validate_expression(expression: Any, path: str = "$") -> List[str]:
    """Return a list of problems found in ``expression`` (empty when valid)."""
    if expression is None:
        return []
    problems: List[str] = []
    if not isinstance(expression, Mapping):
        return [f"{path}: expected an object, got {type(expression).__name__}"]

    for key in ("all", "any"):
        if key in expression:
            children = expression[key]
            if not isinstance(children, list):
                return [f"{path}.{key}: expected a list"]
            for index, child in enumerate(children):
                problems.extend(validate_expression(child, f"{path}.{key}[{index}]"))
            return problems
    if "not" in expression:
        return validate_expression(expression["not"], f"{path}.not")

    if not isinstance(expression.get("field"), str) or not expression["field"]:
        problems.append(f"{path}: missing 'field'")
    if _normalize_op(expression.get("op", "eq")) is None:
        problems.append(f"{path}: unknown operator {expression.get('op')!r}")
    return problems


def from_legacy(field: str, operator: str, value: Any = None) -> Dict[str, Any]:
    """Build an expression from a ``condition_field``/``operator``/``value`` triple."""
    return {"field": field, "op": operator, "value": value}
