"""Condition expressions for edges, condition nodes and trigger predicates.

Conditions are parsed once, when a workflow definition is built, and evaluated
against a scope dictionary at execution time. Two input forms are accepted:

- structured dictionaries, as produced by the workflow editor::

    {"field": "lead.score", "operator": "greater_than_or_equal", "value": 50}
    {"all": [{"field": "status", "operator": "equals", "value": "new"}, "amount > 100"]}

- a compact string form ``"<path> <operator> <literal>"``::

    "amount > 100"
    "lead.status == 'qualified'"
    "email is_not_empty"
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from crm_workflows.exceptions import ConditionError

__all__ = [
    "OPERATORS",
    "Comparison",
    "Condition",
    "ConditionGroup",
    "parse_condition",
    "resolve_path",
]

_MISSING = object()


def resolve_path(scope: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path such as ``lead.score`` against a scope.

    Args:
        scope: Mapping to resolve against.
        path: Dotted path; integer segments index into lists.

    Returns:
        The value found, or None if any segment is missing.
    """
    current: Any = scope
    for segment in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(segment, _MISSING)
        elif isinstance(current, (list, tuple)) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return None
    return current


def _as_number(value: Any, expression: Any) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConditionError(expression, f"cannot compare {value!r} as a number") from e


def _numeric(compare: Callable[[float, float], bool]) -> Callable[[Any, Any, Any], bool]:
    def _op(actual: Any, expected: Any, expression: Any) -> bool:
        left = _as_number(actual, expression)
        right = _as_number(expected, expression)
        if left is None or right is None:
            return False
        return compare(left, right)

    return _op


def _equals(actual: Any, expected: Any, expression: Any) -> bool:
    if actual == expected:
        return True
    # Form and CRM payloads frequently carry numbers as strings.
    if isinstance(actual, (int, float, str)) and isinstance(expected, (int, float, str)):
        return str(actual) == str(expected)
    return False


def _contains(actual: Any, expected: Any, expression: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, (list, tuple, set, frozenset)):
        return expected in actual
    return str(expected) in str(actual)


def _is_empty(actual: Any, expected: Any, expression: Any) -> bool:
    return actual is None or actual == "" or (isinstance(actual, (list, tuple, dict, set)) and not actual)


def _in(actual: Any, expected: Any, expression: Any) -> bool:
    if not isinstance(expected, (list, tuple, set, frozenset)):
        raise ConditionError(expression, "operator 'in' needs a list value")
    return actual in expected


OPERATORS: dict[str, Callable[[Any, Any, Any], bool]] = {
    "equals": _equals,
    "not_equals": lambda a, e, x: not _equals(a, e, x),
    "contains": _contains,
    "not_contains": lambda a, e, x: not _contains(a, e, x),
    "greater_than": _numeric(lambda a, b: a > b),
    "less_than": _numeric(lambda a, b: a < b),
    "greater_than_or_equal": _numeric(lambda a, b: a >= b),
    "less_than_or_equal": _numeric(lambda a, b: a <= b),
    "is_empty": _is_empty,
    "is_not_empty": lambda a, e, x: not _is_empty(a, e, x),
    "starts_with": lambda a, e, x: a is not None and str(a).startswith(str(e)),
    "ends_with": lambda a, e, x: a is not None and str(a).endswith(str(e)),
    "in": _in,
}
"""Operator name to evaluator mapping."""

_ALIASES = {
    "==": "equals",
    "=": "equals",
    "eq": "equals",
    "!=": "not_equals",
    "ne": "not_equals",
    ">": "greater_than",
    "gt": "greater_than",
    "<": "less_than",
    "lt": "less_than",
    ">=": "greater_than_or_equal",
    "gte": "greater_than_or_equal",
    "<=": "less_than_or_equal",
    "lte": "less_than_or_equal",
}

_UNARY = frozenset({"is_empty", "is_not_empty"})

_EXPRESSION = re.compile(
    r"""^\s*(?P<field>[A-Za-z_][\w.]*)\s*
        (?P<op>>=|<=|==|!=|=|>|<|[A-Za-z_]+)
        (?:\s*(?P<value>.+?))?\s*$""",
    re.VERBOSE,
)


def _normalize_operator(operator: str, raw: Any) -> str:
    name = _ALIASES.get(operator, operator)
    if name not in OPERATORS:
        raise ConditionError(raw, f"unknown operator '{operator}'")
    return name


def _parse_literal(text: str, raw: Any) -> Any:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    try:
        return json.loads(text)
    except ValueError:
        pass
    if text.lower() in {"true", "false"}:
        return text.lower() == "true"
    if text.lower() in {"none", "null"}:
        return None
    raise ConditionError(raw, f"cannot parse value {text!r}")


@dataclass(frozen=True)
class Condition(ABC):
    """Base class for parsed conditions."""

    @abstractmethod
    def evaluate(self, scope: Mapping[str, Any]) -> bool:
        """Evaluate the condition against a scope.

        Args:
            scope: Variables visible to the condition.

        Returns:
            Whether the condition holds.

        Raises:
            ConditionError: If the condition cannot be evaluated.
        """

    @abstractmethod
    def to_dict(self) -> dict[str, Any]:
        """Serialize to the structured dictionary form."""


@dataclass(frozen=True)
class Comparison(Condition):
    """Compare the value at ``field`` with ``value`` using ``operator``.

    Attributes:
        field: Dotted path into the scope.
        operator: Canonical operator name (a key of ``OPERATORS``).
        value: Right-hand operand; ignored by unary operators.
    """

    field: str
    operator: str
    value: Any = None

    def evaluate(self, scope: Mapping[str, Any]) -> bool:
        actual = resolve_path(scope, self.field)
        return bool(OPERATORS[self.operator](actual, self.value, self.to_dict()))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"field": self.field, "operator": self.operator}
        if self.operator not in _UNARY:
            data["value"] = self.value
        return data

    def __str__(self) -> str:
        if self.operator in _UNARY:
            return f"{self.field} {self.operator}"
        return f"{self.field} {self.operator} {self.value!r}"


@dataclass(frozen=True)
class ConditionGroup(Condition):
    """Combine conditions with ``all`` (AND) or ``any`` (OR) logic."""

    logic: str
    conditions: tuple[Condition, ...] = field(default_factory=tuple)

    def evaluate(self, scope: Mapping[str, Any]) -> bool:
        results = (condition.evaluate(scope) for condition in self.conditions)
        return all(results) if self.logic == "all" else any(results)

    def to_dict(self) -> dict[str, Any]:
        return {self.logic: [condition.to_dict() for condition in self.conditions]}

    def __str__(self) -> str:
        joiner = " and " if self.logic == "all" else " or "
        return "(" + joiner.join(str(condition) for condition in self.conditions) + ")"


def _parse_expression(raw: str) -> Comparison:
    match = _EXPRESSION.match(raw)
    if match is None:
        raise ConditionError(raw, "expected '<field> <operator> <value>'")
    operator = _normalize_operator(match.group("op"), raw)
    value_text = match.group("value")
    if operator in _UNARY:
        if value_text:
            raise ConditionError(raw, f"operator '{operator}' takes no value")
        return Comparison(field=match.group("field"), operator=operator)
    if not value_text:
        raise ConditionError(raw, f"operator '{operator}' needs a value")
    value = _parse_literal(value_text, raw)
    if operator == "in":
        if not isinstance(value, list):
            raise ConditionError(raw, "operator 'in' needs a list value")
        value = tuple(value)
    return Comparison(field=match.group("field"), operator=operator, value=value)


def parse_condition(raw: Any) -> Condition:
    """Parse a raw condition into a :class:`Condition`.

    Args:
        raw: A Condition, a structured dict, or a compact string expression.

    Returns:
        The parsed condition.

    Raises:
        ConditionError: If the input is malformed.

    Example:
        >>> parse_condition("amount > 100").evaluate({"amount": 150})
        True
    """
    if isinstance(raw, Condition):
        return raw
    if isinstance(raw, str):
        return _parse_expression(raw)
    if isinstance(raw, Mapping):
        for logic, legacy in (("all", "and"), ("any", "or")):
            members = raw.get(logic, raw.get(legacy))
            if members is not None:
                if not isinstance(members, (list, tuple)) or not members:
                    raise ConditionError(raw, f"'{logic}' needs a non-empty list")
                return ConditionGroup(logic=logic, conditions=tuple(parse_condition(m) for m in members))
        if "conditions" in raw:
            logic = str(raw.get("logic", "and")).lower()
            if logic not in {"and", "or", "all", "any"}:
                raise ConditionError(raw, f"unknown logic '{raw.get('logic')}'")
            return parse_condition({"all" if logic in {"and", "all"} else "any": raw["conditions"]})
        field_name = raw.get("field")
        if not isinstance(field_name, str) or not field_name:
            raise ConditionError(raw, "missing 'field'")
        operator = _normalize_operator(str(raw.get("operator", "equals")), raw)
        if operator not in _UNARY and "value" not in raw:
            raise ConditionError(raw, f"operator '{operator}' needs a value")
        if operator == "in" and not isinstance(raw.get("value"), (list, tuple)):
            raise ConditionError(raw, "operator 'in' needs a list value")
        value = raw.get("value")
        return Comparison(field=field_name, operator=operator, value=tuple(value) if operator == "in" else value)
    raise ConditionError(raw, f"unsupported condition type {type(raw).__name__}")
