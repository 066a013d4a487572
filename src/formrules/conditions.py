from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

RELATIONAL_OPERATORS = ("gt", "gte", "lt", "lte")
OPERATOR_ALIASES = {"not_in": "notIn", "not_empty": "notEmpty"}
COMPOUND_KEYS = ("and", "or", "not")


@dataclass(slots=True, frozen=True)
class DeclaredPredicate:
    """Callable condition that states which fields it reads."""

    func: Callable[[Mapping[str, Any]], Any]
    dependencies: tuple[str, ...] = ()

    def __call__(self, values: Mapping[str, Any]) -> bool:
        return bool(self.func(values))


def lookup_path(values: Mapping[str, Any] | None, path: str) -> Any:
    if not values or not path:
        return None
    if path in values:
        return values[path]

    current: Any = values
    for segment in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(segment)
        elif isinstance(current, Sequence) and not isinstance(current, str) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def assign_path(target: MutableMapping[str, Any], path: str, value: Any) -> None:
    segments = path.split(".")
    current = target
    for segment in segments[:-1]:
        child = current.get(segment)
        if not isinstance(child, MutableMapping):
            child = {}
            current[segment] = child
        current = child
    current[segments[-1]] = value


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    return False


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def strict_equals(left: Any, right: Any) -> bool:
    # booleans only ever match booleans: 0 must not match False
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    if is_number(left) and is_number(right):
        return left == right
    if type(left) is not type(right) and not (isinstance(left, str) and isinstance(right, str)):
        return False
    return left == right


def _contains(candidates: Any, value: Any) -> bool:
    return any(strict_equals(value, candidate) for candidate in candidates)


def is_simple_condition(condition: Any) -> bool:
    return isinstance(condition, Mapping) and "field" in condition


def _evaluate_simple(condition: Mapping[str, Any], values: Mapping[str, Any]) -> bool:
    field_path = condition.get("field")
    if not isinstance(field_path, str) or not field_path:
        return False
    actual = lookup_path(values, field_path)
    normalized = {OPERATOR_ALIASES.get(key, key): operand for key, operand in condition.items()}

    if "eq" in normalized:
        return strict_equals(actual, normalized["eq"])
    if "ne" in normalized:
        return not strict_equals(actual, normalized["ne"])

    for operator in RELATIONAL_OPERATORS:
        if operator not in normalized:
            continue
        operand = normalized[operator]
        if not is_number(actual) or not is_number(operand):
            return False
        if operator == "gt":
            return actual > operand
        if operator == "gte":
            return actual >= operand
        if operator == "lt":
            return actual < operand
        return actual <= operand

    if "in" in normalized:
        candidates = normalized["in"]
        return isinstance(candidates, (list, tuple, set, frozenset)) and _contains(candidates, actual)
    if "notIn" in normalized:
        candidates = normalized["notIn"]
        return isinstance(candidates, (list, tuple, set, frozenset)) and not _contains(candidates, actual)

    if "empty" in normalized:
        return is_empty(actual) if normalized["empty"] else not is_empty(actual)
    if "notEmpty" in normalized:
        return not is_empty(actual) if normalized["notEmpty"] else is_empty(actual)

    return False


def _evaluate_compound(condition: Mapping[str, Any], values: Mapping[str, Any]) -> bool:
    if "and" in condition:
        members = condition["and"]
        if not isinstance(members, (list, tuple)):
            return False
        return all(evaluate_condition(member, values) for member in members)
    if "or" in condition:
        members = condition["or"]
        if not isinstance(members, (list, tuple)):
            return False
        return any(evaluate_condition(member, values) for member in members)
    if "not" in condition:
        return not evaluate_condition(condition["not"], values)
    return False


def evaluate_condition(condition: Any, values: Mapping[str, Any] | None) -> bool:
    if condition is None:
        return True
    snapshot = values or {}

    if callable(condition):
        try:
            return bool(condition(snapshot))
        except Exception:
            logger.warning("condition_predicate_failed", exc_info=True)
            return False

    if is_simple_condition(condition):
        return _evaluate_simple(condition, snapshot)

    if isinstance(condition, Mapping) and any(key in condition for key in COMPOUND_KEYS):
        return _evaluate_compound(condition, snapshot)

    return False


def extract_condition_dependencies(condition: Any) -> set[str]:
    dependencies: set[str] = set()
    _collect_dependencies(condition, dependencies)
    return dependencies


def _collect_dependencies(condition: Any, dependencies: set[str]) -> None:
    if condition is None:
        return
    if isinstance(condition, DeclaredPredicate):
        dependencies.update(condition.dependencies)
        return
    if callable(condition) or not isinstance(condition, Mapping):
        return
    if "field" in condition:
        if isinstance(condition["field"], str) and condition["field"]:
            dependencies.add(condition["field"])
        return
    for key in ("and", "or"):
        members = condition.get(key)
        if isinstance(members, (list, tuple)):
            for member in members:
                _collect_dependencies(member, dependencies)
    if "not" in condition:
        _collect_dependencies(condition["not"], dependencies)


def is_opaque_condition(condition: Any) -> bool:
    """True when the condition tree holds a callable without declared dependencies."""
    if condition is None or isinstance(condition, DeclaredPredicate):
        return False
    if callable(condition):
        return True
    if not isinstance(condition, Mapping) or "field" in condition:
        return False
    members: Iterable[Any] = []
    for key in ("and", "or"):
        if isinstance(condition.get(key), (list, tuple)):
            members = [*members, *condition[key]]
    if "not" in condition:
        members = [*members, condition["not"]]
    return any(is_opaque_condition(member) for member in members)
