from __future__ import annotations

import copy
import logging
from collections import deque
from collections.abc import Iterable, Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from .compute import evaluate_compute, values_differ
from .conditions import assign_path, lookup_path
from .field_state import FieldState, compute_all_field_states, get_watch_fields
from .parser import ParsedSchema, merge_default_values, parse_schema
from .schema import FieldCategory, FieldSchema
from .validation import ValidationResult, validate_values

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class WriteOptions:
    """How a host should treat a value write in its dirty/touched bookkeeping."""

    dirty: bool
    touched: bool
    validate: bool


USER_WRITE = WriteOptions(dirty=True, touched=True, validate=True)
SYSTEM_WRITE = WriteOptions(dirty=False, touched=False, validate=False)


class ValueStore(Protocol):
    def get(self, path: str) -> Any: ...

    def set(self, path: str, value: Any, options: WriteOptions) -> None: ...


class DictValueStore:
    """In-memory value store that records which paths were written by users."""

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self.values: dict[str, Any] = dict(values or {})
        self.dirty: set[str] = set()
        self.touched: set[str] = set()

    def get(self, path: str) -> Any:
        return lookup_path(self.values, path)

    def set(self, path: str, value: Any, options: WriteOptions = USER_WRITE) -> None:
        _write(self.values, path, value)
        if options.dirty:
            self.dirty.add(path)
        if options.touched:
            self.touched.add(path)

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self.values)


@dataclass(slots=True)
class RecomputeResult:
    values: dict[str, Any]
    field_states: dict[str, FieldState]
    computed_writes: dict[str, Any] = field(default_factory=dict)
    auto_clear_writes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "values": self.values,
            "field_states": {name: state.to_dict() for name, state in self.field_states.items()},
            "computed_writes": self.computed_writes,
            "auto_clear_writes": self.auto_clear_writes,
        }


def _write(target: MutableMapping[str, Any], path: str, value: Any) -> None:
    if path in target or "." not in path:
        target[path] = value
    else:
        assign_path(target, path, value)


def _has_value(value: Any) -> bool:
    return value is not None and value != ""


def _tracked_paths(parsed: ParsedSchema) -> set[str]:
    return set(parsed.field_map) | set(parsed.dependency_graph)


def changed_paths(
    parsed: ParsedSchema,
    previous: Mapping[str, Any] | None,
    current: Mapping[str, Any] | None,
) -> set[str]:
    return {
        path
        for path in _tracked_paths(parsed)
        if values_differ(lookup_path(previous, path), lookup_path(current, path), epsilon=0.0)
    }


def _auto_clear(
    parsed: ParsedSchema,
    working: dict[str, Any],
    changed: set[str],
) -> dict[str, Any]:
    writes: dict[str, Any] = {}
    visited: set[str] = set()
    queue = deque(sorted(changed))
    while queue:
        source = queue.popleft()
        for dependent in sorted(parsed.dependency_graph.get(source, ())):
            field_schema = parsed.field_map.get(dependent)
            if field_schema is None or not field_schema.dependencies or source not in field_schema.dependencies:
                continue
            # a value the user just entered is not wiped by a sibling change
            if dependent in visited or dependent in changed:
                continue
            visited.add(dependent)
            if not _has_value(lookup_path(working, dependent)):
                continue
            _write(working, dependent, None)
            writes[dependent] = None
            queue.append(dependent)
    return writes


def _run_computes(
    parsed: ParsedSchema,
    working: dict[str, Any],
    dirty: set[str] | None,
) -> dict[str, Any]:
    writes: dict[str, Any] = {}
    for name in parsed.compute_order:
        spec = parsed.compute_specs[name]
        if spec.program is None:
            continue
        if dirty is not None and not dirty.intersection(spec.dependencies):
            continue
        result = evaluate_compute(spec.program, working, spec.dependencies, spec.precision, spec.round_mode)
        if result is None or not values_differ(lookup_path(working, name), result):
            continue
        _write(working, name, result)
        writes[name] = result
        if dirty is not None:
            dirty.add(name)
    return writes


def recompute(
    parsed: ParsedSchema,
    previous: Mapping[str, Any] | None,
    current: Mapping[str, Any],
    global_disabled: bool = False,
    global_readonly: bool = False,
) -> RecomputeResult:
    """Derive every write and field state that follows from moving ``previous`` to ``current``.

    With ``previous=None`` this is an initial pass: nothing is auto-cleared and
    every computed field is evaluated. Otherwise only computed fields whose
    dependencies changed (directly, through an auto-clear, or through an
    earlier computed write) are evaluated.
    """
    working = copy.deepcopy(dict(current or {}))

    if previous is None:
        auto_clear_writes: dict[str, Any] = {}
        computed_writes = _run_computes(parsed, working, None)
    else:
        changed = changed_paths(parsed, previous, current)
        auto_clear_writes = _auto_clear(parsed, working, changed)
        computed_writes = _run_computes(parsed, working, changed | set(auto_clear_writes))

    for name in computed_writes:
        auto_clear_writes.pop(name, None)

    if computed_writes or auto_clear_writes:
        logger.debug(
            "recompute_writes",
            extra={"computed": sorted(computed_writes), "cleared": sorted(auto_clear_writes)},
        )
    return RecomputeResult(
        values=working,
        field_states=compute_all_field_states(parsed, working, global_disabled, global_readonly),
        computed_writes=computed_writes,
        auto_clear_writes=auto_clear_writes,
    )


def apply_writes(store: ValueStore, result: RecomputeResult) -> None:
    for path, value in result.auto_clear_writes.items():
        store.set(path, value, SYSTEM_WRITE)
    for path, value in result.computed_writes.items():
        store.set(path, value, SYSTEM_WRITE)


def _collect_submission(
    fields: Iterable[FieldSchema],
    source: Mapping[str, Any],
    root_values: Mapping[str, Any],
    payload: dict[str, Any],
) -> None:
    for field_schema in fields:
        if field_schema.category is FieldCategory.GROUP:
            _collect_submission(field_schema.columns, source, root_values, payload)
            continue
        if field_schema.no_submit:
            continue

        value = lookup_path(source, field_schema.name)
        if field_schema.category is FieldCategory.LIST and field_schema.columns and isinstance(value, list):
            rows = []
            for row in value:
                if isinstance(row, Mapping):
                    row_payload: dict[str, Any] = {}
                    _collect_submission(field_schema.columns, row, root_values, row_payload)
                    rows.append(row_payload)
                else:
                    rows.append(row)
            value = rows
        if field_schema.transform is not None:
            value = field_schema.transform(value, root_values)
        assign_path(payload, field_schema.name, value)


def build_submission(parsed: ParsedSchema, values: Mapping[str, Any]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    _collect_submission(parsed.fields, values or {}, values or {}, payload)
    return payload


class FormEngine:
    def __init__(self, parsed: ParsedSchema) -> None:
        self.parsed = parsed
        self.watch_fields = get_watch_fields(parsed)

    @classmethod
    def from_schema(cls, schema: Any) -> FormEngine:
        return cls(parse_schema(schema))

    def initial_values(self, external_values: Mapping[str, Any] | None = None) -> dict[str, Any]:
        values = merge_default_values(self.parsed, external_values)
        return recompute(self.parsed, None, values).values

    def field_states(
        self,
        values: Mapping[str, Any],
        global_disabled: bool = False,
        global_readonly: bool = False,
    ) -> dict[str, FieldState]:
        return compute_all_field_states(self.parsed, values, global_disabled, global_readonly)

    def compute(self, values: Mapping[str, Any]) -> dict[str, Any]:
        computed: dict[str, Any] = {}
        for name, spec in self.parsed.compute_specs.items():
            if spec.program is None:
                computed[name] = None
                continue
            computed[name] = evaluate_compute(spec.program, values, spec.dependencies, spec.precision, spec.round_mode)
        return computed

    def recompute(
        self,
        previous: Mapping[str, Any] | None,
        current: Mapping[str, Any],
        global_disabled: bool = False,
        global_readonly: bool = False,
    ) -> RecomputeResult:
        return recompute(self.parsed, previous, current, global_disabled, global_readonly)

    def validate(self, values: Mapping[str, Any]) -> ValidationResult:
        return validate_values(self.parsed, values)

    def submission(self, values: Mapping[str, Any]) -> dict[str, Any]:
        return build_submission(self.parsed, values)
