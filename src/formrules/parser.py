from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from graphlib import CycleError, TopologicalSorter
from typing import Any

from .compute import (
    ExpressionProgram,
    ExpressionSyntaxError,
    RoundMode,
    UnsafeExpressionError,
    compile_expression,
    extract_compute_dependencies,
)
from .conditions import extract_condition_dependencies, is_opaque_condition
from .schema import ComputeConfig, FieldCategory, FieldSchema, SchemaError

logger = logging.getLogger(__name__)

CONDITION_ATTRIBUTES = ("visible_when", "disabled_when", "required_when")


class SchemaCycleError(SchemaError):
    """Raised when computed fields depend on each other in a loop."""


@dataclass(slots=True, frozen=True)
class ComputeSpec:
    name: str
    source: str
    program: ExpressionProgram | None
    dependencies: tuple[str, ...]
    precision: int | None
    round_mode: RoundMode


@dataclass(slots=True, frozen=True)
class ParsedSchema:
    fields: tuple[FieldSchema, ...]
    field_map: Mapping[str, FieldSchema]
    dependency_graph: Mapping[str, frozenset[str]]
    default_values: Mapping[str, Any]
    all_fields: tuple[FieldSchema, ...]
    compute_specs: Mapping[str, ComputeSpec]
    compute_order: tuple[str, ...]
    list_members: frozenset[str]


def compute_dependencies(field: FieldSchema) -> set[str]:
    if field.compute is None:
        return set()
    if field.compute.dependencies is not None:
        return set(field.compute.dependencies)
    return extract_compute_dependencies(field.compute.expr)


def field_dependencies(field: FieldSchema) -> set[str]:
    dependencies = set(field.dependencies or ())
    for attribute in CONDITION_ATTRIBUTES:
        dependencies.update(extract_condition_dependencies(getattr(field, attribute)))
    dependencies.update(compute_dependencies(field))
    return dependencies


def _normalize_fields(schema_input: Any) -> tuple[FieldSchema, ...]:
    if isinstance(schema_input, Mapping):
        raw_fields = schema_input.get("fields")
        if not isinstance(raw_fields, (list, tuple)):
            raise SchemaError("schema requires a 'fields' list")
    elif isinstance(schema_input, (list, tuple)):
        raw_fields = schema_input
    else:
        raise SchemaError(f"unsupported schema input: {type(schema_input).__name__}")
    return tuple(FieldSchema.from_dict(raw) for raw in raw_fields)


def _check_sibling_names(fields: Iterable[FieldSchema], parent: str | None) -> None:
    seen: set[str] = set()
    for field in fields:
        if field.name in seen:
            where = f"inside '{parent}'" if parent else "at the top level"
            raise SchemaError(f"duplicate field name '{field.name}' {where}")
        seen.add(field.name)


def _compile_compute(field: FieldSchema, compute: ComputeConfig) -> ComputeSpec:
    program: ExpressionProgram | None
    try:
        program = compile_expression(compute.expr)
    except (ExpressionSyntaxError, UnsafeExpressionError) as exc:
        logger.warning(
            "compute_expression_invalid",
            extra={"field": field.name, "expression": compute.expr, "error": str(exc)},
        )
        program = None
    return ComputeSpec(
        name=field.name,
        source=compute.expr,
        program=program,
        dependencies=tuple(sorted(compute_dependencies(field))),
        precision=compute.precision,
        round_mode=compute.round_mode,
    )


def _compute_order(compute_specs: Mapping[str, ComputeSpec]) -> tuple[str, ...]:
    sorter: TopologicalSorter[str] = TopologicalSorter()
    for name, spec in compute_specs.items():
        sorter.add(name, *(dep for dep in spec.dependencies if dep in compute_specs))
    try:
        return tuple(sorter.static_order())
    except CycleError as exc:
        cycle = exc.args[1] if len(exc.args) > 1 else []
        raise SchemaCycleError(f"computed fields form a cycle: {' -> '.join(cycle)}") from exc


def parse_schema(schema_input: Any) -> ParsedSchema:
    fields = _normalize_fields(schema_input)

    field_map: dict[str, FieldSchema] = {}
    default_values: dict[str, Any] = {}
    all_fields: list[FieldSchema] = []
    list_members: set[str] = set()

    def collect(siblings: tuple[FieldSchema, ...], parent: FieldSchema | None, in_list: bool) -> None:
        _check_sibling_names(siblings, parent.name if parent else None)
        for field in siblings:
            field_map[field.name] = field
            all_fields.append(field)
            if in_list:
                list_members.add(field.name)
            if field.default_value is not None:
                default_values[field.name] = field.default_value
            if field.columns:
                collect(field.columns, field, in_list or field.category is FieldCategory.LIST)

    collect(fields, None, False)

    reverse_edges: dict[str, set[str]] = {}
    compute_specs: dict[str, ComputeSpec] = {}
    for field in all_fields:
        for attribute in CONDITION_ATTRIBUTES:
            if is_opaque_condition(getattr(field, attribute)):
                logger.warning("opaque_condition", extra={"field": field.name, "attribute": attribute})
        for dependency in field_dependencies(field):
            reverse_edges.setdefault(dependency, set()).add(field.name)
        if field.compute is not None:
            compute_specs[field.name] = _compile_compute(field, field.compute)

    compute_order = _compute_order(compute_specs)
    dependency_graph = {name: frozenset(dependents) for name, dependents in reverse_edges.items()}

    logger.info(
        "schema_parsed",
        extra={
            "field_count": len(all_fields),
            "edge_count": sum(len(dependents) for dependents in dependency_graph.values()),
            "computed_fields": len(compute_specs),
        },
    )
    return ParsedSchema(
        fields=fields,
        field_map=field_map,
        dependency_graph=dependency_graph,
        default_values=default_values,
        all_fields=tuple(all_fields),
        compute_specs=compute_specs,
        compute_order=compute_order,
        list_members=frozenset(list_members),
    )


def get_downstream_fields(field_name: str, dependency_graph: Mapping[str, Iterable[str]]) -> set[str]:
    downstream: set[str] = set()
    queue = deque([field_name])
    while queue:
        current = queue.popleft()
        for dependent in dependency_graph.get(current, ()):
            if dependent not in downstream:
                downstream.add(dependent)
                queue.append(dependent)
    return downstream


def merge_default_values(parsed: ParsedSchema, external_values: Mapping[str, Any] | None = None) -> dict[str, Any]:
    return {**parsed.default_values, **(external_values or {})}
