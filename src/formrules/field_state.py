from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any

from .conditions import evaluate_condition, extract_condition_dependencies
from .parser import CONDITION_ATTRIBUTES, ParsedSchema, compute_dependencies
from .schema import FieldCategory, FieldSchema


@dataclass(slots=True, frozen=True)
class FieldState:
    visible: bool
    disabled: bool
    required: bool
    readonly: bool

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)


def is_field_visible(field: FieldSchema, values: Mapping[str, Any]) -> bool:
    if field.hidden or field.category is FieldCategory.HIDDEN:
        return False
    if field.visible_when is not None:
        return evaluate_condition(field.visible_when, values)
    return True


def is_field_required(field: FieldSchema, values: Mapping[str, Any]) -> bool:
    if field.has_required_rule:
        return True
    if field.required_when is not None:
        return evaluate_condition(field.required_when, values)
    return False


def compute_field_state(
    field: FieldSchema,
    values: Mapping[str, Any],
    global_disabled: bool = False,
    global_readonly: bool = False,
) -> FieldState:
    disabled = field.disabled
    if not disabled and field.disabled_when is not None:
        disabled = evaluate_condition(field.disabled_when, values)
    # global disable always wins over per-field settings
    if global_disabled:
        disabled = True

    return FieldState(
        visible=is_field_visible(field, values),
        disabled=disabled,
        required=is_field_required(field, values),
        readonly=field.readonly if field.readonly is not None else global_readonly,
    )


def compute_all_field_states(
    parsed: ParsedSchema,
    values: Mapping[str, Any],
    global_disabled: bool = False,
    global_readonly: bool = False,
) -> dict[str, FieldState]:
    return {
        field.name: compute_field_state(field, values, global_disabled, global_readonly)
        for field in parsed.all_fields
    }


def get_watch_fields(parsed: ParsedSchema) -> list[str]:
    watch_fields: set[str] = set()
    for field in parsed.all_fields:
        watch_fields.update(field.dependencies or ())
        for attribute in CONDITION_ATTRIBUTES:
            watch_fields.update(extract_condition_dependencies(getattr(field, attribute)))
        watch_fields.update(compute_dependencies(field))
    return sorted(watch_fields)
