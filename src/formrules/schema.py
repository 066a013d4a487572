from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from .compute import RoundMode, parse_number

RULE_TYPES = frozenset(
    {"required", "minLength", "maxLength", "min", "max", "pattern", "email", "url", "custom", "array"}
)

RULE_VALIDATORS: dict[str, Callable[[Any, Mapping[str, Any]], Any]] = {}
TRANSFORMS: dict[str, Callable[[Any, Mapping[str, Any]], Any]] = {}


class SchemaError(ValueError):
    """Raised when a form schema definition is invalid."""


class FieldCategory(StrEnum):
    TEXT = "text"
    NUMERIC = "numeric"
    BOOLEAN = "boolean"
    OPTION = "option"
    GROUP = "group"
    LIST = "list"
    UPLOAD = "upload"
    HIDDEN = "hidden"
    CUSTOM = "custom"


COMPONENT_CATEGORIES: dict[str, FieldCategory] = {
    "Text": FieldCategory.TEXT,
    "Password": FieldCategory.TEXT,
    "Textarea": FieldCategory.TEXT,
    "Date": FieldCategory.TEXT,
    "Time": FieldCategory.TEXT,
    "DateTime": FieldCategory.TEXT,
    "Number": FieldCategory.NUMERIC,
    "Slider": FieldCategory.NUMERIC,
    "Rating": FieldCategory.NUMERIC,
    "Checkbox": FieldCategory.BOOLEAN,
    "Switch": FieldCategory.BOOLEAN,
    "Radio": FieldCategory.OPTION,
    "Select": FieldCategory.OPTION,
    "Autocomplete": FieldCategory.OPTION,
    "Group": FieldCategory.GROUP,
    "FormList": FieldCategory.LIST,
    "Upload": FieldCategory.UPLOAD,
    "Hidden": FieldCategory.HIDDEN,
}


def register_component(name: str, category: FieldCategory | str) -> None:
    COMPONENT_CATEGORIES[name] = FieldCategory(category)


def category_for(component: str) -> FieldCategory:
    if component in COMPONENT_CATEGORIES:
        return COMPONENT_CATEGORIES[component]
    try:
        return FieldCategory(component.lower())
    except ValueError:
        return FieldCategory.CUSTOM


def register_rule_validator(name: str, validator: Callable[[Any, Mapping[str, Any]], Any]) -> None:
    RULE_VALIDATORS[name] = validator


def register_transform(name: str, transform: Callable[[Any, Mapping[str, Any]], Any]) -> None:
    TRANSFORMS[name] = transform


def _transform_number(value: Any, values: Mapping[str, Any]) -> Any:
    if isinstance(value, str):
        number = parse_number(value)
        return value if number is None else number
    return value


register_transform("trim", lambda value, values: value.strip() if isinstance(value, str) else value)
register_transform("upper", lambda value, values: value.upper() if isinstance(value, str) else value)
register_transform("lower", lambda value, values: value.lower() if isinstance(value, str) else value)
register_transform("number", _transform_number)


def _pick(raw: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return default


def _optional_int(value: Any, label: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise SchemaError(f"{label} must be an integer")
    return value


@dataclass(slots=True, frozen=True)
class ValidationRule:
    type: str
    value: Any = None
    message: str | None = None
    validate: Callable[[Any, Mapping[str, Any]], Any] | None = None
    min_items: int | None = None
    max_items: int | None = None

    @classmethod
    def from_dict(cls, raw: ValidationRule | Mapping[str, Any]) -> ValidationRule:
        if isinstance(raw, ValidationRule):
            return raw
        if not isinstance(raw, Mapping):
            raise SchemaError(f"validation rule must be a mapping, got {type(raw).__name__}")
        rule_type = str(raw.get("type") or "")
        if rule_type not in RULE_TYPES:
            raise SchemaError(f"unsupported validation rule type: {rule_type or '<missing>'}")

        validate = raw.get("validate")
        if rule_type == "custom":
            validate = validate if validate is not None else raw.get("validator")
            if isinstance(validate, str):
                if validate not in RULE_VALIDATORS:
                    raise SchemaError(f"unknown custom validator: {validate}")
                validate = RULE_VALIDATORS[validate]
            if not callable(validate):
                raise SchemaError("custom rules require a callable or registered validator")
        value = raw.get("value")
        if rule_type in {"minLength", "maxLength", "min", "max"}:
            value = parse_number(str(value))
            if value is None:
                raise SchemaError(f"{rule_type} rule requires a numeric value")
        if rule_type == "pattern":
            if not value:
                raise SchemaError("pattern rule requires a value")
            if isinstance(value, str):
                try:
                    re.compile(value)
                except re.error as exc:
                    raise SchemaError(f"invalid pattern {value!r}: {exc}") from exc

        return cls(
            type=rule_type,
            value=value,
            message=raw.get("message"),
            validate=validate,
            min_items=_optional_int(_pick(raw, "minItems", "min_items"), "minItems"),
            max_items=_optional_int(_pick(raw, "maxItems", "max_items"), "maxItems"),
        )


@dataclass(slots=True, frozen=True)
class ComputeConfig:
    expr: str
    dependencies: tuple[str, ...] | None = None
    precision: int | None = None
    round_mode: RoundMode = RoundMode.ROUND

    @classmethod
    def from_dict(cls, raw: ComputeConfig | Mapping[str, Any] | str) -> ComputeConfig:
        if isinstance(raw, ComputeConfig):
            return raw
        if isinstance(raw, str):
            raw = {"expr": raw}
        expr = str(raw.get("expr") or "").strip()
        if not expr:
            raise SchemaError("compute requires a non-empty expr")
        precision = _optional_int(raw.get("precision"), "compute precision")
        if precision is not None and precision < 0:
            raise SchemaError("compute precision must be >= 0")
        round_mode = _pick(raw, "roundMode", "round_mode", default=RoundMode.ROUND)
        try:
            round_mode = RoundMode(round_mode)
        except ValueError as exc:
            raise SchemaError(f"unsupported round mode: {round_mode}") from exc
        dependencies = raw.get("dependencies")
        return cls(
            expr=expr,
            dependencies=tuple(str(dep) for dep in dependencies) if dependencies is not None else None,
            precision=precision,
            round_mode=round_mode,
        )


@dataclass(slots=True, frozen=True)
class FieldSchema:
    name: str
    component: str
    default_value: Any = None
    label: str | None = None
    rules: tuple[ValidationRule, ...] = ()
    visible_when: Any = None
    disabled_when: Any = None
    required_when: Any = None
    compute: ComputeConfig | None = None
    dependencies: tuple[str, ...] | None = None
    columns: tuple[FieldSchema, ...] = ()
    min_items: int | None = None
    max_items: int | None = None
    no_submit: bool = False
    transform: Callable[[Any, Mapping[str, Any]], Any] | None = None
    readonly: bool | None = None
    disabled: bool = False
    hidden: bool = False
    multiple: bool = False
    options: tuple[Mapping[str, Any], ...] = ()
    props: Mapping[str, Any] = field(default_factory=dict)

    @property
    def category(self) -> FieldCategory:
        return category_for(self.component)

    @property
    def display_label(self) -> str:
        return self.label or self.name

    @property
    def has_required_rule(self) -> bool:
        return any(rule.type == "required" for rule in self.rules)

    def rule(self, rule_type: str) -> ValidationRule | None:
        return next((rule for rule in self.rules if rule.type == rule_type), None)

    @classmethod
    def from_dict(cls, raw: FieldSchema | Mapping[str, Any]) -> FieldSchema:
        if isinstance(raw, FieldSchema):
            return raw
        if not isinstance(raw, Mapping):
            raise SchemaError(f"field definition must be a mapping, got {type(raw).__name__}")

        name = str(raw.get("name") or "").strip()
        if not name:
            raise SchemaError("every field requires a name")
        component = str(raw.get("component") or "").strip()
        if not component:
            raise SchemaError(f"field '{name}' requires a component")

        ui = raw.get("ui") or {}
        props = {**(ui.get("props") or {}), **(raw.get("props") or {})}

        transform = raw.get("transform")
        if isinstance(transform, str):
            if transform not in TRANSFORMS:
                raise SchemaError(f"field '{name}' uses unknown transform: {transform}")
            transform = TRANSFORMS[transform]
        elif transform is not None and not callable(transform):
            raise SchemaError(f"field '{name}' transform must be callable or a registered name")

        raw_compute = raw.get("compute")
        dependencies = raw.get("dependencies")

        try:
            rules = tuple(ValidationRule.from_dict(rule) for rule in raw.get("rules") or ())
            compute = ComputeConfig.from_dict(raw_compute) if raw_compute else None
            min_items = _optional_int(_pick(raw, "minItems", "min_items"), "minItems")
            max_items = _optional_int(_pick(raw, "maxItems", "max_items"), "maxItems")
        except SchemaError as exc:
            raise SchemaError(f"field '{name}': {exc}") from exc

        return cls(
            name=name,
            component=component,
            default_value=_pick(raw, "defaultValue", "default_value", "default"),
            label=_pick(raw, "label", default=ui.get("label")),
            rules=rules,
            visible_when=_pick(raw, "visibleWhen", "visible_when"),
            disabled_when=_pick(raw, "disabledWhen", "disabled_when"),
            required_when=_pick(raw, "requiredWhen", "required_when"),
            compute=compute,
            dependencies=tuple(str(dep) for dep in dependencies) if dependencies is not None else None,
            columns=tuple(cls.from_dict(column) for column in raw.get("columns") or ()),
            min_items=min_items,
            max_items=max_items,
            no_submit=bool(_pick(raw, "noSubmit", "no_submit", default=False)),
            transform=transform,
            readonly=_pick(raw, "readonly", "readOnly", "read_only"),
            disabled=bool(raw.get("disabled", False)),
            hidden=bool(raw.get("hidden", False)),
            multiple=bool(_pick(raw, "multiple", default=props.get("multiple", False))),
            options=tuple(_pick(raw, "options", default=ui.get("options") or ())),
            props=props,
        )
