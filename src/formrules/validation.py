from __future__ import annotations

import copy
import logging
import math
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Annotated, Any

from pydantic import (
    AfterValidator,
    AnyUrl,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    create_model,
)
from pydantic_core import PydanticCustomError

from .compute import parse_number
from .conditions import assign_path, is_number, lookup_path
from .field_state import is_field_required, is_field_visible
from .parser import ParsedSchema
from .schema import FieldCategory, FieldSchema, ValidationRule

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
GENERIC_FAILURE_MESSAGE = "Validation failed"

_URL_ADAPTER = TypeAdapter(AnyUrl)


@dataclass(slots=True)
class ValidationResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)


def _absent(value: Any) -> bool:
    return value is None or value == ""


def _check(error_type: str, message: str, predicate: Callable[[Any], bool]) -> AfterValidator:
    def validate(value: Any) -> Any:
        if not predicate(value):
            raise PydanticCustomError(error_type, message)
        return value

    return AfterValidator(validate)


def _when_present(predicate: Callable[[Any], bool]) -> Callable[[Any], bool]:
    return lambda value: _absent(value) or predicate(value)


def _required_message(field: FieldSchema) -> str:
    rule = field.rule("required")
    if rule is not None and rule.message:
        return rule.message
    return f"{field.display_label} is required"


def _custom_check(rule: ValidationRule, field: FieldSchema, values: Mapping[str, Any]) -> AfterValidator:
    validator = rule.validate

    def validate(value: Any) -> Any:
        if validator is None or _absent(value):
            return value
        try:
            outcome = validator(value, values)
        except Exception:
            logger.warning("custom_rule_failed", extra={"field": field.name}, exc_info=True)
            raise PydanticCustomError("custom", GENERIC_FAILURE_MESSAGE) from None
        if outcome is True:
            return value
        if isinstance(outcome, str) and outcome:
            raise PydanticCustomError("custom", outcome)
        raise PydanticCustomError("custom", rule.message or f"{field.display_label} is invalid")

    return AfterValidator(validate)


def _custom_checks(field: FieldSchema, values: Mapping[str, Any]) -> list[AfterValidator]:
    return [_custom_check(rule, field, values) for rule in field.rules if rule.type == "custom"]


def _is_valid_url(value: Any) -> bool:
    try:
        _URL_ADAPTER.validate_python(str(value))
    except ValidationError:
        return False
    return True


def _matches(pattern: Any) -> Callable[[Any], bool]:
    compiled = pattern if isinstance(pattern, re.Pattern) else re.compile(str(pattern))
    return lambda value: compiled.search(str(value)) is not None


def _text_checks(field: FieldSchema, values: Mapping[str, Any], required: bool) -> list[Any]:
    label = field.display_label
    checks: list[Any] = [
        _check("string_type", f"{label} must be text", lambda value: value is None or isinstance(value, str))
    ]
    if required:
        checks.append(_check("required", _required_message(field), lambda value: not _absent(value)))

    for rule in field.rules:
        if rule.type == "minLength":
            limit = rule.value
            checks.append(
                _check(
                    "min_length",
                    rule.message or f"{label} must be at least {limit} characters",
                    _when_present(lambda value, limit=limit: len(str(value)) >= limit),
                )
            )
        elif rule.type == "maxLength":
            limit = rule.value
            checks.append(
                _check(
                    "max_length",
                    rule.message or f"{label} must be at most {limit} characters",
                    _when_present(lambda value, limit=limit: len(str(value)) <= limit),
                )
            )
        elif rule.type == "pattern":
            checks.append(_check("pattern", rule.message or f"{label} has an invalid format", _when_present(_matches(rule.value))))
        elif rule.type == "email":
            checks.append(
                _check(
                    "email",
                    rule.message or f"{label} must be a valid email address",
                    _when_present(lambda value: EMAIL_PATTERN.match(str(value)) is not None),
                )
            )
        elif rule.type == "url":
            checks.append(_check("url", rule.message or f"{label} must be a valid URL", _when_present(_is_valid_url)))
        elif rule.type == "custom":
            checks.append(_custom_check(rule, field, values))
    return checks


def _coerce_numeric(value: Any) -> Any:
    if isinstance(value, str):
        if value.strip() == "":
            return None
        number = parse_number(value)
        return value if number is None else number
    return value


def _numeric_present(value: Any) -> bool:
    return value is not None and not (isinstance(value, float) and math.isnan(value))


def _numeric_checks(field: FieldSchema, values: Mapping[str, Any], required: bool) -> list[Any]:
    label = field.display_label
    checks: list[Any] = [
        BeforeValidator(_coerce_numeric),
        _check("number_type", f"{label} must be a number", lambda value: value is None or is_number(value)),
    ]
    if required:
        checks.append(_check("required", _required_message(field), _numeric_present))

    for rule in field.rules:
        if rule.type in {"min", "max"}:
            limit = rule.value
            if rule.type == "min":
                message = rule.message or f"{label} must be at least {limit}"
                predicate = lambda value, limit=limit: value >= limit  # noqa: E731
            else:
                message = rule.message or f"{label} must be at most {limit}"
                predicate = lambda value, limit=limit: value <= limit  # noqa: E731
            checks.append(
                _check(rule.type, message, lambda value, predicate=predicate: not _numeric_present(value) or predicate(value))
            )
        elif rule.type == "custom":
            checks.append(_custom_check(rule, field, values))
    return checks


def _boolean_checks(field: FieldSchema, values: Mapping[str, Any], required: bool) -> list[Any]:
    checks: list[Any] = [
        _check(
            "bool_type",
            f"{field.display_label} must be true or false",
            lambda value: value is None or isinstance(value, bool),
        )
    ]
    if required:
        # a required toggle must be switched on, not merely set
        checks.append(_check("required", _required_message(field), lambda value: value is True))
    return [*checks, *_custom_checks(field, values)]


def _is_scalar(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


def _option_checks(field: FieldSchema, values: Mapping[str, Any], required: bool) -> list[Any]:
    label = field.display_label
    if field.multiple:
        shape_ok = lambda value: _is_scalar(value) or isinstance(value, list)  # noqa: E731
        present = lambda value: isinstance(value, list) and len(value) > 0  # noqa: E731
    else:
        shape_ok = _is_scalar
        present = lambda value: not _absent(value)  # noqa: E731
    checks: list[Any] = [_check("option_type", f"{label} has an invalid selection", shape_ok)]
    if required:
        checks.append(_check("required", _required_message(field), present))
    return [*checks, *_custom_checks(field, values)]


def _upload_checks(field: FieldSchema, required: bool) -> list[Any]:
    array_rule = field.rule("array")
    minimum = array_rule.min_items if array_rule is not None and array_rule.min_items is not None else None
    if minimum is None:
        minimum = 1 if required else 0
    checks: list[Any] = [
        _check(
            "list_type",
            f"{field.display_label} must be a list",
            lambda value: value is None or isinstance(value, list),
        )
    ]
    if minimum > 0:
        message = (array_rule.message if array_rule is not None else None) or _required_message(field)
        checks.append(
            _check("min_items", message, lambda value: isinstance(value, list) and len(value) >= minimum)
        )
    return checks


def _opaque_checks(field: FieldSchema, values: Mapping[str, Any], required: bool) -> list[Any]:
    checks: list[Any] = []
    if required:
        checks.append(_check("required", _required_message(field), lambda value: not _absent(value)))
    return [*checks, *_custom_checks(field, values)]


def _flatten_columns(
    columns: Iterable[FieldSchema],
    values: Mapping[str, Any],
    visible: bool = True,
) -> list[tuple[FieldSchema, bool]]:
    flattened: list[tuple[FieldSchema, bool]] = []
    for column in columns:
        # a hidden group hides everything beneath it
        shown = visible and is_field_visible(column, values)
        if column.category is FieldCategory.GROUP:
            flattened.extend(_flatten_columns(column.columns, values, shown))
        else:
            flattened.append((column, shown))
    return flattened


def _row_model_name(field: FieldSchema) -> str:
    return "".join(part.capitalize() for part in re.split(r"[^A-Za-z0-9]+", field.name) if part) + "Row"


def _list_type(field: FieldSchema, values: Mapping[str, Any], required: bool) -> Any:
    row_model = _build_model(
        _row_model_name(field),
        field.columns,
        values,
        ConfigDict(extra="allow"),
    )
    minimum = field.min_items or 0
    if required and minimum == 0:
        minimum = 1
    checks: list[Any] = []
    if minimum > 0:
        message = f"At least {minimum} items are required"
        if field.min_items is None:
            message = _required_message(field)
        checks.append(_check("min_items", message, lambda rows: isinstance(rows, list) and len(rows) >= minimum))
    if field.max_items is not None:
        maximum = field.max_items
        checks.append(
            _check(
                "max_items",
                f"At most {maximum} items are allowed",
                lambda rows: rows is None or len(rows) <= maximum,
            )
        )
    base = list[row_model] | None  # type: ignore[valid-type]
    return Annotated[(base, *checks)] if checks else base


def _field_type(field: FieldSchema, values: Mapping[str, Any], visible: bool) -> Any:
    if not visible:
        return Any

    required = is_field_required(field, values)
    category = field.category
    if category is FieldCategory.LIST:
        return _list_type(field, values, required)

    if category is FieldCategory.TEXT:
        checks = _text_checks(field, values, required)
    elif category is FieldCategory.NUMERIC:
        checks = _numeric_checks(field, values, required)
    elif category is FieldCategory.BOOLEAN:
        checks = _boolean_checks(field, values, required)
    elif category is FieldCategory.OPTION:
        checks = _option_checks(field, values, required)
    elif category is FieldCategory.UPLOAD:
        checks = _upload_checks(field, required)
    else:
        checks = _opaque_checks(field, values, required)
    return Annotated[(Any, *checks)] if checks else Any


def _build_model(
    model_name: str,
    fields: Iterable[FieldSchema],
    values: Mapping[str, Any],
    config: ConfigDict,
) -> type[BaseModel]:
    definitions: dict[str, Any] = {}
    for index, (field_schema, visible) in enumerate(_flatten_columns(fields, values)):
        definitions[f"field_{index}"] = (
            _field_type(field_schema, values, visible),
            Field(default=None, alias=field_schema.name, validate_default=True),
        )
    return create_model(model_name, __config__=config, **definitions)


def build_validator(parsed: ParsedSchema, values: Mapping[str, Any]) -> type[BaseModel]:
    # rebuilt per snapshot so conditional requiredness is always current
    return _build_model("FormValues", parsed.fields, values or {}, ConfigDict(extra="ignore"))


def _error_path(location: tuple[int | str, ...]) -> str:
    return ".".join(str(part) for part in location)


def run_validator(validator: type[BaseModel], values: Mapping[str, Any]) -> ValidationResult:
    snapshot = values or {}
    aliases = [info.alias or name for name, info in validator.model_fields.items()]
    payload = {alias: lookup_path(snapshot, alias) for alias in aliases}

    try:
        validated = validator.model_validate(payload)
    except ValidationError as exc:
        errors: dict[str, str] = {}
        for error in exc.errors():
            errors.setdefault(_error_path(error["loc"]), error["msg"])
        return ValidationResult(success=False, errors=errors)

    data = copy.deepcopy(dict(snapshot))
    for alias, value in validated.model_dump(by_alias=True).items():
        if alias in data or "." not in alias:
            data[alias] = value
        else:
            assign_path(data, alias, value)
    return ValidationResult(success=True, data=data)


def validate_values(parsed: ParsedSchema, values: Mapping[str, Any]) -> ValidationResult:
    result = run_validator(build_validator(parsed, values), values)
    if not result.success:
        logger.info("validation_failed", extra={"paths": sorted(result.errors)})
    return result
