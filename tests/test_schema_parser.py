import pytest

from formrules.compute import RoundMode
from formrules.conditions import DeclaredPredicate
from formrules.parser import (
    SchemaCycleError,
    get_downstream_fields,
    merge_default_values,
    parse_schema,
)
from formrules.schema import (
    FieldCategory,
    FieldSchema,
    SchemaError,
    category_for,
    register_component,
    register_rule_validator,
)


def order_schema() -> dict:
    return {
        "fields": [
            {"name": "price", "component": "Number", "defaultValue": 100},
            {"name": "quantity", "component": "Number", "defaultValue": 1},
            {
                "name": "total",
                "component": "Number",
                "compute": {"expr": "price * quantity", "dependencies": ["price", "quantity"]},
            },
            {
                "name": "shipping",
                "component": "Group",
                "columns": [
                    {"name": "country", "component": "Select", "defaultValue": "FR"},
                    {"name": "city", "component": "Select", "dependencies": ["country"]},
                ],
            },
            {
                "name": "items",
                "component": "FormList",
                "columns": [{"name": "sku", "component": "Text"}, {"name": "qty", "component": "Number"}],
            },
        ]
    }


def test_parse_collects_nested_fields_and_defaults() -> None:
    parsed = parse_schema(order_schema())

    assert [field.name for field in parsed.fields] == ["price", "quantity", "total", "shipping", "items"]
    assert [field.name for field in parsed.all_fields] == [
        "price",
        "quantity",
        "total",
        "shipping",
        "country",
        "city",
        "items",
        "sku",
        "qty",
    ]
    assert parsed.default_values == {"price": 100, "quantity": 1, "country": "FR"}
    assert parsed.list_members == frozenset({"sku", "qty"})
    assert parsed.field_map["city"].dependencies == ("country",)


def test_dependency_graph_uses_reverse_edges() -> None:
    parsed = parse_schema(
        [
            {"name": "accountType", "component": "Radio"},
            {"name": "taxId", "component": "Text", "requiredWhen": {"field": "accountType", "eq": "business"}},
            {"name": "vat", "component": "Text", "visibleWhen": {"field": "taxId", "notEmpty": True}},
            {"name": "score", "component": "Number", "compute": "vat ? 1 : 0"},
        ]
    )
    assert parsed.dependency_graph["accountType"] == frozenset({"taxId"})
    assert parsed.dependency_graph["taxId"] == frozenset({"vat"})
    assert parsed.dependency_graph["vat"] == frozenset({"score"})


def test_downstream_closure() -> None:
    graph = {"a": {"b"}, "b": {"c"}}
    assert get_downstream_fields("a", graph) == {"b", "c"}
    assert get_downstream_fields("c", graph) == set()


def test_downstream_closure_handles_loops() -> None:
    graph = {"a": {"b"}, "b": {"a"}}
    assert get_downstream_fields("a", graph) == {"a", "b"}


def test_compute_order_follows_dependencies() -> None:
    parsed = parse_schema(
        [
            {"name": "grand", "component": "Number", "compute": "total + tax"},
            {"name": "tax", "component": "Number", "compute": {"expr": "total * 0.2", "precision": 2}},
            {"name": "total", "component": "Number", "compute": "price * quantity"},
            {"name": "price", "component": "Number"},
            {"name": "quantity", "component": "Number"},
        ]
    )
    order = list(parsed.compute_order)
    assert order.index("total") < order.index("tax") < order.index("grand")
    assert parsed.compute_specs["tax"].precision == 2
    assert parsed.compute_specs["tax"].round_mode is RoundMode.ROUND
    assert parsed.compute_specs["total"].dependencies == ("price", "quantity")


def test_compute_cycles_are_rejected() -> None:
    with pytest.raises(SchemaCycleError):
        parse_schema(
            [
                {"name": "a", "component": "Number", "compute": "b + 1"},
                {"name": "b", "component": "Number", "compute": "a + 1"},
            ]
        )


def test_invalid_compute_expression_is_kept_but_inert() -> None:
    parsed = parse_schema([{"name": "x", "component": "Number", "compute": "open('f')"}])
    assert parsed.compute_specs["x"].program is None


def test_duplicate_sibling_names_are_rejected() -> None:
    with pytest.raises(SchemaError, match="duplicate field name 'a'"):
        parse_schema([{"name": "a", "component": "Text"}, {"name": "a", "component": "Number"}])


def test_malformed_definitions_raise_schema_error() -> None:
    with pytest.raises(SchemaError):
        parse_schema({"fields": "nope"})
    with pytest.raises(SchemaError, match="requires a component"):
        parse_schema([{"name": "a"}])
    with pytest.raises(SchemaError, match="field 'a'"):
        parse_schema([{"name": "a", "component": "Text", "rules": [{"type": "minLength", "value": "x"}]}])
    with pytest.raises(SchemaError):
        parse_schema([{"name": "a", "component": "Text", "rules": [{"type": "pattern", "value": "("}]}])
    with pytest.raises(SchemaError, match="unsupported round mode"):
        parse_schema([{"name": "a", "component": "Number", "compute": {"expr": "b", "roundMode": "bankers"}}])
    with pytest.raises(SchemaError, match="unknown custom validator"):
        parse_schema([{"name": "a", "component": "Text", "rules": [{"type": "custom", "validate": "nope"}]}])


def test_field_schema_accepts_snake_case_and_ui_hints() -> None:
    field = FieldSchema.from_dict(
        {
            "name": "tags",
            "component": "Select",
            "default_value": [],
            "ui": {"label": "Tags", "props": {"multiple": True}, "options": [{"label": "A", "value": "a"}]},
            "no_submit": True,
            "transform": "trim",
        }
    )
    assert field.display_label == "Tags"
    assert field.multiple is True
    assert field.no_submit is True
    assert field.options == ({"label": "A", "value": "a"},)
    assert field.transform is not None and field.transform("  x ", {}) == "x"


def test_component_categories() -> None:
    assert category_for("Switch") is FieldCategory.BOOLEAN
    assert category_for("FormList") is FieldCategory.LIST
    assert category_for("numeric") is FieldCategory.NUMERIC
    assert category_for("ColorPicker") is FieldCategory.CUSTOM
    register_component("Currency", "numeric")
    assert category_for("Currency") is FieldCategory.NUMERIC


def test_registered_rule_validators_resolve_by_name() -> None:
    register_rule_validator("even", lambda value, values: value % 2 == 0)
    field = FieldSchema.from_dict({"name": "n", "component": "Number", "rules": [{"type": "custom", "validate": "even"}]})
    assert field.rules[0].validate is not None
    assert field.rules[0].validate(4, {}) is True


def test_merge_default_values_prefers_external() -> None:
    parsed = parse_schema(order_schema())
    merged = merge_default_values(parsed, {"quantity": 5, "note": "x"})
    assert merged == {"price": 100, "quantity": 5, "country": "FR", "note": "x"}


def test_declared_predicates_feed_the_graph() -> None:
    parsed = parse_schema(
        [
            {"name": "a", "component": "Number"},
            {
                "name": "b",
                "component": "Text",
                "visibleWhen": DeclaredPredicate(lambda values: (values.get("a") or 0) > 1, ("a",)),
            },
        ]
    )
    assert parsed.dependency_graph["a"] == frozenset({"b"})
