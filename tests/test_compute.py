import math

import pytest

from formrules.compute import (
    CUSTOM_FUNCTIONS,
    ExpressionSyntaxError,
    UnsafeExpressionError,
    compile_expression,
    evaluate_compute,
    evaluate_program,
    extract_compute_dependencies,
    register_custom_function,
    round_value,
    values_differ,
)


def test_compile_expression_reusable_program() -> None:
    program = compile_expression("price * quantity")
    assert program.references == frozenset({"price", "quantity"})
    assert evaluate_program(program, {"price": 9, "quantity": 2}) == 18
    assert evaluate_program(program, {"price": 11, "quantity": 3}) == 33


def test_expression_language_operators() -> None:
    values = {"a": 7, "b": 2, "flag": True}
    assert evaluate_compute("a % b", values) == 1
    assert evaluate_compute("-7 % 2", {}) == -1
    assert evaluate_compute("a > b ? 'big' : 'small'", values) == "big"
    assert evaluate_compute("a >= 7 && b === 2", values) is True
    assert evaluate_compute("!flag || a !== 7", values) is False
    assert evaluate_compute("2 ** 3", {}) == 8
    assert evaluate_compute("Math.max(a, b) + Math.min(a, b)", values) == 9
    assert evaluate_compute("Math.round(2.5) + Math.round(-2.5)", {}) == 1
    assert evaluate_compute("Math.floor(Math.PI)", {}) == 3


def test_unsafe_expressions_are_rejected() -> None:
    with pytest.raises(UnsafeExpressionError):
        compile_expression("__import__('os').system('echo bad')")
    with pytest.raises(UnsafeExpressionError):
        compile_expression("Math.random()")
    with pytest.raises(UnsafeExpressionError):
        compile_expression("values.constructor(1)")
    with pytest.raises(ExpressionSyntaxError):
        compile_expression("a +")
    with pytest.raises(ExpressionSyntaxError):
        compile_expression("a; b")


def test_unsafe_or_broken_expressions_evaluate_to_none() -> None:
    assert evaluate_compute("eval(a)", {"a": 1}) is None
    assert evaluate_compute("(a", {"a": 1}) is None


def test_dependency_guard_returns_none() -> None:
    assert evaluate_compute("price * quantity", {"price": 10}, ["price", "quantity"]) is None
    assert evaluate_compute("price * quantity", {"price": 10, "quantity": ""}, ["price", "quantity"]) is None
    assert evaluate_compute("price * quantity", {"price": 10, "quantity": "  "}, ["price", "quantity"]) is None
    assert evaluate_compute("price * quantity", {"price": math.nan, "quantity": 1}, ["price", "quantity"]) is None


def test_numeric_strings_are_coerced() -> None:
    assert evaluate_compute("price * quantity", {"price": "2.5", "quantity": "4"}, ["price", "quantity"]) == 10


def test_rounding_modes() -> None:
    assert evaluate_compute("a", {"a": 12.3456}, ["a"], 2, "round") == 12.35
    assert evaluate_compute("a", {"a": 12.3456}, ["a"], 2, "floor") == 12.34
    assert evaluate_compute("a", {"a": 12.3456}, ["a"], 2, "ceil") == 12.35
    assert round_value(1.005, 2) == 1.01


def test_non_finite_results_are_dropped() -> None:
    assert evaluate_compute("a / b", {"a": 1, "b": 0}, ["a", "b"]) is None
    assert evaluate_compute("a * Infinity", {"a": 1}, ["a"]) is None


def test_evaluation_is_deterministic_and_sandboxed() -> None:
    values = {"a": 3, "b": 4, "secret": 99}
    first = evaluate_compute("a * b", values, ["a", "b"])
    second = evaluate_compute("a * b", values, ["a", "b"])
    assert first == second == 12
    assert evaluate_compute("a * b", {**values, "secret": 1}, ["a", "b"]) == 12
    # fields outside the declared dependencies are not readable
    assert evaluate_compute("a * secret", values, ["a"]) is None


def test_nested_references() -> None:
    values = {"order": {"price": 5, "quantity": 3}}
    assert extract_compute_dependencies("order.price * order.quantity") == {"order.price", "order.quantity"}
    assert evaluate_compute("order.price * order.quantity", values) == 15


def test_dependency_extraction() -> None:
    assert extract_compute_dependencies("price * quantity + tax") == {"price", "quantity", "tax"}
    assert extract_compute_dependencies("Math.max(a,b)") == {"a", "b"}
    assert extract_compute_dependencies("kind === 'a.b' ? total : 0") == {"kind", "total"}
    assert extract_compute_dependencies("true && null || undefined") == set()


def test_custom_functions_are_callable_and_not_dependencies() -> None:
    register_custom_function("discount", lambda amount, rate: amount * (1 - rate))
    try:
        assert extract_compute_dependencies("discount(total, rate)") == {"total", "rate"}
        assert evaluate_compute("discount(total, rate)", {"total": 200, "rate": 0.25}) == 150
    finally:
        CUSTOM_FUNCTIONS.pop("discount", None)


def test_values_differ_uses_epsilon_for_numbers() -> None:
    assert values_differ(1.0, 1.00001) is False
    assert values_differ(1.0, 1.1) is True
    assert values_differ(None, 0) is True
    assert values_differ("a", "a") is False
    assert values_differ(math.nan, 1) is True


def test_huge_exponents_overflow_to_none() -> None:
    assert evaluate_compute("a ** b", {"a": 9, "b": 30000000}, ["a", "b"]) is None
    assert evaluate_compute("Math.pow(a, b)", {"a": 9, "b": 30000000}, ["a", "b"]) is None
    assert evaluate_compute("a ** b", {"a": 2, "b": 10}, ["a", "b"]) == 1024


def test_values_differ_treats_nan_pairs_as_equal() -> None:
    assert values_differ(math.nan, math.nan) is False
    assert values_differ(1.0, math.nan) is True
