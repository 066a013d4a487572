from __future__ import annotations

import ast
import logging
import math
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal, localcontext
from enum import StrEnum
from typing import Any

from .conditions import is_number, lookup_path, strict_equals

logger = logging.getLogger(__name__)

COMPUTE_EPSILON = 1e-4
INPUTS_NAME = "_inputs"
REMAINDER_NAME = "_remainder"
POWER_NAME = "_power"
HELPER_NAMES = frozenset({REMAINDER_NAME, POWER_NAME})


def _js_round(value: float) -> int:
    return math.floor(value + 0.5)


def _sign(value: float) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


def _remainder(dividend: Any, divisor: Any) -> Any:
    # sign follows the dividend, not the divisor
    if isinstance(dividend, int) and isinstance(divisor, int):
        remainder = abs(dividend) % abs(divisor)
        return -remainder if dividend < 0 else remainder
    return math.fmod(dividend, divisor)


def _power(base: Any, exponent: Any) -> float:
    # float math overflows instead of building arbitrarily large integers
    return math.pow(float(base), float(exponent))


ALLOWED_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": abs,
    "ceil": math.ceil,
    "floor": math.floor,
    "max": max,
    "min": min,
    "round": _js_round,
    "sqrt": math.sqrt,
    "pow": _power,
    "trunc": math.trunc,
    "sign": _sign,
    "log": math.log,
    "exp": math.exp,
}

MATH_CONSTANTS = {"PI": math.pi, "E": math.e}

LITERAL_NAMES: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
    "NaN": math.nan,
    "Infinity": math.inf,
}

CUSTOM_FUNCTIONS: dict[str, Callable[..., Any]] = {}

DEPENDENCY_BLOCKLIST = frozenset(
    {
        *LITERAL_NAMES,
        "Math",
        "Number",
        "String",
        "Boolean",
        "Array",
        "Object",
        "if",
        "else",
        "return",
        "function",
        "const",
        "let",
        "var",
        "typeof",
        "new",
        "this",
        "and",
        "or",
        "not",
    }
)

ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.BinOp,
    ast.UnaryOp,
    ast.Compare,
    ast.IfExp,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.Subscript,
    ast.And,
    ast.Or,
    ast.Not,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.USub,
    ast.UAdd,
    ast.Eq,
    ast.NotEq,
    ast.Gt,
    ast.GtE,
    ast.Lt,
    ast.LtE,
    ast.Call,
)

_TOKEN_RE = re.compile(
    r"""
    (?P<space>\s+)
    |(?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)
    |(?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    |(?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    |(?P<op>===|!==|==|!=|<=|>=|&&|\|\||\*\*|[-+*/%<>!?:(),.])
    """,
    re.VERBOSE,
)
_STRING_LITERAL_RE = re.compile(r""""(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*'""")
_REFERENCE_RE = re.compile(r"(?<![\w.])([A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)(\s*\()?")

_BINARY_OPERATORS: dict[str, ast.operator] = {
    "+": ast.Add(),
    "-": ast.Sub(),
    "*": ast.Mult(),
    "/": ast.Div(),
}
_COMPARE_OPERATORS: dict[str, ast.cmpop] = {
    "==": ast.Eq(),
    "===": ast.Eq(),
    "!=": ast.NotEq(),
    "!==": ast.NotEq(),
    "<": ast.Lt(),
    "<=": ast.LtE(),
    ">": ast.Gt(),
    ">=": ast.GtE(),
}


class RoundMode(StrEnum):
    ROUND = "round"
    CEIL = "ceil"
    FLOOR = "floor"


class UnsafeExpressionError(ValueError):
    """Raised when the expression includes unsafe syntax."""


class ExpressionSyntaxError(ValueError):
    """Raised when a compute expression cannot be parsed."""

    def __init__(self, message: str, position: int) -> None:
        super().__init__(f"{message} at position {position}")
        self.position = position


@dataclass(slots=True, frozen=True)
class ExpressionProgram:
    """Validated, compiled expression that can be reused safely."""

    source: str
    code: Any
    references: frozenset[str]


@dataclass(slots=True, frozen=True)
class _Token:
    kind: str
    value: str
    position: int


def _tokenize(source: str) -> list[_Token]:
    tokens: list[_Token] = []
    position = 0
    while position < len(source):
        match = _TOKEN_RE.match(source, position)
        if match is None:
            raise ExpressionSyntaxError(f"unexpected character {source[position]!r}", position)
        kind = match.lastgroup or ""
        if kind != "space":
            tokens.append(_Token(kind, match.group(), position))
        position = match.end()
    tokens.append(_Token("eof", "", len(source)))
    return tokens


class _ExpressionParser:
    """Recursive descent parser lowering the expression language to a Python AST.

    Grammar (precedence low to high):
        ternary     → logical_or ("?" ternary ":" ternary)?
        logical_or  → logical_and (("||" | "or") logical_and)*
        logical_and → equality (("&&" | "and") equality)*
        equality    → comparison (("==" | "===" | "!=" | "!==") comparison)*
        comparison  → additive (("<" | "<=" | ">" | ">=") additive)*
        additive    → term (("+" | "-") term)*
        term        → unary (("*" | "/" | "%") unary)*
        unary       → ("!" | "not" | "-" | "+") unary | power
        power       → primary ("**" unary)?
        primary     → number | string | literal | call | reference | "(" ternary ")"
    """

    def __init__(self, source: str, functions: Mapping[str, Callable[..., Any]]) -> None:
        self.tokens = _tokenize(source)
        self.position = 0
        self.functions = functions
        self.references: set[str] = set()

    @property
    def current(self) -> _Token:
        return self.tokens[self.position]

    def advance(self) -> _Token:
        token = self.tokens[self.position]
        if token.kind != "eof":
            self.position += 1
        return token

    def match(self, *values: str) -> _Token | None:
        token = self.current
        if token.kind in {"op", "ident"} and token.value in values:
            return self.advance()
        return None

    def expect(self, value: str) -> _Token:
        token = self.match(value)
        if token is None:
            found = self.current.value or "end of expression"
            raise ExpressionSyntaxError(f"expected {value!r}, found {found!r}", self.current.position)
        return token

    def parse(self) -> ast.Expression:
        if self.current.kind == "eof":
            raise ExpressionSyntaxError("empty expression", 0)
        body = self.ternary()
        if self.current.kind != "eof":
            raise ExpressionSyntaxError(f"unexpected token {self.current.value!r}", self.current.position)
        return ast.fix_missing_locations(ast.Expression(body=body))

    def ternary(self) -> ast.expr:
        test = self.logical_or()
        if self.match("?"):
            body = self.ternary()
            self.expect(":")
            orelse = self.ternary()
            return ast.IfExp(test=test, body=body, orelse=orelse)
        return test

    def logical_or(self) -> ast.expr:
        operands = [self.logical_and()]
        while self.match("||", "or"):
            operands.append(self.logical_and())
        return operands[0] if len(operands) == 1 else ast.BoolOp(op=ast.Or(), values=operands)

    def logical_and(self) -> ast.expr:
        operands = [self.equality()]
        while self.match("&&", "and"):
            operands.append(self.equality())
        return operands[0] if len(operands) == 1 else ast.BoolOp(op=ast.And(), values=operands)

    def equality(self) -> ast.expr:
        left = self.comparison()
        while token := self.match("==", "===", "!=", "!=="):
            right = self.comparison()
            left = ast.Compare(left=left, ops=[_COMPARE_OPERATORS[token.value]], comparators=[right])
        return left

    def comparison(self) -> ast.expr:
        left = self.additive()
        while token := self.match("<", "<=", ">", ">="):
            right = self.additive()
            left = ast.Compare(left=left, ops=[_COMPARE_OPERATORS[token.value]], comparators=[right])
        return left

    def additive(self) -> ast.expr:
        left = self.term()
        while token := self.match("+", "-"):
            left = ast.BinOp(left=left, op=_BINARY_OPERATORS[token.value], right=self.term())
        return left

    def term(self) -> ast.expr:
        left = self.unary()
        while token := self.match("*", "/", "%"):
            right = self.unary()
            if token.value == "%":
                left = ast.Call(func=ast.Name(id=REMAINDER_NAME, ctx=ast.Load()), args=[left, right], keywords=[])
            else:
                left = ast.BinOp(left=left, op=_BINARY_OPERATORS[token.value], right=right)
        return left

    def unary(self) -> ast.expr:
        if self.match("!", "not"):
            return ast.UnaryOp(op=ast.Not(), operand=self.unary())
        if self.match("-"):
            return ast.UnaryOp(op=ast.USub(), operand=self.unary())
        if self.match("+"):
            return ast.UnaryOp(op=ast.UAdd(), operand=self.unary())
        return self.power()

    def power(self) -> ast.expr:
        base = self.primary()
        if self.match("**"):
            return ast.Call(func=ast.Name(id=POWER_NAME, ctx=ast.Load()), args=[base, self.unary()], keywords=[])
        return base

    def primary(self) -> ast.expr:
        token = self.current
        if token.kind == "number":
            self.advance()
            text = token.value
            if any(marker in text for marker in ".eE"):
                return ast.Constant(value=float(text))
            return ast.Constant(value=int(text))
        if token.kind == "string":
            self.advance()
            return ast.Constant(value=ast.literal_eval(token.value))
        if self.match("("):
            inner = self.ternary()
            self.expect(")")
            return inner
        if token.kind == "ident":
            return self.identifier()
        found = token.value or "end of expression"
        raise ExpressionSyntaxError(f"unexpected token {found!r}", token.position)

    def identifier(self) -> ast.expr:
        token = self.advance()
        if token.value in LITERAL_NAMES:
            return ast.Constant(value=LITERAL_NAMES[token.value])
        if token.value == "Math":
            return self.math_member()

        path = [token.value]
        while self.match("."):
            segment = self.current
            if segment.kind != "ident":
                raise ExpressionSyntaxError("expected a name after '.'", segment.position)
            path.append(self.advance().value)

        if self.current.value == "(" and self.current.kind == "op":
            if len(path) > 1 or path[0] not in self.functions:
                raise UnsafeExpressionError(f"Unsupported function call: {'.'.join(path)}")
            return self.call(path[0])

        reference = ".".join(path)
        self.references.add(reference)
        return ast.Subscript(
            value=ast.Name(id=INPUTS_NAME, ctx=ast.Load()),
            slice=ast.Constant(value=reference),
            ctx=ast.Load(),
        )

    def math_member(self) -> ast.expr:
        self.expect(".")
        member = self.current
        if member.kind != "ident":
            raise ExpressionSyntaxError("expected a name after 'Math.'", member.position)
        self.advance()
        if self.current.value == "(" and self.current.kind == "op":
            if member.value not in ALLOWED_FUNCTIONS:
                raise UnsafeExpressionError(f"Unsupported function call: Math.{member.value}")
            return self.call(member.value)
        if member.value in MATH_CONSTANTS:
            return ast.Constant(value=MATH_CONSTANTS[member.value])
        raise UnsafeExpressionError(f"Unsupported member: Math.{member.value}")

    def call(self, name: str) -> ast.expr:
        self.expect("(")
        args: list[ast.expr] = []
        if not self.match(")"):
            args.append(self.ternary())
            while self.match(","):
                args.append(self.ternary())
            self.expect(")")
        return ast.Call(func=ast.Name(id=name, ctx=ast.Load()), args=args, keywords=[])


def register_custom_function(name: str, function: Callable[..., Any]) -> None:
    CUSTOM_FUNCTIONS[name] = function


def _resolve_eval_functions(extra_functions: dict[str, Callable[..., Any]] | None = None) -> dict[str, Callable[..., Any]]:
    functions = {**ALLOWED_FUNCTIONS, **CUSTOM_FUNCTIONS}
    if extra_functions:
        functions.update(extra_functions)
    return functions


def _validate_ast(tree: ast.AST, allowed_function_names: set[str]) -> None:
    for node in ast.walk(tree):
        if not isinstance(node, ALLOWED_NODES):
            raise UnsafeExpressionError(f"Unsupported expression node: {type(node).__name__}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in allowed_function_names | HELPER_NAMES:
                raise UnsafeExpressionError("Unsupported function call")
        elif isinstance(node, ast.Subscript):
            if not (
                isinstance(node.value, ast.Name)
                and node.value.id == INPUTS_NAME
                and isinstance(node.slice, ast.Constant)
                and isinstance(node.slice.value, str)
            ):
                raise UnsafeExpressionError("Unsupported subscript")
        elif isinstance(node, ast.Name):
            if node.id not in allowed_function_names | HELPER_NAMES | {INPUTS_NAME}:
                raise UnsafeExpressionError(f"Unsupported name: {node.id}")


def compile_expression(
    expression: str,
    functions: dict[str, Callable[..., Any]] | None = None,
    extra_functions: dict[str, Callable[..., Any]] | None = None,
) -> ExpressionProgram:
    resolved_functions = functions if functions is not None else _resolve_eval_functions(extra_functions)
    parser = _ExpressionParser(expression, resolved_functions)
    tree = parser.parse()
    _validate_ast(tree, set(resolved_functions))
    return ExpressionProgram(
        source=expression,
        code=compile(tree, "<compute>", "eval"),
        references=frozenset(parser.references),
    )


def evaluate_program(
    program: ExpressionProgram,
    inputs: Mapping[str, Any],
    functions: dict[str, Callable[..., Any]] | None = None,
    extra_functions: dict[str, Callable[..., Any]] | None = None,
) -> Any:
    resolved_functions = functions if functions is not None else _resolve_eval_functions(extra_functions)
    return eval(
        program.code,
        {"__builtins__": {}, **resolved_functions, REMAINDER_NAME: _remainder, POWER_NAME: _power},
        {INPUTS_NAME: dict(inputs)},
    )


def extract_compute_dependencies(expression: str) -> set[str]:
    stripped = _STRING_LITERAL_RE.sub(" ", expression)
    functions = _resolve_eval_functions()
    dependencies: set[str] = set()
    for match in _REFERENCE_RE.finditer(stripped):
        reference, call_paren = match.group(1), match.group(2)
        head = reference.split(".", 1)[0]
        if head in DEPENDENCY_BLOCKLIST:
            continue
        if call_paren and reference in functions:
            continue
        dependencies.add(reference)
    return dependencies


def is_valid_compute_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, float):
        return not math.isnan(value)
    if isinstance(value, str):
        return value.strip() != ""
    return True


def parse_number(text: str) -> int | float | None:
    candidate = text.strip()
    if not candidate or "_" in candidate:
        return None
    try:
        return int(candidate)
    except ValueError:
        pass
    try:
        number = float(candidate)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def _coerce_input(value: Any) -> Any:
    if value is None:
        return 0
    if isinstance(value, str):
        number = parse_number(value)
        return value if number is None else number
    return value


def round_value(value: int | float, precision: int, round_mode: RoundMode | str = RoundMode.ROUND) -> float:
    rounding = {
        RoundMode.ROUND: ROUND_HALF_UP,
        RoundMode.CEIL: ROUND_CEILING,
        RoundMode.FLOOR: ROUND_FLOOR,
    }[RoundMode(round_mode)]
    with localcontext() as context:
        context.prec = 64
        quantum = Decimal(1).scaleb(-precision)
        return float(Decimal(repr(value)).quantize(quantum, rounding=rounding))


def evaluate_compute(
    expr: str | ExpressionProgram,
    values: Mapping[str, Any] | None,
    dependencies: Iterable[str] | None = None,
    precision: int | None = None,
    round_mode: RoundMode | str = RoundMode.ROUND,
) -> Any:
    source = expr.source if isinstance(expr, ExpressionProgram) else expr
    if dependencies is None:
        dependencies = extract_compute_dependencies(source)

    inputs: dict[str, Any] = {}
    for dependency in dependencies:
        value = lookup_path(values, dependency)
        if not is_valid_compute_value(value):
            return None
        inputs[dependency] = _coerce_input(value)

    try:
        program = expr if isinstance(expr, ExpressionProgram) else compile_expression(expr)
        result = evaluate_program(program, inputs)
        if is_number(result):
            if not math.isfinite(result):
                return None
            if precision is not None and precision >= 0:
                result = round_value(result, precision, round_mode)
    except Exception:
        logger.debug("compute_failed", extra={"expression": source}, exc_info=True)
        return None
    return result


def values_differ(current: Any, proposed: Any, epsilon: float = COMPUTE_EPSILON) -> bool:
    if is_number(current) and is_number(proposed):
        current_nan = isinstance(current, float) and math.isnan(current)
        proposed_nan = isinstance(proposed, float) and math.isnan(proposed)
        if current_nan or proposed_nan:
            return current_nan != proposed_nan
        return abs(current - proposed) > epsilon
    return not strict_equals(current, proposed)
