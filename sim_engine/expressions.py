"""
Constrained expression language for alarm conditions, fault triggers and
interaction equations.

Conditions:  temperature > 75 && (vibration >= 3 || !(power < 10))
Equations:   target = source * 1.2 + 10      (the "target =" prefix is optional)

Text is parsed by a fixed LALR grammar into a nested tuple AST and walked by
`evaluate`; nothing outside comparison / arithmetic / logical nodes over
register identifiers and numeric literals can be expressed.
"""

from __future__ import annotations
import functools
import math
import re
from typing import Mapping, Optional

from lark import Lark, Transformer, v_args
from lark.exceptions import LarkError

from sim_config.errors import ExpressionError

EXPRESSION_GRAMMAR = r"""
    ?start: or_expr
    ?or_expr: and_expr
            | or_expr "||" and_expr -> or_
    ?and_expr: not_expr
             | and_expr "&&" not_expr -> and_
    ?not_expr: comparison
             | "!" not_expr -> not_
    ?comparison: sum
               | sum ">" sum -> gt
               | sum "<" sum -> lt
               | sum ">=" sum -> ge
               | sum "<=" sum -> le
               | sum "==" sum -> eq
               | sum "!=" sum -> ne
    ?sum: product
        | sum "+" product -> add
        | sum "-" product -> sub
    ?product: unary
            | product "*" unary -> mul
            | product "/" unary -> div
    ?unary: atom
          | "-" unary -> neg
          | "+" unary
    ?atom: NUMBER -> number
         | NAME -> var
         | "(" or_expr ")"

    NAME: /[A-Za-z_][A-Za-z0-9_.]*/
    %import common.NUMBER
    %import common.WS
    %ignore WS
"""

MAX_EXPRESSION_LENGTH = 1000
MAX_EXPRESSION_DEPTH = 64
PARSE_CACHE_SIZE = 256
EQUATION_IDENTIFIERS = frozenset({"source", "target"})

_ASSIGNMENT_PREFIX = re.compile(r"^\s*target\s*=(?!=)")

_COMPARATORS = {
    "gt": lambda a, b: a > b,
    "lt": lambda a, b: a < b,
    "ge": lambda a, b: a >= b,
    "le": lambda a, b: a <= b,
    "eq": lambda a, b: a == b,
    "ne": lambda a, b: a != b,
}
_SYMBOLS = {"gt": ">", "lt": "<", "ge": ">=", "le": "<=", "eq": "==", "ne": "!=",
            "add": "+", "sub": "-", "mul": "*", "div": "/"}


@v_args(inline=True)
class ExpressionTransformer(Transformer):
    """Transforms the Lark parse tree into a nested tuple AST."""
    def number(self, token): return ("num", float(token))
    def var(self, token): return ("var", str(token))
    def neg(self, operand): return ("neg", operand)
    def not_(self, operand): return ("not", operand)
    def and_(self, left, right): return ("and", left, right)
    def or_(self, left, right): return ("or", left, right)
    def add(self, left, right): return ("add", left, right)
    def sub(self, left, right): return ("sub", left, right)
    def mul(self, left, right): return ("mul", left, right)
    def div(self, left, right): return ("div", left, right)
    def gt(self, left, right): return ("cmp", "gt", left, right)
    def lt(self, left, right): return ("cmp", "lt", left, right)
    def ge(self, left, right): return ("cmp", "ge", left, right)
    def le(self, left, right): return ("cmp", "le", left, right)
    def eq(self, left, right): return ("cmp", "eq", left, right)
    def ne(self, left, right): return ("cmp", "ne", left, right)


def _as_number(value, node: tuple, expression: str) -> float:
    if isinstance(value, bool):
        raise ExpressionError(f"type mismatch: expected a number in '{_describe(node)}', got a boolean", expression)
    return value


def _as_boolean(value, node: tuple, expression: str) -> bool:
    if not isinstance(value, bool):
        raise ExpressionError(f"type mismatch: expected a boolean in '{_describe(node)}', got a number", expression)
    return value


def _describe(node: tuple) -> str:
    kind = node[0]
    if kind == "num":
        return f"{node[1]:g}"
    if kind == "var":
        return node[1]
    if kind == "neg":
        return f"-{_describe(node[1])}"
    if kind == "not":
        return f"!{_describe(node[1])}"
    if kind == "cmp":
        return f"{_describe(node[2])} {_SYMBOLS[node[1]]} {_describe(node[3])}"
    if kind in ("and", "or"):
        op = "&&" if kind == "and" else "||"
        return f"({_describe(node[1])} {op} {_describe(node[2])})"
    return f"({_describe(node[1])} {_SYMBOLS[kind]} {_describe(node[2])})"


def evaluate(node: tuple, env: Mapping[str, float], expression: str = ""):
    """
    Recursively evaluate an AST node against an identifier environment.
    Both operands of && and || are always evaluated so that an unknown
    identifier is reported regardless of the other operand's value.
    """
    kind = node[0]
    if kind == "num":
        return node[1]
    if kind == "var":
        name = node[1]
        if name not in env:
            raise ExpressionError(f"unknown identifier '{name}'", expression)
        return float(env[name])
    if kind == "neg":
        return -_as_number(evaluate(node[1], env, expression), node, expression)
    if kind == "not":
        return not _as_boolean(evaluate(node[1], env, expression), node, expression)
    if kind in ("and", "or"):
        left = _as_boolean(evaluate(node[1], env, expression), node, expression)
        right = _as_boolean(evaluate(node[2], env, expression), node, expression)
        return (left and right) if kind == "and" else (left or right)
    if kind == "cmp":
        left = _as_number(evaluate(node[2], env, expression), node, expression)
        right = _as_number(evaluate(node[3], env, expression), node, expression)
        return _COMPARATORS[node[1]](left, right)

    left = _as_number(evaluate(node[1], env, expression), node, expression)
    right = _as_number(evaluate(node[2], env, expression), node, expression)
    if kind == "add":
        result = left + right
    elif kind == "sub":
        result = left - right
    elif kind == "mul":
        result = left * right
    elif kind == "div":
        if right == 0:
            raise ExpressionError(f"division by zero in '{_describe(node)}'", expression)
        result = left / right
    else:
        raise ExpressionError(f"unknown expression node: {kind}", expression)
    if not math.isfinite(result):
        raise ExpressionError(f"non-finite result in '{_describe(node)}'", expression)
    return result


def identifiers(node: tuple) -> set[str]:
    """All register identifiers referenced by an AST."""
    kind = node[0]
    if kind == "var":
        return {node[1]}
    if kind == "num":
        return set()
    names = set()
    for child in node[1:]:
        if isinstance(child, tuple):
            names |= identifiers(child)
    return names


def depth(node: tuple) -> int:
    """Nesting depth of an AST, measured without recursion."""
    deepest = 0
    stack = [(node, 1)]
    while stack:
        current, level = stack.pop()
        deepest = max(deepest, level)
        for child in current[1:]:
            if isinstance(child, tuple):
                stack.append((child, level + 1))
    return deepest


class ExpressionEvaluator:
    """Parses (with a bounded LRU cache) and evaluates conditions and equations."""

    def __init__(self, cache_size: int = PARSE_CACHE_SIZE):
        self.parser = Lark(EXPRESSION_GRAMMAR, parser="lalr", transformer=ExpressionTransformer())
        self._parse_cached = functools.lru_cache(maxsize=cache_size)(self._parse_text)

    def parse(self, text: str) -> tuple:
        if not isinstance(text, str) or not text.strip():
            raise ExpressionError("expression is empty", text if isinstance(text, str) else "")
        if len(text) > MAX_EXPRESSION_LENGTH:
            raise ExpressionError(f"expression longer than {MAX_EXPRESSION_LENGTH} characters", text[:40])
        return self._parse_cached(text)

    def cache_info(self):
        return self._parse_cached.cache_info()

    def _parse_text(self, text: str) -> tuple:
        try:
            ast = self.parser.parse(text)
        except LarkError as exc:
            raise ExpressionError(f"syntax error: {str(exc).splitlines()[0]}", text) from exc
        if depth(ast) > MAX_EXPRESSION_DEPTH:
            raise ExpressionError(f"expression nested deeper than {MAX_EXPRESSION_DEPTH} levels", text[:40])
        return ast

    def parse_equation(self, text: str) -> tuple:
        if not isinstance(text, str):
            raise ExpressionError("equation must be text")
        ast = self.parse(_ASSIGNMENT_PREFIX.sub("", text, count=1))
        unknown = identifiers(ast) - EQUATION_IDENTIFIERS
        if unknown:
            raise ExpressionError(
                f"equations may only reference 'source' and 'target', found: {', '.join(sorted(unknown))}", text)
        return ast

    def condition(self, text: str, registers: Mapping[str, float]) -> bool:
        result = evaluate(self.parse(text), registers, text)
        if not isinstance(result, bool):
            raise ExpressionError("condition evaluates to a number, expected a comparison", text)
        return result

    def equation(self, text: str, source: float, target: Optional[float] = None) -> float:
        env = {"source": source}
        if target is not None:
            env["target"] = target
        result = evaluate(self.parse_equation(text), env, text)
        if isinstance(result, bool):
            raise ExpressionError("equation evaluates to a boolean, expected a number", text)
        return result

    # ── Configuration UI hints ──────────────────────

    def diagnose_condition(self, text: str, known_parameters: Optional[set[str]] = None) -> Optional[str]:
        """Return a validation hint for a condition, or None when it looks valid."""
        try:
            ast = self.parse(text)
        except ExpressionError as exc:
            return str(exc)
        if known_parameters is not None:
            unknown = identifiers(ast) - set(known_parameters)
            if unknown:
                return f"unknown identifier(s): {', '.join(sorted(unknown))}"
        try:
            result = evaluate(ast, {name: 1.0 for name in identifiers(ast)}, text)
        except ExpressionError as exc:
            if "division by zero" in str(exc):
                return None
            return str(exc)
        if not isinstance(result, bool):
            return "condition evaluates to a number, expected a comparison"
        return None

    def diagnose_equation(self, text: str) -> Optional[str]:
        try:
            ast = self.parse_equation(text)
            result = evaluate(ast, {"source": 1.0, "target": 1.0}, text)
        except ExpressionError as exc:
            if "division by zero" in str(exc):
                return None
            return str(exc)
        if isinstance(result, bool):
            return "equation evaluates to a boolean, expected a number"
        return None


_default_evaluator: Optional[ExpressionEvaluator] = None


def default_evaluator() -> ExpressionEvaluator:
    global _default_evaluator
    if _default_evaluator is None:
        _default_evaluator = ExpressionEvaluator()
    return _default_evaluator


def evaluate_condition(text: str, registers: Mapping[str, float]) -> bool:
    return default_evaluator().condition(text, registers)


def evaluate_equation(text: str, source: float, target: Optional[float] = None) -> float:
    return default_evaluator().equation(text, source, target)
