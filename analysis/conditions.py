# SPDX-License-Identifier: MIT
"""Success/failure condition expressions over a measured ``result``.

Conditions use a small expression language (``result[0] >= 0.95 && !isNaN(result[0])``).
They are translated to a Python expression, parsed with :mod:`ast` and
evaluated by walking a whitelisted subset of nodes. Nothing is ever passed to
``eval``.
"""

from __future__ import annotations

import ast
import math
import operator
import re
from functools import lru_cache
from typing import Any, Callable, Mapping

__all__ = [
    "ConditionError",
    "compile_condition",
    "evaluate_condition",
    "translate",
]


class ConditionError(ValueError):
    """Raised when a condition cannot be parsed or evaluated."""


_TOKEN = re.compile(
    r"""
    (?P<string>"(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')
    | (?P<and>&&)
    | (?P<or>\|\|)
    | (?P<not>!(?!=))
    | (?P<word>\b(?:true|false|nil)\b)
    """,
    re.VERBOSE,
)

_WORDS = {"true": "True", "false": "False", "nil": "None"}


def translate(expression: str) -> str:
    """Rewrite condition syntax into the equivalent Python expression."""

    def _replace(match: re.Match[str]) -> str:
        kind = match.lastgroup
        text = match.group(0)
        if kind == "string":
            return text
        if kind == "and":
            return " and "
        if kind == "or":
            return " or "
        if kind == "not":
            return " not "
        return _WORDS[text]

    return _TOKEN.sub(_replace, expression)


def _is_nan(value: Any) -> bool:
    try:
        return math.isnan(float(value))
    except (TypeError, ValueError):
        return False


def _is_inf(value: Any) -> bool:
    try:
        return math.isinf(float(value))
    except (TypeError, ValueError):
        return False


def _default(value: Any, fallback: Any) -> Any:
    if value is None or _is_nan(value):
        return fallback
    return value


def _as_int(value: Any) -> int:
    if isinstance(value, str):
        return int(float(value.strip()))
    return int(value)


def _as_float(value: Any) -> float:
    if isinstance(value, str):
        return float(value.strip())
    return float(value)


FUNCTIONS: Mapping[str, Callable[..., Any]] = {
    "len": len,
    "abs": abs,
    "min": min,
    "max": max,
    "all": all,
    "any": any,
    "sum": sum,
    "float": float,
    "int": int,
    "isNaN": _is_nan,
    "isInf": _is_inf,
    "default": _default,
    "asInt": _as_int,
    "asFloat": _as_float,
}

_CONSTANT_NAMES = {"True": True, "False": False, "None": None}

_BIN_OPS: Mapping[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_COMPARE_OPS: Mapping[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
}


class _Validator(ast.NodeVisitor):
    """Reject any syntax outside the supported expression subset."""

    _ALLOWED = (
        ast.Expression,
        ast.BoolOp,
        ast.And,
        ast.Or,
        ast.UnaryOp,
        ast.Not,
        ast.USub,
        ast.UAdd,
        ast.BinOp,
        ast.Compare,
        ast.Constant,
        ast.Name,
        ast.Load,
        ast.Subscript,
        ast.Call,
        ast.List,
        ast.Tuple,
        ast.IfExp,
    )

    def generic_visit(self, node: ast.AST) -> None:
        if isinstance(node, (ast.operator, ast.cmpop)):
            if type(node) not in _BIN_OPS and type(node) not in _COMPARE_OPS:
                raise ConditionError(f"operator {type(node).__name__} is not supported")
            return
        if not isinstance(node, self._ALLOWED):
            raise ConditionError(f"{type(node).__name__} is not allowed in conditions")
        super().generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id != "result" and node.id not in _CONSTANT_NAMES and node.id not in FUNCTIONS:
            raise ConditionError(f"unknown name {node.id!r}")

    def visit_Call(self, node: ast.Call) -> None:
        if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
            raise ConditionError("only built-in condition functions may be called")
        if node.keywords:
            raise ConditionError("keyword arguments are not supported")
        for argument in node.args:
            self.visit(argument)


@lru_cache(maxsize=512)
def compile_condition(expression: str) -> ast.Expression:
    """Parse and validate ``expression``; results are cached per string."""

    source = translate(expression).strip()
    if not source:
        raise ConditionError("condition is empty")
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as exc:
        raise ConditionError(f"invalid condition {expression!r}: {exc.msg}") from exc
    _Validator().visit(tree)
    return tree


def _evaluate(node: ast.AST, result: Any) -> Any:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body, result)
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        if node.id == "result":
            return result
        return _CONSTANT_NAMES[node.id]
    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            value: Any = True
            for operand in node.values:
                value = _evaluate(operand, result)
                if not value:
                    return value
            return value
        value = False
        for operand in node.values:
            value = _evaluate(operand, result)
            if value:
                return value
        return value
    if isinstance(node, ast.UnaryOp):
        operand = _evaluate(node.operand, result)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        return +operand
    if isinstance(node, ast.BinOp):
        return _BIN_OPS[type(node.op)](_evaluate(node.left, result), _evaluate(node.right, result))
    if isinstance(node, ast.Compare):
        left = _evaluate(node.left, result)
        for op, comparator in zip(node.ops, node.comparators):
            right = _evaluate(comparator, result)
            if not _COMPARE_OPS[type(op)](left, right):
                return False
            left = right
        return True
    if isinstance(node, ast.Subscript):
        return _evaluate(node.value, result)[_evaluate(node.slice, result)]
    if isinstance(node, ast.Call):
        func = FUNCTIONS[node.func.id]  # type: ignore[attr-defined]
        return func(*[_evaluate(argument, result) for argument in node.args])
    if isinstance(node, ast.List):
        return [_evaluate(element, result) for element in node.elts]
    if isinstance(node, ast.Tuple):
        return tuple(_evaluate(element, result) for element in node.elts)
    if isinstance(node, ast.IfExp):
        if _evaluate(node.test, result):
            return _evaluate(node.body, result)
        return _evaluate(node.orelse, result)
    raise ConditionError(f"{type(node).__name__} is not allowed in conditions")


def evaluate_condition(expression: str, result: Any) -> bool:
    """Evaluate ``expression`` with ``result`` bound to the measured value.

    Raises:
        ConditionError: the expression is invalid, fails at runtime or does
            not produce a boolean.
    """

    tree = compile_condition(expression)
    try:
        value = _evaluate(tree, result)
    except ConditionError:
        raise
    except (TypeError, ValueError, KeyError, IndexError, ArithmeticError) as exc:
        raise ConditionError(f"condition {expression!r} failed: {exc}") from exc
    if not isinstance(value, bool):
        raise ConditionError(f"condition {expression!r} returned {type(value).__name__}, expected bool")
    return value
