"""Restricted expression evaluation for decision steps and branch conditions.

Expressions use a small subset of Python syntax, parsed with :mod:`ast` and
walked node by node; nothing is handed to ``eval``. Names resolve from the
evaluation namespace (``result``, ``variables``, ``input``), attribute access
on a mapping reads the key, and missing keys evaluate to ``None``.
"""

from __future__ import annotations

import ast
import operator
from functools import lru_cache
from typing import Any, Callable, Mapping

from .errors import ExpressionError

LITERAL_ALIASES = {"true": True, "false": False, "null": None, "none": None}

ALLOWED_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "len": len,
    "min": min,
    "max": max,
    "abs": abs,
    "bool": bool,
    "int": int,
    "float": float,
    "str": str,
}

_BIN_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS: dict[type, Callable[[Any], Any]] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_COMPARE_OPS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.BinOp,
    ast.UnaryOp,
    ast.Compare,
    ast.Call,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.Attribute,
    ast.Subscript,
    ast.List,
    ast.Tuple,
    ast.IfExp,
    *_BIN_OPS,
    *_UNARY_OPS,
    *_COMPARE_OPS,
)


@lru_cache(maxsize=512)
def compile_expression(expression: str) -> ast.Expression:
    """Parse ``expression`` and reject any construct outside the grammar."""

    if not isinstance(expression, str) or not expression.strip():
        raise ExpressionError(f"Empty expression: {expression!r}")
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(f"Cannot parse {expression!r}: {exc.msg}") from exc

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ExpressionError(
                f"Unsupported syntax {type(node).__name__} in {expression!r}"
            )
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in ALLOWED_FUNCTIONS:
                raise ExpressionError(f"Call not allowed in {expression!r}")
            if node.keywords:
                raise ExpressionError(f"Keyword arguments not allowed in {expression!r}")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ExpressionError(f"Private attribute access in {expression!r}")
    return tree


def _lookup(container: Any, key: Any) -> Any:
    if isinstance(container, Mapping):
        return container.get(key)
    if isinstance(container, (list, tuple, str)) and isinstance(key, int):
        try:
            return container[key]
        except IndexError:
            return None
    return None


class _Evaluator:
    def __init__(self, namespace: Mapping[str, Any]) -> None:
        self._namespace = namespace

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}")
        return method(node)

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self._namespace:
            return self._namespace[node.id]
        lowered = node.id.lower()
        if lowered in LITERAL_ALIASES:
            return LITERAL_ALIASES[lowered]
        return None

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        return _lookup(self.visit(node.value), node.attr)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        return _lookup(self.visit(node.value), self.visit(node.slice))

    def visit_List(self, node: ast.List) -> Any:
        return [self.visit(elt) for elt in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> Any:
        return tuple(self.visit(elt) for elt in node.elts)

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        value: Any = None
        if isinstance(node.op, ast.And):
            for operand in node.values:
                value = self.visit(operand)
                if not value:
                    return value
            return value
        for operand in node.values:
            value = self.visit(operand)
            if value:
                return value
        return value

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        return _UNARY_OPS[type(node.op)](self.visit(node.operand))

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        return _BIN_OPS[type(node.op)](self.visit(node.left), self.visit(node.right))

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not _COMPARE_OPS[type(op)](left, right):
                return False
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def visit_Call(self, node: ast.Call) -> Any:
        func = ALLOWED_FUNCTIONS[node.func.id]  # type: ignore[attr-defined]
        return func(*(self.visit(arg) for arg in node.args))


def evaluate(expression: str, namespace: Mapping[str, Any]) -> Any:
    """Evaluate ``expression`` against ``namespace`` and return its value."""

    tree = compile_expression(expression)
    try:
        return _Evaluator(namespace).visit(tree)
    except ExpressionError:
        raise
    except Exception as exc:
        raise ExpressionError(f"Error evaluating {expression!r}: {exc}") from exc


def evaluate_condition(expression: str, namespace: Mapping[str, Any]) -> bool:
    """Evaluate ``expression`` and coerce the result to ``bool``."""
    return bool(evaluate(expression, namespace))
