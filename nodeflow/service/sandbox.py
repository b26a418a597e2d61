"""Restricted expression evaluation for condition nodes.

Conditions are authored in the flow editor and evaluated against the
upstream value. They may compare, index, do arithmetic and call a short list
of whitelisted helpers. Attribute access, comprehensions, lambdas and every
other dynamic construct are rejected before evaluation starts.
"""
from __future__ import annotations

import ast
import operator
from collections.abc import Mapping, Sequence
from typing import Any, Callable

MAX_EXPRESSION_LENGTH = 2000
_MAX_DEPTH = 100

_BIN_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.FloorDiv: operator.floordiv,
}

_CMP_OPS: dict[type, Callable[[Any, Any], bool]] = {
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

_FORBIDDEN = (
    ast.Attribute,
    ast.Lambda,
    ast.ListComp,
    ast.SetComp,
    ast.DictComp,
    ast.GeneratorExp,
    ast.Await,
    ast.Yield,
    ast.YieldFrom,
    ast.NamedExpr,
    ast.Starred,
)

# Helpers a condition may call by name
DEFAULT_CALLABLES: Mapping[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "lower": lambda value: str(value).lower(),
    "upper": lambda value: str(value).upper(),
    "contains": lambda haystack, needle: needle in haystack,
}


class _Evaluator:
    def __init__(self, names: Mapping[str, Any], callables: Mapping[str, Any]):
        self.names = names
        self.callables = callables

    def visit(self, node: ast.AST, depth: int = 0) -> Any:
        if depth > _MAX_DEPTH:
            raise ValueError("expression too deeply nested")
        handler = getattr(self, f"_visit_{type(node).__name__}", None)
        if handler is None:
            raise ValueError(f"unsupported expression node: {type(node).__name__}")
        return handler(node, depth + 1)

    def _visit_Expression(self, node: ast.Expression, depth: int) -> Any:
        return self.visit(node.body, depth)

    def _visit_Constant(self, node: ast.Constant, depth: int) -> Any:
        return node.value

    def _visit_Name(self, node: ast.Name, depth: int) -> Any:
        if node.id in self.names:
            return self.names[node.id]
        raise ValueError(f"unknown name {node.id}")

    def _visit_BoolOp(self, node: ast.BoolOp, depth: int) -> bool:
        want_all = isinstance(node.op, ast.And)
        for value in node.values:
            truthy = bool(self.visit(value, depth))
            if want_all and not truthy:
                return False
            if not want_all and truthy:
                return True
        return want_all

    def _visit_UnaryOp(self, node: ast.UnaryOp, depth: int) -> Any:
        operand = self.visit(node.operand, depth)
        if isinstance(node.op, ast.Not):
            return not bool(operand)
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ValueError("unsupported unary operator")

    def _visit_BinOp(self, node: ast.BinOp, depth: int) -> Any:
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ValueError("unsupported binary operator")
        try:
            return op(self.visit(node.left, depth), self.visit(node.right, depth))
        except (TypeError, ZeroDivisionError) as exc:
            raise ValueError(f"invalid operands: {exc}") from exc

    def _visit_Compare(self, node: ast.Compare, depth: int) -> bool:
        left = self.visit(node.left, depth)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = _CMP_OPS.get(type(op_node))
            if op is None:
                raise ValueError("unsupported comparator")
            right = self.visit(comparator, depth)
            try:
                if not op(left, right):
                    return False
            except TypeError as exc:
                raise ValueError(f"cannot compare: {exc}") from exc
            left = right
        return True

    def _visit_IfExp(self, node: ast.IfExp, depth: int) -> Any:
        branch = node.body if self.visit(node.test, depth) else node.orelse
        return self.visit(branch, depth)

    def _visit_Call(self, node: ast.Call, depth: int) -> Any:
        if not isinstance(node.func, ast.Name):
            raise ValueError("callable references must be simple names")
        func = self.callables.get(node.func.id)
        if func is None or not callable(func):
            raise ValueError(f"callable {node.func.id} is not permitted")
        if any(kw.arg is None for kw in node.keywords):
            raise ValueError("keyword unpacking (**kwargs) not permitted")
        args = [self.visit(arg, depth) for arg in node.args]
        kwargs = {kw.arg: self.visit(kw.value, depth) for kw in node.keywords}
        try:
            return func(*args, **kwargs)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"call to {node.func.id} failed: {exc}") from exc

    def _visit_Subscript(self, node: ast.Subscript, depth: int) -> Any:
        target = self.visit(node.value, depth)
        index = self.visit(node.slice, depth)
        if not isinstance(target, (Mapping, Sequence, str, bytes)):
            raise ValueError("subscript targets must be sequences or mappings")
        try:
            return target[index]
        except (KeyError, IndexError, TypeError) as exc:
            raise ValueError(f"invalid subscript access: {exc}") from exc

    def _visit_Slice(self, node: ast.Slice, depth: int) -> slice:
        parts = [
            self.visit(part, depth) if part is not None else None
            for part in (node.lower, node.upper, node.step)
        ]
        return slice(*parts)

    def _visit_Tuple(self, node: ast.Tuple, depth: int) -> tuple:
        return tuple(self.visit(elt, depth) for elt in node.elts)

    def _visit_List(self, node: ast.List, depth: int) -> list:
        return [self.visit(elt, depth) for elt in node.elts]

    def _visit_Dict(self, node: ast.Dict, depth: int) -> dict:
        if any(key is None for key in node.keys):
            raise ValueError("dict unpacking not permitted")
        return {
            self.visit(key, depth): self.visit(value, depth)
            for key, value in zip(node.keys, node.values)
        }


def safe_eval_expr(
    expr: str,
    names: Mapping[str, Any],
    allowed_callables: Mapping[str, Any] | None = None,
) -> Any:
    """Evaluate ``expr`` against ``names`` using an AST allowlist.

    Raises ``ValueError`` for syntax errors, disallowed constructs, unknown
    names and runtime type errors, so callers only need to handle one
    exception type.
    """
    if not isinstance(expr, str) or not expr.strip():
        raise ValueError("expression must be a non-empty string")
    if len(expr) > MAX_EXPRESSION_LENGTH:
        raise ValueError("expression too long")
    try:
        parsed = ast.parse(expr.strip(), mode="eval")
    except SyntaxError as exc:
        raise ValueError("invalid expression") from exc

    for node in ast.walk(parsed):
        if isinstance(node, _FORBIDDEN):
            raise ValueError("disallowed syntax in expression")

    callables = DEFAULT_CALLABLES if allowed_callables is None else allowed_callables
    return _Evaluator(names, callables).visit(parsed)
