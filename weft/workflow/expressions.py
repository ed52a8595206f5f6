"""Safe expression evaluation for conditions, transforms and expression inputs.

Expressions are parsed with ``ast`` and walked against a whitelist: literals,
names, subscripts, arithmetic, comparisons, boolean logic, ternaries,
container displays and a small set of builtin functions. Attribute access,
dunder names, comprehensions, lambdas and imports are rejected, so an
expression can read the scope but never reach into Python objects.
"""

from __future__ import annotations

import ast
import operator
from collections.abc import Callable, Mapping
from functools import lru_cache
from typing import Any

from weft.workflow.errors import WorkflowError

_MAX_EXPRESSION_LENGTH = 2000

_BIN_OPS: dict[type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: dict[type[ast.unaryop], Callable[[Any], Any]] = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
    ast.Not: operator.not_,
}

_CMP_OPS: dict[type[ast.cmpop], Callable[[Any, Any], bool]] = {
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

SAFE_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "len": len,
    "min": min,
    "max": max,
    "sum": sum,
    "abs": abs,
    "round": round,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "sorted": sorted,
    "any": any,
    "all": all,
    "list": list,
}

_CONSTANTS = {"True": True, "False": False, "None": None, "true": True, "false": False, "null": None}

# Upper bound on the right operand of `**`.
_MAX_EXPONENT = 10_000


class ExpressionError(WorkflowError):
    """An expression could not be parsed or evaluated."""

    kind = "ExpressionError"


@lru_cache(maxsize=512)
def _parse(expression: str) -> ast.expr:
    if len(expression) > _MAX_EXPRESSION_LENGTH:
        raise ExpressionError(f"Expression too long ({len(expression)} chars)")
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(f"Invalid expression syntax: {exc.msg}") from exc
    return tree.body


class SafeExpressionEvaluator:
    """Default ``ExpressionEvaluatorPort`` adapter."""

    def __init__(self, functions: Mapping[str, Callable[..., Any]] | None = None) -> None:
        self._functions = dict(SAFE_FUNCTIONS)
        if functions:
            self._functions.update(functions)

    def evaluate(self, expression: str, scope: Mapping[str, Any]) -> Any:
        if not isinstance(expression, str) or not expression.strip():
            raise ExpressionError("Expression must be a non-empty string")
        node = _parse(expression)
        try:
            return self._eval(node, scope)
        except ExpressionError:
            raise
        except Exception as exc:
            raise ExpressionError(f"{type(exc).__name__}: {exc}") from exc

    def _eval(self, node: ast.AST, scope: Mapping[str, Any]) -> Any:
        match node:
            case ast.Constant(value=value):
                return value
            case ast.Name(id=name):
                return self._lookup(name, scope)
            case ast.BinOp(left=left, op=op, right=right):
                fn = _BIN_OPS.get(type(op))
                if fn is None:
                    raise ExpressionError(f"Operator not allowed: {type(op).__name__}")
                lhs = self._eval(left, scope)
                rhs = self._eval(right, scope)
                if isinstance(op, ast.Pow) and isinstance(rhs, (int, float)) and abs(rhs) > _MAX_EXPONENT:
                    raise ExpressionError(f"Exponent too large: {rhs}")
                return fn(lhs, rhs)
            case ast.UnaryOp(op=op, operand=operand):
                fn = _UNARY_OPS.get(type(op))
                if fn is None:
                    raise ExpressionError(f"Operator not allowed: {type(op).__name__}")
                return fn(self._eval(operand, scope))
            case ast.BoolOp(op=ast.And(), values=values):
                result: Any = True
                for value in values:
                    result = self._eval(value, scope)
                    if not result:
                        return result
                return result
            case ast.BoolOp(op=ast.Or(), values=values):
                result = False
                for value in values:
                    result = self._eval(value, scope)
                    if result:
                        return result
                return result
            case ast.Compare(left=left, ops=ops, comparators=comparators):
                lhs = self._eval(left, scope)
                for op, comparator in zip(ops, comparators, strict=True):
                    fn = _CMP_OPS.get(type(op))
                    if fn is None:
                        raise ExpressionError(f"Comparison not allowed: {type(op).__name__}")
                    rhs = self._eval(comparator, scope)
                    if not fn(lhs, rhs):
                        return False
                    lhs = rhs
                return True
            case ast.IfExp(test=test, body=body, orelse=orelse):
                if self._eval(test, scope):
                    return self._eval(body, scope)
                return self._eval(orelse, scope)
            case ast.Subscript(value=value, slice=index):
                container = self._eval(value, scope)
                return container[self._eval(index, scope)]
            case ast.Slice(lower=lower, upper=upper, step=step):
                return slice(
                    self._eval(lower, scope) if lower else None,
                    self._eval(upper, scope) if upper else None,
                    self._eval(step, scope) if step else None,
                )
            case ast.List(elts=elts):
                return [self._eval(e, scope) for e in elts]
            case ast.Tuple(elts=elts):
                return tuple(self._eval(e, scope) for e in elts)
            case ast.Set(elts=elts):
                return {self._eval(e, scope) for e in elts}
            case ast.Dict(keys=keys, values=values):
                if any(k is None for k in keys):
                    raise ExpressionError("Dict unpacking is not allowed")
                return {
                    self._eval(k, scope): self._eval(v, scope)
                    for k, v in zip(keys, values, strict=True)
                }
            case ast.Call(func=ast.Name(id=name), args=args, keywords=keywords):
                fn = self._functions.get(name)
                if fn is None:
                    raise ExpressionError(f"Function not allowed: {name}")
                if any(isinstance(a, ast.Starred) for a in args):
                    raise ExpressionError("Argument unpacking is not allowed")
                call_args = [self._eval(a, scope) for a in args]
                call_kwargs = {}
                for kw in keywords:
                    if kw.arg is None:
                        raise ExpressionError("Keyword unpacking is not allowed")
                    call_kwargs[kw.arg] = self._eval(kw.value, scope)
                return fn(*call_args, **call_kwargs)
        raise ExpressionError(f"Expression element not allowed: {type(node).__name__}")

    def _lookup(self, name: str, scope: Mapping[str, Any]) -> Any:
        if name.startswith("_"):
            raise ExpressionError(f"Name not allowed: {name}")
        if name in scope:
            return scope[name]
        if name in _CONSTANTS:
            return _CONSTANTS[name]
        raise ExpressionError(f"Unknown variable: {name}")
