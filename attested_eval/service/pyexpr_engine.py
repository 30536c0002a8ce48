"""Restricted Python-expression backend.

Expressions use Python expression syntax checked against an AST allowlist:
only boolean operators, comparisons, arithmetic, conditional expressions,
indexing, literal displays and calls of whitelisted capabilities by bare
name. Attribute syntax ``a.b`` is a mapping-key lookup, never ``getattr``.
Capabilities accept a true variable-length argument list, so no overloads
are synthesized.
"""
from __future__ import annotations

import ast
import operator
import threading
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from attested_eval.logging import get_logger
from attested_eval.service.capabilities import CapabilityRegistry
from attested_eval.service.engine import ExpressionEngine, Program, capability_failure_message
from attested_eval.service.errors import CapabilityError, CompileError, ExecutionError

logger = get_logger(__name__)

# Bounds on what one arithmetic step may build. Big-int and sequence
# operators run as a single C call holding the GIL, which the evaluation
# deadline cannot interrupt once started.
MAX_INT_BITS = 1 << 16
MAX_SEQUENCE_LENGTH = 1 << 20


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _checked_pow(base: Any, exponent: Any) -> Any:
    if _is_int(base) and _is_int(exponent) and exponent > 0 and abs(base) > 1:
        if base.bit_length() * exponent > MAX_INT_BITS:
            raise ValueError(f"result of ** would exceed {MAX_INT_BITS} bits")
    return operator.pow(base, exponent)


def _checked_mul(left: Any, right: Any) -> Any:
    if _is_int(left) and _is_int(right):
        if left.bit_length() + right.bit_length() > MAX_INT_BITS:
            raise ValueError(f"result of * would exceed {MAX_INT_BITS} bits")
        return operator.mul(left, right)
    if isinstance(left, (str, list)) and _is_int(right):
        sequence, count = left, right
    elif isinstance(right, (str, list)) and _is_int(left):
        sequence, count = right, left
    else:
        return operator.mul(left, right)
    if len(sequence) * count > MAX_SEQUENCE_LENGTH:
        raise ValueError(f"repeated sequence would exceed {MAX_SEQUENCE_LENGTH} items")
    return operator.mul(sequence, count)


def _checked_mod(left: Any, right: Any) -> Any:
    # printf-style widths ("%099999999d") are another unbounded builder
    if isinstance(left, str):
        raise TypeError("% formatting of strings is not permitted")
    return operator.mod(left, right)


_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: _checked_mul,
    ast.Div: operator.truediv,
    ast.Mod: _checked_mod,
    ast.Pow: _checked_pow,
    ast.FloorDiv: operator.floordiv,
}

# No identity operators: JSON values compare by value only.
_CMP_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_UNARY_OPS = (ast.Not, ast.USub, ast.UAdd)

_ALLOWED_NODES = (
    ast.Expression,
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.BinOp,
    ast.Compare,
    ast.IfExp,
    ast.Call,
    ast.Subscript,
    ast.Slice,
    ast.Attribute,
    ast.Tuple,
    ast.List,
    ast.Dict,
    *_UNARY_OPS,
    *_BIN_OPS,
    *_CMP_OPS,
)

_CONSTANT_TYPES = (str, int, float, bool, type(None))

_MAX_RECURSION_DEPTH = 100

# Evaluation errors an expression can legitimately raise at runtime
_RUNTIME_ERRORS = (
    ValueError,
    TypeError,
    KeyError,
    IndexError,
    ZeroDivisionError,
    OverflowError,
    RecursionError,
)


def _validate(tree: ast.Expression, variables: frozenset, capabilities: Mapping[str, Any]) -> None:
    call_targets = set()
    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise CompileError(f"disallowed syntax in expression: {type(node).__name__}")

        if isinstance(node, ast.Constant) and not isinstance(node.value, _CONSTANT_TYPES):
            raise CompileError(f"unsupported literal of type {type(node.value).__name__}")

        if isinstance(node, ast.Dict) and any(key is None for key in node.keys):
            raise CompileError("dict unpacking is not permitted")

        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name):
                raise CompileError("callable references must be simple names")
            if node.func.id not in capabilities:
                raise CompileError(f"undeclared reference to function '{node.func.id}'")
            if node.keywords:
                raise CompileError("keyword arguments are not permitted")
            call_targets.add(id(node.func))

    for node in ast.walk(tree):
        if isinstance(node, ast.Name) and id(node) not in call_targets:
            if node.id not in variables:
                raise CompileError(f"undeclared reference to '{node.id}'")


class _Evaluator:
    """Walks a validated tree for a single run."""

    def __init__(
        self,
        env: Mapping[str, Any],
        capabilities: CapabilityRegistry,
        abandoned: threading.Event,
    ) -> None:
        self.env = env
        self.capabilities = capabilities
        self.abandoned = abandoned

    def eval(self, node: ast.AST, _depth: int = 0) -> Any:
        if _depth > _MAX_RECURSION_DEPTH:
            raise ValueError("expression too deeply nested")
        depth = _depth + 1

        if isinstance(node, ast.Expression):
            return self.eval(node.body, depth)

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            return self.env[node.id]

        if isinstance(node, ast.BoolOp):
            # Short-circuit like Python, returning the deciding operand
            result: Any = None
            for value in node.values:
                result = self.eval(value, depth)
                if isinstance(node.op, ast.And) and not result:
                    break
                if isinstance(node.op, ast.Or) and result:
                    break
            return result

        if isinstance(node, ast.UnaryOp):
            operand = self.eval(node.operand, depth)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub):
                return -operand
            return +operand

        if isinstance(node, ast.BinOp):
            op = _BIN_OPS[type(node.op)]
            return op(self.eval(node.left, depth), self.eval(node.right, depth))

        if isinstance(node, ast.Compare):
            left = self.eval(node.left, depth)
            for op_node, comparator in zip(node.ops, node.comparators):
                right = self.eval(comparator, depth)
                if not _CMP_OPS[type(op_node)](left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            if self.eval(node.test, depth):
                return self.eval(node.body, depth)
            return self.eval(node.orelse, depth)

        if isinstance(node, ast.Call):
            return self._call(node, depth)

        if isinstance(node, ast.Subscript):
            target = self.eval(node.value, depth)
            if not isinstance(target, (Mapping, Sequence)):
                raise TypeError(f"{type(target).__name__} is not subscriptable")
            if isinstance(node.slice, ast.Slice):
                if isinstance(target, Mapping):
                    raise TypeError("objects cannot be sliced")
                return target[self._slice(node.slice, depth)]
            return target[self.eval(node.slice, depth)]

        if isinstance(node, ast.Attribute):
            target = self.eval(node.value, depth)
            if not isinstance(target, Mapping):
                raise TypeError(f"{type(target).__name__} has no key {node.attr!r}")
            return target[node.attr]

        if isinstance(node, (ast.Tuple, ast.List)):
            return [self.eval(elt, depth) for elt in node.elts]

        if isinstance(node, ast.Dict):
            out = {}
            for key_node, value_node in zip(node.keys, node.values):
                key = self.eval(key_node, depth)
                if not isinstance(key, str):
                    raise TypeError("object keys must be strings")
                out[key] = self.eval(value_node, depth)
            return out

        raise ValueError(f"unsupported expression node: {type(node).__name__}")

    def _slice(self, node: ast.Slice, depth: int) -> slice:
        parts = []
        for part in (node.lower, node.upper, node.step):
            value = None if part is None else self.eval(part, depth)
            if value is not None and (not isinstance(value, int) or isinstance(value, bool)):
                raise TypeError("slice bounds must be integers")
            parts.append(value)
        return slice(*parts)

    def _call(self, node: ast.Call, depth: int) -> Any:
        name = node.func.id
        args = [self.eval(arg, depth) for arg in node.args]
        try:
            result = self.capabilities[name].invoke(args, abandoned=self.abandoned)
        except CapabilityError as exc:
            raise ExecutionError(
                capability_failure_message(name, exc), detail={"capability": name}
            ) from exc
        if isinstance(result, tuple):
            result = list(result)
        return result


class PyExprProgram(Program):
    def __init__(self, expression: str, tree: ast.Expression, capabilities: CapabilityRegistry) -> None:
        self.expression = expression
        self._tree = tree
        self._capabilities = capabilities

    def run(self, env: Mapping[str, Any], abandoned: threading.Event) -> Any:
        evaluator = _Evaluator(env, self._capabilities, abandoned)
        try:
            return evaluator.eval(self._tree)
        except ExecutionError:
            raise
        except _RUNTIME_ERRORS as exc:
            raise ExecutionError(f"evaluating expression: {type(exc).__name__}: {exc}") from exc


class PyExprEngine(ExpressionEngine):
    """Natively variadic backend over a Python AST allowlist."""

    name = "pyexpr"

    def compile(self, expression: str, variables: Iterable[str]) -> Program:
        if not isinstance(expression, str) or not expression.strip():
            raise CompileError("expression is empty")
        try:
            tree = ast.parse(expression.strip(), mode="eval")
        except SyntaxError as exc:
            raise CompileError(f"invalid expression: {exc.msg}") from exc
        except (ValueError, RecursionError, MemoryError) as exc:
            raise CompileError("invalid expression") from exc

        try:
            _validate(tree, frozenset(variables), self.registry)
        except RecursionError as exc:
            raise CompileError("expression too deeply nested") from exc
        return PyExprProgram(expression, tree, self.registry)
