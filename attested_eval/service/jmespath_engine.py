"""JMESPath expression backend.

JMESPath declares one fixed signature per function, so a variadic capability
cannot be registered as a single function. At construction the engine
synthesizes one overload per arity from 0 to ``MAX_CAPABILITY_ARITY`` for
every capability, each parameter accepting any JSON type, all bound to the
same capability. Calls with more arguments than that fail to compile.

The request ``env`` is the JMESPath root document, so a bare field reference
at the root of the expression names a variable and must be declared.
"""
from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

import jmespath
from jmespath import exceptions as jmespath_exceptions
from jmespath import functions as jmespath_functions

from attested_eval.logging import get_logger
from attested_eval.service.capabilities import Capability, CapabilityRegistry
from attested_eval.service.engine import (
    DEFAULT_EVALUATION_WORKERS,
    MAX_CAPABILITY_ARITY,
    ExpressionEngine,
    Program,
    capability_failure_message,
)
from attested_eval.service.errors import CapabilityError, CompileError, ExecutionError

logger = get_logger(__name__)

_JSON_PARAMETER = {"types": ["number", "string", "boolean", "array", "object", "null"]}

BUILTIN_FUNCTIONS = jmespath_functions.Functions.FUNCTION_TABLE

# Children after the first of these nodes are evaluated against the current
# element rather than the root document.
_SCOPING_NODES = frozenset(
    {
        "subexpression",
        "index_expression",
        "pipe",
        "projection",
        "value_projection",
        "filter_projection",
    }
)

# Scoping nodes whose right side sees exactly the left side's value
_ROOT_PRESERVING_NODES = frozenset({"subexpression", "pipe"})


def _aliases_root(node: Any) -> bool:
    """True when ``node`` evaluates to the current element unchanged."""
    if not isinstance(node, Mapping):
        return False
    if node.get("type") == "current":
        return True
    if node.get("type") == "pipe":
        return all(_aliases_root(child) for child in node.get("children", ()))
    return False


@dataclass(frozen=True)
class Overload:
    overload_id: str
    arity: int
    signature: tuple
    capability: Capability


class CapabilityFailure(jmespath_exceptions.JMESPathError):
    """Capability error carried through JMESPath's own error path."""

    def __init__(self, function_name: str, error: CapabilityError) -> None:
        super().__init__(capability_failure_message(function_name, error))
        self.function_name = function_name
        self.error = error


def synthesize_overloads(capability: Capability) -> Mapping[int, Overload]:
    return MappingProxyType(
        {
            arity: Overload(
                overload_id=f"{capability.name}_overload_{arity}",
                arity=arity,
                signature=(_JSON_PARAMETER,) * arity,
                capability=capability,
            )
            for arity in range(MAX_CAPABILITY_ARITY + 1)
        }
    )


def _plain(value: Any) -> Any:
    # Projections are list subclasses; capabilities only ever see dict/list.
    if isinstance(value, Mapping):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return value


class _BoundFunctions(jmespath_functions.Functions):
    """Function table for one run: builtins plus the synthesized overloads."""

    def __init__(
        self,
        overloads: Mapping[str, Mapping[int, Overload]],
        abandoned: threading.Event,
    ) -> None:
        self._overloads = overloads
        self._abandoned = abandoned

    def call_function(self, function_name, resolved_args):
        table = self._overloads.get(function_name)
        if table is None:
            return super().call_function(function_name, resolved_args)
        overload = table.get(len(resolved_args))
        if overload is None:
            raise jmespath_exceptions.ArityError(
                MAX_CAPABILITY_ARITY, len(resolved_args), function_name
            )
        self._validate_arguments(resolved_args, overload.signature, function_name)
        try:
            result = overload.capability.invoke(
                [_plain(arg) for arg in resolved_args], abandoned=self._abandoned
            )
        except CapabilityError as exc:
            raise CapabilityFailure(function_name, exc) from exc
        if isinstance(result, tuple):
            result = list(result)
        return result


class JMESPathProgram(Program):
    def __init__(
        self,
        expression: str,
        parsed: jmespath.parser.ParsedResult,
        overloads: Mapping[str, Mapping[int, Overload]],
    ) -> None:
        self.expression = expression
        self._parsed = parsed
        self._overloads = overloads

    def run(self, env: Mapping[str, Any], abandoned: threading.Event) -> Any:
        options = jmespath.Options(custom_functions=_BoundFunctions(self._overloads, abandoned))
        try:
            return self._parsed.search(dict(env), options=options)
        except CapabilityFailure as exc:
            raise ExecutionError(str(exc), detail={"capability": exc.function_name}) from exc
        except jmespath_exceptions.JMESPathError as exc:
            raise ExecutionError(f"evaluating expression: {exc}") from exc
        except (TypeError, ValueError, RecursionError) as exc:
            raise ExecutionError(f"evaluating expression: {exc}") from exc


class JMESPathEngine(ExpressionEngine):
    """Statically overloaded backend built on the ``jmespath`` library."""

    name = "jmespath"

    def __init__(
        self,
        registry: CapabilityRegistry,
        *,
        max_workers: int = DEFAULT_EVALUATION_WORKERS,
    ) -> None:
        shadowed = sorted(name for name in registry if name in BUILTIN_FUNCTIONS)
        if shadowed:
            raise ValueError(f"capabilities shadow JMESPath builtins: {', '.join(shadowed)}")
        super().__init__(registry, max_workers=max_workers)
        self._overloads = MappingProxyType(
            {name: synthesize_overloads(capability) for name, capability in registry.items()}
        )

    @property
    def overloads(self) -> Mapping[str, Mapping[int, Overload]]:
        return self._overloads

    def compile(self, expression: str, variables: Iterable[str]) -> Program:
        if not isinstance(expression, str) or not expression.strip():
            raise CompileError("expression is empty")
        try:
            parsed = jmespath.compile(expression)
        except jmespath_exceptions.JMESPathError as exc:
            raise CompileError(f"parsing expression: {exc}") from exc
        except RecursionError as exc:
            raise CompileError("expression too deeply nested") from exc

        declared = frozenset(variables)
        try:
            self._check(parsed.parsed, declared, rooted=True)
        except RecursionError as exc:
            raise CompileError("expression too deeply nested") from exc
        return JMESPathProgram(expression, parsed, self._overloads)

    def _check(self, node: Mapping[str, Any], declared: frozenset, *, rooted: bool) -> None:
        node_type = node.get("type")

        if node_type == "field":
            if rooted and node["value"] not in declared:
                raise CompileError(f"undeclared reference to '{node['value']}'")
            return

        if node_type == "expref":
            rooted = False

        if node_type == "function_expression":
            self._check_call(node["value"], len(node["children"]))

        children = node.get("children", ())
        # "@.name" and "@ | name" at the root still look up variables
        keeps_root = (
            rooted
            and node_type in _ROOT_PRESERVING_NODES
            and bool(children)
            and _aliases_root(children[0])
        )
        for position, child in enumerate(children):
            # Slices carry plain ints, not nodes.
            if not isinstance(child, Mapping):
                continue
            child_rooted = rooted
            if node_type in _SCOPING_NODES and position > 0:
                child_rooted = keeps_root
            self._check(child, declared, rooted=child_rooted)

    def _check_call(self, name: str, arity: int) -> None:
        table = self._overloads.get(name)
        if table is not None:
            if arity not in table:
                raise CompileError(
                    f"no overload of {name} takes {arity} arguments "
                    f"(at most {MAX_CAPABILITY_ARITY})"
                )
            return

        builtin = BUILTIN_FUNCTIONS.get(name)
        if builtin is None:
            raise CompileError(f"undeclared reference to function '{name}'")
        signature = builtin["signature"]
        if signature and signature[-1].get("variadic"):
            if arity < len(signature):
                raise CompileError(
                    f"{name}() takes at least {len(signature)} arguments, got {arity}"
                )
        elif arity != len(signature):
            raise CompileError(f"{name}() takes {len(signature)} arguments, got {arity}")
