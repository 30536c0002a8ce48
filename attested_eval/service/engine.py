"""Common execution contract for the expression backends.

An engine compiles an expression against the declared variable names of a
request, then runs the compiled program on a worker thread raced against a
deadline. Evaluators are not preemptible: when the deadline wins, the engine
stops waiting and marks the run abandoned. An abandoned run cannot start new
capability calls, calls already in flight are allowed to finish, and whatever
the run eventually produces is discarded. A run stuck in pure computation keeps
its worker thread busy until it finishes.
"""
from __future__ import annotations

import asyncio
import copy
import math
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from attested_eval.logging import get_logger
from attested_eval.service.capabilities import CapabilityRegistry
from attested_eval.service.errors import CapabilityError, DeadlineExceeded, ExecutionError

logger = get_logger(__name__)

# Largest number of arguments an expression may pass to a capability on
# backends that need a declared signature per arity.
MAX_CAPABILITY_ARITY = 8

DEFAULT_EVALUATION_WORKERS = 8


class Program(ABC):
    """A compiled expression bound to one request's variable names."""

    expression: str

    @abstractmethod
    def run(self, env: Mapping[str, Any], abandoned: threading.Event) -> Any:
        """Evaluate against ``env``; raises ``ExecutionError`` on failure."""


def to_json_value(value: Any, *, _depth: int = 0) -> Any:
    """Normalize an evaluation result to plain JSON types."""
    if _depth > 100:
        raise ExecutionError("result nested too deeply")
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ExecutionError("result is not a finite number")
        return value
    if isinstance(value, Mapping):
        out = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ExecutionError("result object keys must be strings")
            out[key] = to_json_value(item, _depth=_depth + 1)
        return out
    if isinstance(value, (list, tuple)):
        return [to_json_value(item, _depth=_depth + 1) for item in value]
    raise ExecutionError(f"result of type {type(value).__name__} is not JSON-representable")


class ExpressionEngine(ABC):
    """Compile-then-run engine shared by both expression languages."""

    name: str = "engine"

    def __init__(
        self,
        registry: CapabilityRegistry,
        *,
        max_workers: int = DEFAULT_EVALUATION_WORKERS,
    ) -> None:
        self.registry = registry
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=f"{self.name}-eval"
        )

    @abstractmethod
    def compile(self, expression: str, variables: Iterable[str]) -> Program:
        """Compile ``expression`` for the declared ``variables``.

        Raises ``CompileError`` without invoking any capability.
        """

    async def execute(
        self,
        expression: str,
        env: Mapping[str, Any],
        *,
        timeout: float,
    ) -> Any:
        """Compile and run ``expression`` with ``env`` bound, within ``timeout`` seconds."""
        program = self.compile(expression, env.keys())
        bindings = copy.deepcopy(dict(env))
        abandoned = threading.Event()
        started = time.monotonic()

        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(
            self._executor, self._run_program, program, bindings, abandoned
        )
        try:
            output = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            abandoned.set()
            logger.warning(
                "evaluation_deadline_exceeded",
                engine=self.name,
                timeout_seconds=timeout,
            )
            raise DeadlineExceeded(
                f"evaluation exceeded {timeout:g}s deadline",
                detail={"engine": self.name},
            )
        except asyncio.CancelledError:
            abandoned.set()
            logger.info("evaluation_cancelled", engine=self.name)
            raise

        elapsed = time.monotonic() - started
        if elapsed > timeout:
            # The worker held the GIL past the deadline; the loop only woke
            # once it had finished, so the late result is discarded.
            abandoned.set()
            logger.warning(
                "evaluation_finished_late",
                engine=self.name,
                timeout_seconds=timeout,
                duration_ms=round(elapsed * 1000, 2),
            )
            raise DeadlineExceeded(
                f"evaluation exceeded {timeout:g}s deadline",
                detail={"engine": self.name},
            )

        logger.debug(
            "evaluation_complete",
            engine=self.name,
            duration_ms=round(elapsed * 1000, 2),
        )
        return to_json_value(output)

    def _run_program(
        self,
        program: Program,
        bindings: dict[str, Any],
        abandoned: threading.Event,
    ) -> Any:
        try:
            return program.run(bindings, abandoned)
        finally:
            if abandoned.is_set():
                logger.info(
                    "abandoned_evaluation_finished",
                    engine=self.name,
                    expression=program.expression[:200],
                )

    def shutdown(self, *, wait: bool = False) -> None:
        """Release worker threads; abandoned runs are not waited for unless ``wait``."""
        self._executor.shutdown(wait=wait, cancel_futures=True)


def capability_failure_message(name: str, exc: CapabilityError) -> str:
    return f"calling {name}: {exc.message}"
