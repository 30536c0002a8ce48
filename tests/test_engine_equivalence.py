"""Both expression backends honour the same execution contract."""

import time

import pytest

from attested_eval.service.capabilities import Capability, CapabilityRegistry, sprintf
from attested_eval.service.errors import (
    CapabilityError,
    CompileError,
    DeadlineExceeded,
    ExecutionError,
)
from attested_eval.service.jmespath_engine import JMESPathEngine
from attested_eval.service.pyexpr_engine import PyExprEngine

GREETING_ENV = {"greet": "Hello, %v!", "names": ["world", "you"]}


def _refuse(*args):
    raise CapabilityError("upstream said no")


def _registry(calls):
    return CapabilityRegistry(
        [
            Capability("sprintf", sprintf),
            Capability("refuse", _refuse),
            Capability("slow", lambda *args: time.sleep(0.5) or "late"),
            Capability("record", lambda *args: calls.append(args) or "recorded"),
        ]
    )


@pytest.fixture(params=[JMESPathEngine, PyExprEngine], ids=["jmespath", "pyexpr"])
def engine_and_calls(request):
    calls = []
    engine = request.param(_registry(calls))
    yield engine, calls
    engine.shutdown()


async def test_same_output(engine_and_calls):
    engine, _ = engine_and_calls

    result = await engine.execute("sprintf(greet, names[0])", GREETING_ENV, timeout=5)

    assert result == "Hello, world!"
    assert type(result) is str


async def test_capability_error_is_execution_error(engine_and_calls):
    engine, _ = engine_and_calls

    with pytest.raises(ExecutionError) as excinfo:
        await engine.execute("refuse(greet)", GREETING_ENV, timeout=5)

    assert excinfo.value.message == "calling refuse: upstream said no"
    assert excinfo.value.status_code == 500


async def test_slow_capability_exceeds_deadline(engine_and_calls):
    engine, _ = engine_and_calls

    started = time.monotonic()
    with pytest.raises(DeadlineExceeded) as excinfo:
        await engine.execute("slow()", GREETING_ENV, timeout=0.05)

    assert time.monotonic() - started < 0.4
    assert excinfo.value.status_code == 504


async def test_undeclared_name_is_compile_error(engine_and_calls):
    engine, calls = engine_and_calls

    with pytest.raises(CompileError) as excinfo:
        await engine.execute("record(greet, unknown)", GREETING_ENV, timeout=5)

    assert excinfo.value.message == "undeclared reference to 'unknown'"
    assert calls == []
