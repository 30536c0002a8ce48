"""Tests for the JMESPath backend with synthesized capability overloads."""

import asyncio
import time

import pytest

from attested_eval.service.capabilities import Capability, CapabilityRegistry, sprintf
from attested_eval.service.engine import MAX_CAPABILITY_ARITY
from attested_eval.service.errors import (
    CapabilityError,
    CompileError,
    DeadlineExceeded,
    ExecutionError,
)
from attested_eval.service.jmespath_engine import JMESPathEngine

GREETING_ENV = {"greet": "Hello, %v!", "names": ["world", "you"]}


class CountingCapability:
    def __init__(self, result=None):
        self.calls = []
        self.result = result

    def __call__(self, *args):
        self.calls.append(args)
        return self.result


def _engine(*capabilities: Capability) -> JMESPathEngine:
    return JMESPathEngine(CapabilityRegistry([Capability("sprintf", sprintf), *capabilities]))


def test_overloads_cover_every_arity():
    engine = _engine()

    overloads = engine.overloads["sprintf"]

    assert sorted(overloads) == list(range(MAX_CAPABILITY_ARITY + 1))
    assert overloads[3].overload_id == "sprintf_overload_3"
    assert len(overloads[3].signature) == 3
    assert {overload.capability.name for overload in overloads.values()} == {"sprintf"}
    engine.shutdown()


async def test_sprintf_greets_first_name():
    engine = _engine()

    result = await engine.execute("sprintf(greet, names[0])", GREETING_ENV, timeout=5)

    assert result == "Hello, world!"
    engine.shutdown()


async def test_builtins_and_projections_still_work():
    engine = _engine()
    env = {"people": [{"name": "a", "age": 30}, {"name": "b", "age": 12}]}

    names = await engine.execute("people[?age > `18`].name", env, timeout=5)
    count = await engine.execute("length(people)", env, timeout=5)

    assert names == ["a"]
    assert count == 2
    engine.shutdown()


async def test_capability_receives_every_argument():
    recorder = CountingCapability(result="done")
    engine = _engine(Capability("record", recorder))
    env = {"a": 1, "b": [1, 2], "c": {"k": None}}

    result = await engine.execute("record(a, b, c, `true`, 'raw')", env, timeout=5)

    assert result == "done"
    assert recorder.calls == [(1, [1, 2], {"k": None}, True, "raw")]
    engine.shutdown()


async def test_projection_results_reach_capabilities_as_lists():
    recorder = CountingCapability(result=0)
    engine = _engine(Capability("record", recorder))

    await engine.execute("record(items[*].id)", {"items": [{"id": 1}, {"id": 2}]}, timeout=5)

    assert recorder.calls == [([1, 2],)]
    assert type(recorder.calls[0][0]) is list
    engine.shutdown()


@pytest.mark.parametrize(
    "expression, message",
    [
        ("missing", "undeclared reference to 'missing'"),
        ("sprintf(greet, missing)", "undeclared reference to 'missing'"),
        ("nope(greet)", "undeclared reference to function 'nope'"),
        ("length(greet, names)", "length() takes 1 arguments, got 2"),
        ("sprintf(", "parsing expression"),
    ],
)
def test_compile_errors(expression, message):
    recorder = CountingCapability()
    engine = _engine(Capability("record", recorder))

    with pytest.raises(CompileError) as excinfo:
        engine.compile(expression, GREETING_ENV.keys())

    assert message in excinfo.value.message
    assert recorder.calls == []
    engine.shutdown()


def test_nested_fields_are_not_root_references():
    engine = _engine()

    engine.compile("names[?length(@) > `3`] | [0]", ["names"])
    engine.compile("people[*].address.city", ["people"])
    engine.compile("sort_by(people, &age)", ["people"])
    engine.shutdown()


async def test_undeclared_reference_never_calls_capabilities():
    recorder = CountingCapability(result="x")
    engine = _engine(Capability("record", recorder))

    with pytest.raises(CompileError):
        await engine.execute("record(unknown)", {"known": 1}, timeout=5)

    assert recorder.calls == []
    engine.shutdown()


def test_arity_above_limit_fails_to_compile():
    engine = _engine()
    args = ", ".join(["greet"] * (MAX_CAPABILITY_ARITY + 1))

    with pytest.raises(CompileError, match="no overload of sprintf takes 9 arguments"):
        engine.compile(f"sprintf({args})", ["greet"])
    engine.shutdown()


def test_capability_may_not_shadow_builtin():
    with pytest.raises(ValueError, match="shadow JMESPath builtins: length"):
        JMESPathEngine(CapabilityRegistry([Capability("length", len)]))


async def test_capability_error_becomes_execution_error():
    def refuse(*args):
        raise CapabilityError("upstream said no")

    engine = _engine(Capability("refuse", refuse))

    with pytest.raises(ExecutionError) as excinfo:
        await engine.execute("refuse(greet)", GREETING_ENV, timeout=5)

    assert excinfo.value.message == "calling refuse: upstream said no"
    engine.shutdown()


async def test_runtime_type_error_is_execution_error():
    engine = _engine()

    with pytest.raises(ExecutionError, match="evaluating expression"):
        await engine.execute("length(count)", {"count": 5}, timeout=5)
    engine.shutdown()


async def test_deadline_is_enforced_for_slow_capability():
    engine = _engine(Capability("slow", lambda *args: time.sleep(0.5) or "late"))

    started = time.monotonic()
    with pytest.raises(DeadlineExceeded):
        await engine.execute("slow(greet)", GREETING_ENV, timeout=0.05)

    assert time.monotonic() - started < 0.4
    engine.shutdown()


async def test_concurrent_executions_do_not_share_bindings():
    engine = _engine()

    results = await asyncio.gather(
        *[
            engine.execute("sprintf('%v-%v', who, names[0])", {"who": i, "names": [f"n{i}"]}, timeout=5)
            for i in range(20)
        ]
    )

    assert results == [f"{i}-n{i}" for i in range(20)]
    engine.shutdown()


@pytest.mark.parametrize(
    "expression",
    [
        "@.missing",
        "record(@.missing)",
        "[@.missing]",
        "{out: @.missing}",
        "@ | missing",
        "@ | @ | missing",
        "(@).missing",
    ],
)
async def test_current_node_at_root_is_checked_like_the_root(expression):
    recorder = CountingCapability(result="x")
    engine = _engine(Capability("record", recorder))

    with pytest.raises(CompileError) as excinfo:
        await engine.execute(expression, GREETING_ENV, timeout=5)

    assert excinfo.value.message == "undeclared reference to 'missing'"
    assert recorder.calls == []
    engine.shutdown()


async def test_current_node_reaches_declared_variables():
    engine = _engine()

    assert await engine.execute("@.greet", GREETING_ENV, timeout=5) == "Hello, %v!"
    assert await engine.execute("sprintf(@.greet, @ | names[1])", GREETING_ENV, timeout=5) == "Hello, you!"
    # inside a projection @ is the element, not the root
    engine.compile("names[?@.first == 'x']", ["names"])
    engine.shutdown()


async def test_concurrent_executions_with_distinct_names():
    engine = _engine()

    async def run(i):
        # odd tasks reference the next task's variable, which they never declare
        name = f"v{i}" if i % 2 == 0 else f"v{i + 1}"
        return await engine.execute(name, {f"v{i}": i}, timeout=5)

    results = await asyncio.gather(*[run(i) for i in range(20)], return_exceptions=True)

    for i, result in enumerate(results):
        if i % 2 == 0:
            assert result == i
        else:
            assert isinstance(result, CompileError)
            assert result.message == f"undeclared reference to 'v{i + 1}'"
    engine.shutdown()
