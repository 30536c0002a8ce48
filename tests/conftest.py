import asyncio
import inspect
import os
import sys
from pathlib import Path

# Settings are read lazily, but pin the platform before anything imports them
os.environ.setdefault("ATTEST_PLATFORM", "notee")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from attested_eval.config import Settings  # noqa: E402
from attested_eval.service.attestation import NoTEEAttester  # noqa: E402
from attested_eval.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def json_stub(payload, status_code=200):
    """MockTransport handler answering every request with ``payload``."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=payload)

    return handler


def _make_runtime(
    *,
    capability_handler=None,
    outbound_handler=None,
    attester=None,
    cert_provider=None,
    registry=None,
    **settings,
) -> Runtime:
    """Runtime wired to in-memory HTTP stubs instead of the network."""
    capability_handler = capability_handler or json_stub({"status": "ok"})
    outbound_handler = outbound_handler or json_stub({"status": "ok"})
    return Runtime(
        Settings(**settings),
        attester=attester or NoTEEAttester(),
        capability_client=httpx.Client(transport=httpx.MockTransport(capability_handler)),
        outbound_client=httpx.AsyncClient(transport=httpx.MockTransport(outbound_handler)),
        registry=registry,
        cert_provider=cert_provider,
    )


@pytest.fixture
def runtime_factory():
    return _make_runtime


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
