"""Tests for the capability registry and the built-in host functions."""

import threading

import httpx
import pytest

from attested_eval.service.capabilities import (
    Capability,
    CapabilityRegistry,
    default_registry,
    make_http_get,
    sprintf,
)
from attested_eval.service.errors import CapabilityError


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestSprintf:
    def test_formats_value_verb(self):
        assert sprintf("Hello, %v!", "world") == "Hello, world!"

    def test_formats_go_style_composites(self):
        assert sprintf("%v", [1, "a", True]) == "[1 a true]"
        assert sprintf("%v", {"b": 2, "a": None}) == "map[a:<nil> b:2]"

    def test_integral_float_prints_without_fraction(self):
        assert sprintf("%v and %v", 3.0, 2.5) == "3 and 2.5"

    def test_typed_verbs(self):
        assert sprintf("%d %t %q %s", 7, False, "hi", "there") == '7 false "hi" there'

    def test_literal_percent(self):
        assert sprintf("100%%") == "100%"

    def test_missing_and_extra_operands(self):
        assert sprintf("%v %v", "one") == "one %!v(MISSING)"
        assert sprintf("%v", "one", 2) == "one%!(EXTRA int=2)"

    def test_wrong_type_for_verb(self):
        assert sprintf("%d", "x") == "%!d(string=x)"

    def test_requires_string_format(self):
        with pytest.raises(CapabilityError, match="format should be a string"):
            sprintf(42)
        with pytest.raises(CapabilityError, match="format string not provided"):
            sprintf()


class TestHttpGet:
    def test_returns_decoded_json(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json={"status": "ok"})

        http_get = make_http_get(_client(handler))

        assert http_get("http://upstream.test/status") == {"status": "ok"}
        assert seen == ["http://upstream.test/status"]

    def test_requires_url(self):
        http_get = make_http_get(_client(lambda request: httpx.Response(200, json={})))

        with pytest.raises(CapabilityError, match="url not provided"):
            http_get()
        with pytest.raises(CapabilityError, match="url should be a string"):
            http_get(12)

    def test_non_200_is_an_error(self):
        http_get = make_http_get(_client(lambda request: httpx.Response(503)))

        with pytest.raises(CapabilityError, match="received non-200 response: 503"):
            http_get("http://upstream.test/")

    def test_non_json_body_is_an_error(self):
        http_get = make_http_get(_client(lambda request: httpx.Response(200, text="<html>")))

        with pytest.raises(CapabilityError, match="decoding JSON response"):
            http_get("http://upstream.test/")

    def test_transport_failure_is_an_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        http_get = make_http_get(_client(handler))

        with pytest.raises(CapabilityError, match="making GET req to 'http://upstream.test/'"):
            http_get("http://upstream.test/")


class TestRegistry:
    def test_default_registry_whitelist(self):
        registry = default_registry(_client(lambda request: httpx.Response(200, json={})))

        assert sorted(registry) == ["http_get", "sprintf"]
        assert registry["sprintf"].invoke(["%v", 1]) == "1"

    def test_rejects_invalid_and_duplicate_names(self):
        with pytest.raises(ValueError, match="invalid capability name"):
            CapabilityRegistry([Capability("not-a-name", sprintf)])
        with pytest.raises(ValueError, match="invalid capability name"):
            CapabilityRegistry([Capability("lambda", sprintf)])
        with pytest.raises(ValueError, match="duplicate capability"):
            CapabilityRegistry([Capability("f", sprintf), Capability("f", sprintf)])

    def test_registry_is_read_only(self):
        registry = CapabilityRegistry([Capability("f", sprintf)])

        with pytest.raises(TypeError):
            registry["g"] = Capability("g", sprintf)  # type: ignore[index]

    def test_unexpected_exceptions_become_capability_errors(self):
        def explode(*args):
            raise KeyError("missing")

        with pytest.raises(CapabilityError, match="explode"):
            Capability("explode", explode).invoke([])

    def test_abandoned_run_cannot_start_calls(self):
        calls = []
        capability = Capability("record", lambda *args: calls.append(args))
        abandoned = threading.Event()
        abandoned.set()

        with pytest.raises(CapabilityError, match="abandoned"):
            capability.invoke([1], abandoned=abandoned)
        assert calls == []
