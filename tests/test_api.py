"""End-to-end tests of the attested endpoints through the FastAPI app."""

import base64
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from attested_eval.api.schemas import ApiCallResponse, CertResponse, ExpressionResponse
from attested_eval.app import create_app
from attested_eval.client import verify_api_call_result, verify_expression_result
from attested_eval.service.attestation import AttestResult, NoTEEVerifier
from attested_eval.service.capabilities import Capability, CapabilityRegistry, sprintf
from attested_eval.service.certs import FileCertProvider, chain_fingerprint, der_chain_to_pem

GREETING = {"expression": "sprintf(greet, names[0])", "env": {"greet": "Hello, %v!", "names": ["world", "you"]}}


class FailingAttester:
    platform = "notee"

    def attest(self, *, user_data=None, nonce=None):
        raise RuntimeError("attestation device unavailable")


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@pytest.fixture
def client(runtime_factory):
    with TestClient(create_app(runtime_factory())) as test_client:
        yield test_client


def test_health(client):
    resp = client.get("/healthz")

    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.parametrize("path", ["/v1/attest-jmespath", "/v1/attest-pyexpr"])
def test_expression_endpoints_greet(client, path):
    resp = client.post(path, json=GREETING)

    assert resp.status_code == 200
    body = resp.json()
    assert body["result"] == {**GREETING, "output": "Hello, world!"}
    verify_expression_result(NoTEEVerifier(), ExpressionResponse.model_validate(body))


@pytest.mark.parametrize("path", ["/v1/attest-jmespath", "/v1/attest-pyexpr"])
def test_http_get_result_is_attested(runtime_factory, path):
    requested = []

    def upstream(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(200, json={"status": "ok"})

    runtime = runtime_factory(capability_handler=upstream)
    with TestClient(create_app(runtime)) as client:
        resp = client.post(path, json={"expression": "http_get(url)", "env": {"url": "http://upstream.test/status"}})

    assert resp.status_code == 200
    response = ExpressionResponse.model_validate(resp.json())
    assert response.result.output == {"status": "ok"}
    assert requested == ["http://upstream.test/status"]
    verified = verify_expression_result(NoTEEVerifier(), response)
    assert verified.nonce is None


def test_attester_failure_returns_error_without_attestation(runtime_factory):
    with TestClient(create_app(runtime_factory(attester=FailingAttester()))) as client:
        resp = client.post("/v1/attest-pyexpr", json=GREETING)

    assert resp.status_code >= 500
    body = resp.json()
    assert "attesting" in body["error"]
    assert "attestation" not in body


def test_compile_error_is_reported_with_stage(client):
    resp = client.post("/v1/attest-jmespath", json={"expression": "nope(x)", "env": {"x": 1}})

    assert resp.status_code == 500
    assert resp.json() == {"error": "executing expression: undeclared reference to function 'nope'"}


def test_capability_error_is_reported(runtime_factory):
    runtime = runtime_factory(capability_handler=lambda request: httpx.Response(500))
    with TestClient(create_app(runtime)) as client:
        resp = client.post(
            "/v1/attest-pyexpr",
            json={"expression": "http_get(url)", "env": {"url": "http://upstream.test/boom"}},
        )

    assert resp.status_code == 500
    assert resp.json()["error"].startswith(
        "executing expression: calling http_get: received non-200 response: 500"
    )


def test_malformed_body_is_decode_error(client):
    resp = client.post(
        "/v1/attest-pyexpr",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )

    assert resp.status_code == 500
    assert resp.json()["error"].startswith("decoding request: ")


def test_caller_deadline_shortens_evaluation(runtime_factory):
    registry = CapabilityRegistry(
        [Capability("sprintf", sprintf), Capability("slow", lambda *args: time.sleep(0.5) or "late")]
    )
    runtime = runtime_factory(registry=registry)
    with TestClient(create_app(runtime)) as client:
        resp = client.post(
            "/v1/attest-pyexpr",
            json={"expression": "slow()", "env": {}},
            headers={"X-Request-Timeout": "0.05"},
        )

    assert resp.status_code == 504
    assert resp.json()["error"].startswith("executing expression: evaluation exceeded")


def test_user_data_round_trip(client):
    resp = client.post(
        "/v1/attest-user-data",
        json={"nonce": _b64(b"nonce"), "userdata": _b64(b"hello world")},
    )

    assert resp.status_code == 200
    attestation = AttestResult.model_validate(resp.json()["attestation"])
    verified = NoTEEVerifier().verify(attestation, nonce=b"nonce")
    assert verified.user_data == b"hello world"


def test_api_call_attests_digest_of_body(runtime_factory):
    runtime = runtime_factory(outbound_handler=lambda request: httpx.Response(200, content=b'{"args":{}}'))
    with TestClient(create_app(runtime)) as client:
        resp = client.post("/v1/attest-api-call", json={"method": "GET", "url": "http://upstream.test/get"})

    assert resp.status_code == 200
    response = ApiCallResponse.model_validate(resp.json())
    assert response.response == b'{"args":{}}'
    verify_api_call_result(NoTEEVerifier(), response, full_body=False)


def test_api_call_upstream_failure_is_bad_gateway(runtime_factory):
    runtime = runtime_factory(outbound_handler=lambda request: httpx.Response(503))
    with TestClient(create_app(runtime)) as client:
        resp = client.post("/v1/attest-api-call", json={"url": "http://upstream.test/get"})

    assert resp.status_code == 502
    assert resp.json() == {"error": "sending request: upstream returned 503"}


def test_https_call_only_on_tls_app(runtime_factory):
    runtime = runtime_factory(outbound_handler=lambda request: httpx.Response(200, content=b"secret"))

    with TestClient(create_app(runtime)) as plain:
        assert plain.post("/v1/attest-https-call", json={"url": "https://upstream.test/"}).status_code == 404

    with TestClient(create_app(runtime, tls=True)) as tls:
        resp = tls.post("/v1/attest-https-call", json={"url": "https://upstream.test/"})

    assert resp.status_code == 200
    response = ApiCallResponse.model_validate(resp.json())
    verify_api_call_result(NoTEEVerifier(), response, full_body=True)


def test_cert_attestation_binds_chain_fingerprint(runtime_factory, tmp_path):
    chain = [b"leaf-der", b"root-der"]
    cert_file = tmp_path / "chain.pem"
    cert_file.write_text(der_chain_to_pem(chain), encoding="ascii")
    runtime = runtime_factory(cert_provider=FileCertProvider(cert_file))

    with TestClient(create_app(runtime)) as client:
        resp = client.post("/v1/attest-cert", json={"nonce": _b64(b"fresh")})

    assert resp.status_code == 200
    response = CertResponse.model_validate(resp.json())
    assert response.cert_chain == chain
    verified = NoTEEVerifier().verify(response.attestation, nonce=b"fresh")
    assert verified.user_data == chain_fingerprint(chain)


def test_cert_attestation_without_chain_fails_closed(client):
    resp = client.post("/v1/attest-cert", json={})

    assert resp.status_code == 500
    assert resp.json() == {"error": "loading certificate chain: no certificate chain configured"}


def test_request_id_is_echoed(client):
    resp = client.post("/v1/attest-pyexpr", json=GREETING, headers={"X-Request-ID": "req-123"})

    assert resp.headers["X-Request-ID"] == "req-123"
