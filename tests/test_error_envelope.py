"""Tests for the single-field ``{"error": ...}`` failure body.

Every failure, whatever raised it, is rendered as:
{
    "error": "<stage>: <short message>"
}
"""

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from attested_eval.api.error_handling import _error_response, register_exception_handlers
from attested_eval.api.schemas import ErrorResponse
from attested_eval.logging import MAX_ERROR_MESSAGE_LENGTH, sanitize_error_message
from attested_eval.service.errors import (
    AttestationError,
    ClientDisconnected,
    DeadlineExceeded,
    ExecutionError,
    ServiceError,
    TransportError,
)


class Payload(BaseModel):
    count: int


def _app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/execution")
    async def execution():
        raise ExecutionError("evaluating expression: ZeroDivisionError: division by zero")

    @app.get("/staged")
    async def staged():
        exc = AttestationError("device unavailable")
        exc.stage = "attesting"
        raise exc

    @app.get("/deadline")
    async def deadline():
        raise DeadlineExceeded("evaluation exceeded 1s deadline")

    @app.get("/upstream")
    async def upstream():
        raise TransportError("upstream returned 503")

    @app.get("/leaky")
    async def leaky():
        raise ServiceError("could not open /etc/attested/secret.pem")

    @app.get("/http")
    async def http():
        raise HTTPException(status_code=503, detail="service unavailable")

    @app.post("/validated")
    async def validated(payload: Payload):
        return payload

    return app


@pytest.fixture
def client():
    with TestClient(_app()) as test_client:
        yield test_client


class TestErrorResponse:
    def test_requires_error_field(self):
        with pytest.raises(ValidationError):
            ErrorResponse()

    def test_only_error_field_is_serialized(self):
        assert ErrorResponse(error="attesting: failed").model_dump() == {"error": "attesting: failed"}

    def test_helper_sets_status_and_body(self):
        response = _error_response(504, "executing expression: too slow")

        assert response.status_code == 504
        assert response.body == b'{"error":"executing expression: too slow"}'


class TestServiceErrorStatus:
    @pytest.mark.parametrize(
        "error, status_code, error_code",
        [
            (ExecutionError("x"), 500, "execution_error"),
            (AttestationError("x"), 500, "attestation_error"),
            (DeadlineExceeded("x"), 504, "deadline_exceeded"),
            (TransportError("x"), 502, "bad_gateway"),
            (ClientDisconnected("x"), 499, "client_closed_request"),
        ],
    )
    def test_defaults(self, error, status_code, error_code):
        assert error.status_code == status_code
        assert error.error_code == error_code

    def test_public_message_is_prefixed_with_stage(self):
        error = ExecutionError("calling http_get: timeout")
        assert error.public_message == "calling http_get: timeout"

        error.stage = "executing expression"
        assert error.public_message == "executing expression: calling http_get: timeout"

    def test_overrides(self):
        error = ServiceError("x", status_code=503, error_code="unavailable", detail={"a": 1})

        assert (error.status_code, error.error_code, error.detail) == (503, "unavailable", {"a": 1})


class TestRenderedErrors:
    def test_service_error(self, client):
        resp = client.get("/execution")

        assert resp.status_code == 500
        assert resp.json() == {"error": "evaluating expression: ZeroDivisionError: division by zero"}

    def test_stage_prefix(self, client):
        resp = client.get("/staged")

        assert resp.status_code == 500
        assert resp.json() == {"error": "attesting: device unavailable"}

    def test_deadline_and_upstream_statuses(self, client):
        assert client.get("/deadline").status_code == 504
        assert client.get("/upstream").status_code == 502

    def test_message_is_sanitized(self, client):
        resp = client.get("/leaky")

        assert "/etc/attested" not in resp.json()["error"]
        assert "[redacted]" in resp.json()["error"]

    def test_http_exception(self, client):
        resp = client.get("/http")

        assert resp.status_code == 503
        assert resp.json() == {"error": "service unavailable"}

    def test_unknown_route(self, client):
        resp = client.get("/missing")

        assert resp.status_code == 404
        assert set(resp.json()) == {"error"}

    def test_validation_error_is_decode_failure(self, client):
        resp = client.post("/validated", json={"count": "many"})

        assert resp.status_code == 500
        assert resp.json() == {"error": "decoding request: invalid request"}


class TestSanitize:
    def test_truncates_long_messages(self):
        message = sanitize_error_message("x" * (MAX_ERROR_MESSAGE_LENGTH * 2))

        assert len(message) == MAX_ERROR_MESSAGE_LENGTH
        assert message.endswith("...")

    def test_redacts_credentials_and_dunders(self):
        message = sanitize_error_message("token=abcdef failed in __class__")

        assert "abcdef" not in message
        assert "__class__" not in message

    def test_empty_message(self):
        assert sanitize_error_message("") == "an error occurred"
