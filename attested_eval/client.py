"""Caller-side helpers for the attested endpoints.

:class:`AttestClient` marshals requests and decodes attested responses; the
``verify_*`` functions check a response against a :class:`Verifier` and the
bytes the service claims to have attested. Nothing returned by the service is
trusted until it has been verified.
"""
from __future__ import annotations

import base64
import hashlib
import secrets
import ssl
from typing import Any, Dict, Optional, Sequence, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from attested_eval.api.schemas import (
    ApiCallResponse,
    CertResponse,
    ExpressionResponse,
    UserDataResponse,
)
from attested_eval.logging import get_logger
from attested_eval.service.attestation import Verifier, VerifiedResult
from attested_eval.service.canonical import canonicalize
from attested_eval.service.certs import chain_fingerprint, der_chain_to_pem

logger = get_logger(__name__)

ResponseT = TypeVar("ResponseT", bound=BaseModel)

JMESPATH_PATH = "/v1/attest-jmespath"
PYEXPR_PATH = "/v1/attest-pyexpr"
API_CALL_PATH = "/v1/attest-api-call"
HTTPS_CALL_PATH = "/v1/attest-https-call"
USER_DATA_PATH = "/v1/attest-user-data"
CERT_PATH = "/v1/attest-cert"


class ClientError(Exception):
    """Raised for any failure talking to the service: ``client: <msg>: <cause>``."""

    def __init__(self, message: str = "", cause: Optional[BaseException] = None) -> None:
        parts = ["client"]
        if message:
            parts.append(message)
        if cause is not None:
            parts.append(str(cause) or type(cause).__name__)
        super().__init__(": ".join(parts))
        self.message = message
        self.cause = cause


class ClientNon200Error(ClientError):
    """The service answered with a non-200 status."""

    def __init__(self, status_code: int, body: str = "") -> None:
        message = f"non-200 response: {status_code}"
        if body:
            message = f"{message}: {body}"
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _error_text(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text[:300]
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        return payload["error"]
    return resp.text[:300]


class AttestClient:
    """HTTP client for one service base URL (``http://host:port``)."""

    def __init__(
        self,
        host: str,
        client: Optional[httpx.Client] = None,
        *,
        timeout: float = 15.0,
    ) -> None:
        self.host = host.rstrip("/")
        self.timeout = timeout
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout)
        self.ssl_context: Optional[ssl.SSLContext] = None
        self._sni_hostname: Optional[str] = None

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "AttestClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def add_cert_chain(self, chain: Sequence[bytes], domain: str) -> None:
        """Trust exactly ``chain`` (DER, leaf first) for ``domain`` over TLS 1.2+."""
        if not chain:
            raise ClientError("adding cert chain", ValueError("empty certificate chain"))
        try:
            ctx = ssl.create_default_context(cadata=der_chain_to_pem(chain))
        except (ssl.SSLError, ValueError) as exc:
            raise ClientError("parsing cert chain", exc) from exc
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2
        self.ssl_context = ctx
        self._sni_hostname = domain
        self.close()
        self.client = httpx.Client(verify=ctx, timeout=self.timeout)
        self._owns_client = True
        logger.info("client_cert_chain_installed", domain=domain, certificates=len(chain))

    def do(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = self.host + path
        extensions = {"sni_hostname": self._sni_hostname} if self._sni_hostname else None
        try:
            resp = self.client.post(url, json=body, extensions=extensions)
        except httpx.HTTPError as exc:
            raise ClientError("sending request", exc) from exc
        if resp.status_code != 200:
            raise ClientNon200Error(resp.status_code, _error_text(resp))
        try:
            payload = resp.json()
        except ValueError as exc:
            raise ClientError("unmarshaling response", exc) from exc
        if not isinstance(payload, dict):
            raise ClientError("unmarshaling response", TypeError("expected a JSON object"))
        return payload

    def _call(self, path: str, body: Dict[str, Any], model: Type[ResponseT]) -> ResponseT:
        payload = self.do(path, body)
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise ClientError("unmarshaling response", exc) from exc

    def attest_jmespath(self, expression: str, env: Optional[Dict[str, Any]] = None) -> ExpressionResponse:
        return self._call(JMESPATH_PATH, {"expression": expression, "env": env or {}}, ExpressionResponse)

    def attest_pyexpr(self, expression: str, env: Optional[Dict[str, Any]] = None) -> ExpressionResponse:
        return self._call(PYEXPR_PATH, {"expression": expression, "env": env or {}}, ExpressionResponse)

    def attest_api_call(self, method: str, url: str) -> ApiCallResponse:
        return self._call(API_CALL_PATH, {"method": method, "url": url}, ApiCallResponse)

    def attest_https_call(self, method: str, url: str) -> ApiCallResponse:
        return self._call(HTTPS_CALL_PATH, {"method": method, "url": url}, ApiCallResponse)

    def attest_user_data(
        self, userdata: Optional[bytes] = None, nonce: Optional[bytes] = None
    ) -> UserDataResponse:
        body: Dict[str, Any] = {}
        if userdata is not None:
            body["userdata"] = _b64(userdata)
        if nonce is not None:
            body["nonce"] = _b64(nonce)
        return self._call(USER_DATA_PATH, body, UserDataResponse)

    def attest_cert_chain(self, nonce: Optional[bytes] = None) -> CertResponse:
        body: Dict[str, Any] = {}
        if nonce is not None:
            body["nonce"] = _b64(nonce)
        return self._call(CERT_PATH, body, CertResponse)


def verify_expression_result(
    verifier: Verifier,
    response: ExpressionResponse,
    *,
    measurement: Optional[str] = None,
    allow_debug: bool = False,
) -> VerifiedResult:
    """Verify the report and that it binds the returned ``{expression, env, output}``."""
    verified = verifier.verify(response.attestation, measurement=measurement, allow_debug=allow_debug)
    expected = canonicalize(response.result.model_dump())
    if verified.user_data != expected:
        raise ClientError("verifying result", ValueError("attested data does not match returned result"))
    return verified


def verify_api_call_result(
    verifier: Verifier,
    response: ApiCallResponse,
    *,
    full_body: bool,
    measurement: Optional[str] = None,
    allow_debug: bool = False,
) -> VerifiedResult:
    """Verify an api-call (SHA-256 of the body) or https-call (full body) attestation."""
    verified = verifier.verify(response.attestation, measurement=measurement, allow_debug=allow_debug)
    expected = response.response if full_body else hashlib.sha256(response.response).digest()
    if verified.user_data != expected:
        raise ClientError("verifying result", ValueError("attested data does not match returned body"))
    return verified


def establish_attested_tls(
    proxy: AttestClient,
    tls_client: AttestClient,
    verifier: Verifier,
    *,
    domain: str,
    measurement: Optional[str] = None,
    allow_debug: bool = False,
    nonce: Optional[bytes] = None,
) -> VerifiedResult:
    """Fetch the attested certificate chain through ``proxy`` and trust it on ``tls_client``.

    The chain is only installed after the report verifies under the
    measurement and debug policy and its user data equals the chain
    fingerprint.
    """
    nonce = nonce if nonce is not None else secrets.token_bytes(32)
    attested = proxy.attest_cert_chain(nonce=nonce)
    verified = verifier.verify(
        attested.attestation,
        measurement=measurement,
        nonce=nonce,
        allow_debug=allow_debug,
    )
    if verified.user_data != chain_fingerprint(attested.cert_chain):
        raise ClientError("verifying cert chain", ValueError("fingerprint does not match attested data"))
    tls_client.add_cert_chain(attested.cert_chain, domain)
    return verified
