"""Attest-wrap-respond pipeline.

Every attested endpoint walks the same state machine::

    received -> decoded -> evaluated -> canonicalized -> attested -> responded

with ``errored`` reachable from any non-terminal state. The first failure
ends the request: nothing after the failing stage runs, the error is tagged
with the stage label the caller sees (``"attesting: ..."``) and the full
context is logged. Handler variants differ only in what evaluation means and
which bytes are attested.
"""
from __future__ import annotations

import asyncio
import hashlib
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Optional, Tuple, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from attested_eval.api.schemas import (
    ApiCallRequest,
    ApiCallResponse,
    AttestedRecord,
    CertRequest,
    CertResponse,
    ExpressionRequest,
    ExpressionResponse,
    UserDataRequest,
    UserDataResponse,
)
from attested_eval.logging import get_logger, log_pipeline_trace, truncate_for_log
from attested_eval.service.attestation import Attester, AttestResult
from attested_eval.service.canonical import canonicalize
from attested_eval.service.certs import FileCertProvider, chain_fingerprint
from attested_eval.service.engine import ExpressionEngine
from attested_eval.service.errors import (
    AttestationError,
    CanonicalizationError,
    DeadlineExceeded,
    DecodeError,
    ExecutionError,
    ServiceError,
    TransportError,
)

logger = get_logger(__name__)

RequestT = TypeVar("RequestT", bound=BaseModel)


class Stage(str, Enum):
    RECEIVED = "received"
    DECODED = "decoded"
    EVALUATED = "evaluated"
    CANONICALIZED = "canonicalized"
    ATTESTED = "attested"
    RESPONDED = "responded"
    ERRORED = "errored"


_NEXT_STAGE = {
    Stage.RECEIVED: Stage.DECODED,
    Stage.DECODED: Stage.EVALUATED,
    Stage.EVALUATED: Stage.CANONICALIZED,
    Stage.CANONICALIZED: Stage.ATTESTED,
    Stage.ATTESTED: Stage.RESPONDED,
}

_TERMINAL_STAGES = frozenset({Stage.RESPONDED, Stage.ERRORED})


@dataclass
class RequestTrace:
    """Stage history of one request."""

    kind: str
    stage: Stage = Stage.RECEIVED
    history: list = field(default_factory=list)
    started: float = field(default_factory=time.monotonic)

    def _elapsed_ms(self) -> float:
        return round((time.monotonic() - self.started) * 1000, 2)

    def advance(self, stage: Stage) -> None:
        if self.stage in _TERMINAL_STAGES:
            raise RuntimeError(f"request already {self.stage.value}")
        if _NEXT_STAGE[self.stage] is not stage:
            raise RuntimeError(f"cannot move from {self.stage.value} to {stage.value}")
        self.stage = stage
        self.history.append({"stage": stage.value, "elapsed_ms": self._elapsed_ms()})

    def fail(self, error_code: str) -> Stage:
        """Move to ``errored``; returns the stage that was being attempted."""
        if self.stage in _TERMINAL_STAGES:
            raise RuntimeError(f"request already {self.stage.value}")
        attempted = _NEXT_STAGE[self.stage]
        self.stage = Stage.ERRORED
        self.history.append(
            {
                "stage": Stage.ERRORED.value,
                "failed": attempted.value,
                "error_code": error_code,
                "elapsed_ms": self._elapsed_ms(),
            }
        )
        return attempted


def _describe_validation_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid request body"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "body"
    return f"{location}: {first.get('msg', 'invalid value')}"


class AttestedHandler(ABC, Generic[RequestT]):
    """Runs one request kind through the attestation state machine."""

    kind: str = "attested"
    request_model: Type[RequestT]
    evaluate_label: str = "evaluating"

    _stage_labels = {
        Stage.DECODED: "decoding request",
        Stage.CANONICALIZED: "canonicalizing",
        Stage.ATTESTED: "attesting",
        Stage.RESPONDED: "marshaling result",
    }

    # Unexpected exceptions are mapped onto the error class of the stage
    _stage_errors = {
        Stage.DECODED: DecodeError,
        Stage.EVALUATED: ExecutionError,
        Stage.CANONICALIZED: CanonicalizationError,
        Stage.ATTESTED: AttestationError,
        Stage.RESPONDED: ServiceError,
    }

    def __init__(
        self,
        attester: Attester,
        *,
        attest_timeout: float,
        max_body_bytes: int = 1024 * 1024,
    ) -> None:
        self.attester = attester
        self.attest_timeout = attest_timeout
        self.max_body_bytes = max_body_bytes

    def label_for(self, stage: Stage) -> str:
        if stage is Stage.EVALUATED:
            return self.evaluate_label
        return self._stage_labels[stage]

    def decode(self, body: bytes) -> RequestT:
        if len(body) > self.max_body_bytes:
            raise DecodeError(f"request body exceeds {self.max_body_bytes} bytes")
        try:
            return self.request_model.model_validate_json(body or b"{}")
        except ValidationError as exc:
            raise DecodeError(_describe_validation_error(exc)) from exc

    @abstractmethod
    async def evaluate(self, request: RequestT, *, timeout: float) -> Any:
        """Kind-specific work; must not attest."""

    @abstractmethod
    def canonicalize(self, request: RequestT, output: Any) -> Tuple[Any, bytes]:
        """Return the value to respond with and the exact bytes to attest."""

    @abstractmethod
    def respond(self, request: RequestT, record: Any, attestation: AttestResult) -> BaseModel:
        """Build the success body."""

    def nonce(self, request: RequestT) -> Optional[bytes]:
        return None

    def log_context(self, request: Optional[RequestT]) -> dict:
        return {}

    async def attest(self, data: bytes, nonce: Optional[bytes]) -> AttestResult:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.attester.attest, user_data=data, nonce=nonce),
                timeout=self.attest_timeout,
            )
        except asyncio.TimeoutError:
            raise DeadlineExceeded(f"attestation exceeded {self.attest_timeout:g}s deadline")
        except AttestationError:
            raise
        except Exception as exc:
            raise AttestationError(str(exc) or type(exc).__name__) from exc

    async def handle(self, body: bytes, *, timeout: float) -> BaseModel:
        """Run ``body`` through every stage, raising a stage-tagged ``ServiceError`` on failure."""
        trace = RequestTrace(self.kind)
        request: Optional[RequestT] = None
        try:
            request = self.decode(body)
            trace.advance(Stage.DECODED)

            output = await self.evaluate(request, timeout=timeout)
            trace.advance(Stage.EVALUATED)

            record, data = self.canonicalize(request, output)
            trace.advance(Stage.CANONICALIZED)

            attestation = await self.attest(data, self.nonce(request))
            trace.advance(Stage.ATTESTED)

            response = self.respond(request, record, attestation)
            trace.advance(Stage.RESPONDED)
            return response
        except ServiceError as exc:
            self._record_failure(trace, exc, request)
            raise
        except asyncio.CancelledError:
            trace.fail("cancelled")
            logger.info("attested_request_cancelled", kind=self.kind, **self.log_context(request))
            raise
        except Exception as exc:
            error_cls = self._stage_errors[_NEXT_STAGE[trace.stage]]
            error = error_cls(str(exc) or type(exc).__name__)
            self._record_failure(trace, error, request, cause=exc)
            raise error from exc
        finally:
            log_pipeline_trace(self.kind, trace.history, logger)

    def _record_failure(
        self,
        trace: RequestTrace,
        exc: ServiceError,
        request: Optional[RequestT],
        *,
        cause: Optional[BaseException] = None,
    ) -> None:
        attempted = trace.fail(exc.error_code)
        exc.stage = self.label_for(attempted)
        logger.error(
            "attested_request_failed",
            kind=self.kind,
            stage=attempted.value,
            status_code=exc.status_code,
            error_code=exc.error_code,
            error=exc.message,
            detail=exc.detail,
            exc_info=cause,
            **self.log_context(request),
        )


class ExpressionHandler(AttestedHandler[ExpressionRequest]):
    """Evaluates an expression and attests the canonical ``{expression, env, output}``."""

    request_model = ExpressionRequest
    evaluate_label = "executing expression"

    def __init__(self, kind: str, engine: ExpressionEngine, attester: Attester, **kwargs: Any) -> None:
        super().__init__(attester, **kwargs)
        self.kind = kind
        self.engine = engine

    async def evaluate(self, request: ExpressionRequest, *, timeout: float) -> Any:
        return await self.engine.execute(request.expression, request.env, timeout=timeout)

    def canonicalize(self, request: ExpressionRequest, output: Any) -> Tuple[Any, bytes]:
        record = {"expression": request.expression, "env": request.env, "output": output}
        return record, canonicalize(record)

    def respond(self, request: ExpressionRequest, record: Any, attestation: AttestResult) -> BaseModel:
        return ExpressionResponse(attestation=attestation, result=AttestedRecord(**record))

    def log_context(self, request: Optional[ExpressionRequest]) -> dict:
        if request is None:
            return {}
        return {
            "engine": self.engine.name,
            "expression": request.expression[:500],
            "env": truncate_for_log(request.env),
        }


class OutboundCallHandler(AttestedHandler[ApiCallRequest]):
    """Performs an outbound HTTP call and attests its body or the body's SHA-256."""

    request_model = ApiCallRequest
    evaluate_label = "sending request"

    def __init__(
        self,
        kind: str,
        client: httpx.AsyncClient,
        attester: Attester,
        *,
        attest_full_body: bool = False,
        **kwargs: Any,
    ) -> None:
        super().__init__(attester, **kwargs)
        self.kind = kind
        self.client = client
        self.attest_full_body = attest_full_body

    async def evaluate(self, request: ApiCallRequest, *, timeout: float) -> bytes:
        logger.info("making_api_call", method=request.method, url=request.url)
        try:
            resp = await asyncio.wait_for(
                self.client.request(request.method, request.url), timeout=timeout
            )
        except asyncio.TimeoutError:
            raise DeadlineExceeded(f"upstream call exceeded {timeout:g}s deadline")
        except httpx.TimeoutException as exc:
            raise DeadlineExceeded("upstream call timed out") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"calling upstream: {type(exc).__name__}") from exc
        if resp.status_code >= 400:
            raise TransportError(
                f"upstream returned {resp.status_code}",
                detail={"url": request.url, "status_code": resp.status_code},
            )
        return resp.content

    def canonicalize(self, request: ApiCallRequest, output: bytes) -> Tuple[Any, bytes]:
        if self.attest_full_body:
            return output, output
        return output, hashlib.sha256(output).digest()

    def respond(self, request: ApiCallRequest, record: Any, attestation: AttestResult) -> BaseModel:
        return ApiCallResponse(attestation=attestation, response=record)

    def log_context(self, request: Optional[ApiCallRequest]) -> dict:
        if request is None:
            return {}
        return {"method": request.method, "url": request.url}


class UserDataHandler(AttestedHandler[UserDataRequest]):
    """Attests caller-supplied opaque bytes with an optional nonce."""

    kind = "user-data"
    request_model = UserDataRequest

    async def evaluate(self, request: UserDataRequest, *, timeout: float) -> bytes:
        return request.userdata or b""

    def canonicalize(self, request: UserDataRequest, output: bytes) -> Tuple[Any, bytes]:
        return output, output

    def nonce(self, request: UserDataRequest) -> Optional[bytes]:
        return request.nonce

    def respond(self, request: UserDataRequest, record: Any, attestation: AttestResult) -> BaseModel:
        return UserDataResponse(attestation=attestation)

    def log_context(self, request: Optional[UserDataRequest]) -> dict:
        if request is None:
            return {}
        return {
            "userdata_bytes": len(request.userdata or b""),
            "has_nonce": request.nonce is not None,
        }


class CertHandler(AttestedHandler[CertRequest]):
    """Attests the fingerprint of the TLS certificate chain this process serves."""

    kind = "cert"
    request_model = CertRequest
    evaluate_label = "loading certificate chain"

    def __init__(self, provider: Optional[FileCertProvider], attester: Attester, **kwargs: Any) -> None:
        super().__init__(attester, **kwargs)
        self.provider = provider

    async def evaluate(self, request: CertRequest, *, timeout: float) -> list:
        if self.provider is None:
            raise AttestationError("no certificate chain configured")
        return await asyncio.to_thread(self.provider.chain)

    def canonicalize(self, request: CertRequest, output: list) -> Tuple[Any, bytes]:
        return output, chain_fingerprint(output)

    def nonce(self, request: CertRequest) -> Optional[bytes]:
        return request.nonce

    def respond(self, request: CertRequest, record: Any, attestation: AttestResult) -> BaseModel:
        return CertResponse(attestation=attestation, cert_chain=record)
