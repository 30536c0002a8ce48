from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every error carries an HTTP ``status_code``, a stable ``error_code`` and a
    short ``message`` that is safe to show to callers. ``stage`` is filled in
    by the attestation pipeline with the step that failed (for example
    ``"attesting"``) and prefixes the public message. Non-success responses
    are always 5xx:
    - server_error (500)
    - bad_gateway (502)
    - deadline_exceeded (504)
    """

    status_code: int = 500
    error_code: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.stage: Optional[str] = None

    @property
    def public_message(self) -> str:
        if self.stage:
            return f"{self.stage}: {self.message}"
        return self.message


class DecodeError(ServiceError):
    """Request body could not be decoded into the expected shape."""
    error_code = "decode_error"


class CompileError(ServiceError):
    """Expression failed to compile; no capability was invoked."""
    error_code = "compile_error"


class ExecutionError(ServiceError):
    """Expression failed while running, including capability failures."""
    error_code = "execution_error"


class DeadlineExceeded(ServiceError):
    """Work did not finish within its timeout (504)."""
    status_code = 504
    error_code = "deadline_exceeded"


class CapabilityError(ServiceError):
    """A whitelisted capability function reported a failure."""
    error_code = "capability_error"


class CanonicalizationError(ServiceError):
    """Result could not be serialized deterministically."""
    error_code = "canonicalization_error"


class AttestationError(ServiceError):
    """Attesting or verifying a report failed."""
    error_code = "attestation_error"


class TransportError(ServiceError):
    """Upstream returned a non-success response or could not be reached (502)."""
    status_code = 502
    error_code = "bad_gateway"


class ClientDisconnected(ServiceError):
    """Caller went away before the response was ready."""
    status_code = 499
    error_code = "client_closed_request"


__all__ = [
    "ServiceError",
    "DecodeError",
    "CompileError",
    "ExecutionError",
    "DeadlineExceeded",
    "CapabilityError",
    "CanonicalizationError",
    "AttestationError",
    "TransportError",
    "ClientDisconnected",
]
