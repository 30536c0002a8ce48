"""Attester and verifier interfaces plus the ``notee`` stand-in.

Real platforms (Nitro, SEV-SNP, TDX) produce signed reports through their own
tooling; this module defines the narrow interface the service consumes and a
development implementation that binds the same fields without any hardware
root of trust.
"""
from __future__ import annotations

import base64
import binascii
import hmac
from typing import Annotated, Any, Optional, Protocol

from pydantic import BaseModel, BeforeValidator, ConfigDict, PlainSerializer

from attested_eval.config import Platform
from attested_eval.logging import get_logger
from attested_eval.service.errors import AttestationError

logger = get_logger(__name__)


def _decode_b64(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("invalid base64 data") from exc
    return value


# Bytes that travel as standard base64 strings in JSON
B64Bytes = Annotated[
    bytes,
    BeforeValidator(_decode_b64),
    PlainSerializer(
        lambda value: base64.b64encode(value).decode("ascii"),
        return_type=str,
        when_used="json",
    ),
]


class AttestResult(BaseModel):
    """Opaque report produced by an attester."""

    model_config = ConfigDict(frozen=True)

    platform: str
    report: B64Bytes


class VerifiedResult(BaseModel):
    """Fields recovered from a report that passed verification."""

    model_config = ConfigDict(frozen=True)

    user_data: B64Bytes = b""
    nonce: Optional[B64Bytes] = None
    measurement: str
    debug: bool = False


class Attester(Protocol):
    platform: str

    def attest(
        self, *, user_data: Optional[bytes] = None, nonce: Optional[bytes] = None
    ) -> AttestResult: ...


class Verifier(Protocol):
    platform: str

    def verify(
        self,
        attestation: AttestResult,
        *,
        measurement: Optional[str] = None,
        nonce: Optional[bytes] = None,
        allow_debug: bool = False,
    ) -> VerifiedResult: ...


NOTEE_MEASUREMENT = "notee"


class _NoTEEReport(BaseModel):
    user_data: B64Bytes = b""
    nonce: Optional[B64Bytes] = None
    measurement: str = NOTEE_MEASUREMENT
    debug: bool = False


class NoTEEAttester:
    """Development attester: binds data into an unsigned report."""

    platform = Platform.NOTEE.value

    def __init__(self, measurement: str = NOTEE_MEASUREMENT) -> None:
        self.measurement = measurement

    def attest(
        self, *, user_data: Optional[bytes] = None, nonce: Optional[bytes] = None
    ) -> AttestResult:
        report = _NoTEEReport(
            user_data=user_data or b"",
            nonce=nonce or None,
            measurement=self.measurement,
        )
        return AttestResult(
            platform=self.platform,
            report=report.model_dump_json().encode("utf-8"),
        )


class NoTEEVerifier:
    """Checks the policy fields of a ``notee`` report."""

    platform = Platform.NOTEE.value

    def verify(
        self,
        attestation: AttestResult,
        *,
        measurement: Optional[str] = None,
        nonce: Optional[bytes] = None,
        allow_debug: bool = False,
    ) -> VerifiedResult:
        if attestation.platform != self.platform:
            raise AttestationError(
                f"attestation platform {attestation.platform!r} does not match {self.platform!r}"
            )
        try:
            report = _NoTEEReport.model_validate_json(attestation.report)
        except ValueError as exc:
            raise AttestationError("malformed attestation report") from exc

        if measurement and not hmac.compare_digest(report.measurement.encode(), measurement.encode()):
            raise AttestationError("measurement mismatch")
        if report.debug and not allow_debug:
            raise AttestationError("report was produced in debug mode")
        if nonce is not None and not hmac.compare_digest(report.nonce or b"", nonce):
            raise AttestationError("nonce mismatch")

        return VerifiedResult(
            user_data=report.user_data,
            nonce=report.nonce,
            measurement=report.measurement,
            debug=report.debug,
        )


def _platform(value: str | Platform) -> Platform:
    try:
        return Platform(value)
    except ValueError as exc:
        raise AttestationError(f"unsupported platform {value!r}") from exc


def new_attester(platform: str | Platform) -> Attester:
    platform = _platform(platform)
    if platform is Platform.NOTEE:
        return NoTEEAttester()
    raise AttestationError(f"unsupported platform {platform.value!r}")


def new_verifier(platform: str | Platform) -> Verifier:
    platform = _platform(platform)
    if platform is Platform.NOTEE:
        return NoTEEVerifier()
    raise AttestationError(f"unsupported platform {platform.value!r}")

