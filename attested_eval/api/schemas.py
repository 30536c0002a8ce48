from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from attested_eval.service.attestation import AttestResult, B64Bytes

# Maximum nested JSON depth accepted in an expression environment
MAX_JSON_DEPTH = 20
# Maximum array items in an environment value
MAX_ARRAY_ITEMS = 1000
# Maximum expression source length
MAX_EXPRESSION_LENGTH = 65536


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized JSON values.

    Raises:
        ValueError: If depth or array length exceeds the limits
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


class ExpressionRequest(BaseModel):
    expression: str = Field(..., min_length=1, max_length=MAX_EXPRESSION_LENGTH)
    env: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("env")
    @classmethod
    def _validate_env(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value


class AttestedRecord(BaseModel):
    """The record whose canonical serialization is attested."""

    expression: str
    env: Any = None
    output: Any = None


class ExpressionResponse(BaseModel):
    attestation: AttestResult
    result: AttestedRecord


class ApiCallRequest(BaseModel):
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"] = "GET"
    url: str = Field(..., min_length=1, max_length=8192)

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.upper()
        return value

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must be http or https")
        return value


class ApiCallResponse(BaseModel):
    attestation: AttestResult
    response: B64Bytes


class UserDataRequest(BaseModel):
    nonce: Optional[B64Bytes] = None
    userdata: Optional[B64Bytes] = None


class UserDataResponse(BaseModel):
    attestation: AttestResult


class CertRequest(BaseModel):
    nonce: Optional[B64Bytes] = None


class CertResponse(BaseModel):
    attestation: AttestResult
    cert_chain: List[B64Bytes]


class ErrorResponse(BaseModel):
    """Single-field error body returned with every non-success status."""

    error: str
