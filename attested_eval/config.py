from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from attested_eval.logging import get_logger

logger = get_logger(__name__)


class Platform(str, Enum):
    """Trusted execution platforms an attester can be built for."""

    NOTEE = "notee"
    NITRO = "nitro"
    SEV = "sev"
    TDX = "tdx"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def split_host_port(addr: str) -> tuple[str, int]:
    """Split ``host:port`` into its parts, accepting bracketed IPv6 hosts."""
    host, sep, port = addr.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"address must be host:port, got {addr!r}")
    return host.strip("[]"), int(port)


class Settings(BaseModel):
    """Runtime settings for the enclave, relay and client processes."""

    platform: Platform = env_field(Platform.NOTEE, "ATTEST_PLATFORM")
    # Isolated process listeners
    enclave_host: str = env_field("127.0.0.1", "ENCLAVE_HOST")
    enclave_port: int = env_field(8083, "ENCLAVE_PORT")
    enclave_tls_port: int = env_field(8084, "ENCLAVE_TLS_PORT")
    enclave_socket_addr: str = env_field("127.0.0.1:8085", "ENCLAVE_SOCKET_ADDR")
    # Public facing relay listeners
    proxy_host: str = env_field("0.0.0.0", "PROXY_HOST")
    proxy_port: int = env_field(8080, "PROXY_PORT")
    proxy_tls_port: int = env_field(8443, "PROXY_TLS_PORT")
    proxy_socket_addr: str = env_field("127.0.0.1:8086", "PROXY_SOCKET_ADDR")
    egress_proxy_host: str = env_field("127.0.0.1", "EGRESS_PROXY_HOST")
    egress_proxy_port: int = env_field(8082, "EGRESS_PROXY_PORT")
    outbound_proxy_url: str | None = env_field(
        None,
        "OUTBOUND_PROXY_URL",
        description="Proxy the isolated process uses for capability and api-call egress",
    )
    egress_allowlist: list[str] = env_field(
        [],
        "EGRESS_ALLOWLIST",
        description="Hosts the egress proxy may reach: names, *.wildcards or CIDRs; empty allows all",
    )
    # Verification policy for clients
    measurement: str | None = env_field(None, "EXPECTED_MEASUREMENT")
    verify_debug: bool = env_field(False, "VERIFY_DEBUG")
    # Timeouts (seconds)
    evaluation_timeout: float = env_field(15.0, "EVALUATION_TIMEOUT_SECONDS")
    attest_timeout: float = env_field(15.0, "ATTEST_TIMEOUT_SECONDS")
    outbound_timeout: float = env_field(15.0, "OUTBOUND_TIMEOUT_SECONDS")
    relay_timeout: float = env_field(15.0, "RELAY_TIMEOUT_SECONDS")
    relay_send_timeout: float = env_field(5.0, "RELAY_SEND_TIMEOUT_SECONDS")
    relay_receive_timeout: float = env_field(5.0, "RELAY_RECEIVE_TIMEOUT_SECONDS")
    header_timeout: float = env_field(10.0, "HEADER_TIMEOUT_SECONDS")
    read_timeout: float = env_field(15.0, "READ_TIMEOUT_SECONDS")
    write_timeout: float = env_field(15.0, "WRITE_TIMEOUT_SECONDS")
    timeout_keep_alive: int = env_field(5, "HTTP_KEEP_ALIVE_SECONDS")
    evaluation_workers: int = env_field(8, "EVALUATION_WORKERS")
    max_request_bytes: int = env_field(1024 * 1024, "MAX_REQUEST_BYTES")
    # TLS material for the attested HTTPS listener
    domain: str = env_field("127.0.0.1", "TLS_DOMAIN")
    tls_cert_file: str | None = env_field(None, "TLS_CERT_FILE")
    tls_key_file: str | None = env_field(None, "TLS_KEY_FILE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("platform", mode="before")
    @classmethod
    def _normalize_platform(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("egress_allowlist", mode="before")
    @classmethod
    def _split_allowlist(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [entry.strip().lower() for entry in value.split(",") if entry.strip()]
        return value

    @field_validator(
        "evaluation_timeout",
        "attest_timeout",
        "outbound_timeout",
        "relay_timeout",
        "relay_send_timeout",
        "relay_receive_timeout",
        "header_timeout",
        "read_timeout",
        "write_timeout",
    )
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @field_validator("evaluation_workers")
    @classmethod
    def _positive_workers(cls, value: int) -> int:
        if value < 1:
            raise ValueError("evaluation_workers must be at least 1")
        return value

    @field_validator("enclave_socket_addr", "proxy_socket_addr")
    @classmethod
    def _validate_socket_addr(cls, value: str) -> str:
        split_host_port(value)
        return value

    @property
    def enclave_url(self) -> str:
        return f"http://{self.enclave_host}:{self.enclave_port}"


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
