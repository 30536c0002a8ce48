from __future__ import annotations

import threading
from typing import Dict, Optional

import httpx

from attested_eval.config import Settings, get_settings, reset_settings_cache
from attested_eval.logging import get_logger
from attested_eval.service.attestation import Attester, new_attester
from attested_eval.service.capabilities import CapabilityRegistry, default_registry
from attested_eval.service.certs import FileCertProvider
from attested_eval.service.engine import ExpressionEngine
from attested_eval.service.jmespath_engine import JMESPathEngine
from attested_eval.service.pipeline import (
    AttestedHandler,
    CertHandler,
    ExpressionHandler,
    OutboundCallHandler,
    UserDataHandler,
)
from attested_eval.service.pyexpr_engine import PyExprEngine

logger = get_logger(__name__)


class Runtime:
    """Holds the shared engines, clients and handlers for the isolated process.

    Collaborators can be injected for tests; anything omitted is built from
    ``settings``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        attester: Optional[Attester] = None,
        capability_client: Optional[httpx.Client] = None,
        outbound_client: Optional[httpx.AsyncClient] = None,
        registry: Optional[CapabilityRegistry] = None,
        cert_provider: Optional[FileCertProvider] = None,
    ) -> None:
        self.settings = settings or get_settings()
        proxy = self.settings.outbound_proxy_url or None
        logger.info(
            "runtime_init_started",
            platform=self.settings.platform.value,
            outbound_proxy=proxy,
        )

        self.attester = attester or new_attester(self.settings.platform)
        self._owns_capability_client = capability_client is None
        self.capability_client = capability_client or httpx.Client(
            proxy=proxy, timeout=self.settings.outbound_timeout
        )
        self._owns_outbound_client = outbound_client is None
        self.outbound_client = outbound_client or httpx.AsyncClient(
            proxy=proxy, timeout=self.settings.outbound_timeout
        )
        self.registry = registry or default_registry(self.capability_client)

        workers = self.settings.evaluation_workers
        self.engines: Dict[str, ExpressionEngine] = {
            "jmespath": JMESPathEngine(self.registry, max_workers=workers),
            "pyexpr": PyExprEngine(self.registry, max_workers=workers),
        }

        if cert_provider is None and self.settings.tls_cert_file:
            cert_provider = FileCertProvider(self.settings.tls_cert_file, self.settings.tls_key_file)
        self.cert_provider = cert_provider
        self._closed = False

        common = {
            "attest_timeout": self.settings.attest_timeout,
            "max_body_bytes": self.settings.max_request_bytes,
        }
        self.handlers: Dict[str, AttestedHandler] = {
            "jmespath": ExpressionHandler("jmespath", self.engines["jmespath"], self.attester, **common),
            "pyexpr": ExpressionHandler("pyexpr", self.engines["pyexpr"], self.attester, **common),
            "api-call": OutboundCallHandler(
                "api-call", self.outbound_client, self.attester, attest_full_body=False, **common
            ),
            "https-call": OutboundCallHandler(
                "https-call", self.outbound_client, self.attester, attest_full_body=True, **common
            ),
            "user-data": UserDataHandler(self.attester, **common),
            "cert": CertHandler(self.cert_provider, self.attester, **common),
        }
        logger.info(
            "runtime_init_complete",
            capabilities=sorted(self.registry),
            engines=sorted(self.engines),
            cert_chain=self.cert_provider is not None,
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for engine in self.engines.values():
            engine.shutdown()
        if self._owns_outbound_client:
            await self.outbound_client.aclose()
        if self._owns_capability_client:
            self.capability_client.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the Runtime singleton and cached settings for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            for engine in runtime.engines.values():
                engine.shutdown()
            if runtime._owns_capability_client:
                runtime.capability_client.close()
        runtime = None
        reset_settings_cache()
