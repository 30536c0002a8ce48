"""Public-facing reverse proxy in front of the isolated process API."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import Response

from attested_eval.api.error_handling import register_exception_handlers
from attested_eval.api.timeouts import install_write_timeout, read_body
from attested_eval.app import __version__, install_correlation_middleware
from attested_eval.logging import get_correlation_id, get_logger
from attested_eval.service.errors import DeadlineExceeded, TransportError

logger = get_logger(__name__)

# Request headers passed through to the isolated process
_FORWARDED_HEADERS = ("content-type", "accept", "x-request-timeout")


def create_proxy_app(
    upstream_url: str,
    *,
    timeout: float = 15.0,
    client: Optional[httpx.AsyncClient] = None,
    read_timeout: float = 15.0,
    write_timeout: float = 15.0,
) -> FastAPI:
    """Forward every ``POST`` to ``upstream_url`` and relay the reply unchanged.

    The proxy never inspects or alters bodies; attestation is verified end to
    end by the client. Upstream statuses (including error bodies) pass through.
    """
    owns_client = client is None
    upstream = upstream_url.rstrip("/")
    http = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("proxy_started", upstream=upstream)
        yield
        if owns_client:
            await http.aclose()

    app = FastAPI(title="attested-eval proxy", version=__version__, lifespan=lifespan)
    install_write_timeout(app, write_timeout)
    install_correlation_middleware(app)
    register_exception_handlers(app)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "upstream": upstream}

    @app.post("/{path:path}")
    async def forward(path: str, request: Request) -> Response:
        body = await read_body(request, timeout=read_timeout)
        headers = {
            name: request.headers[name] for name in _FORWARDED_HEADERS if name in request.headers
        }
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Request-ID"] = correlation_id
        target = f"{upstream}/{path}"
        try:
            resp = await http.post(
                target,
                content=body,
                headers=headers,
                params=request.url.query or None,
            )
        except httpx.TimeoutException as exc:
            logger.error("relay_forward_timeout", target=target, error=str(exc))
            raise DeadlineExceeded("forwarding request: upstream timed out") from exc
        except httpx.HTTPError as exc:
            logger.error(
                "relay_forward_failed",
                target=target,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise TransportError(f"forwarding request: {type(exc).__name__}") from exc

        logger.info("relay_forwarded", target=target, status_code=resp.status_code)
        return Response(
            content=resp.content,
            status_code=resp.status_code,
            media_type=resp.headers.get("content-type", "application/json"),
        )

    return app
