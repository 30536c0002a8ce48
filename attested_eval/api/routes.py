from __future__ import annotations

import asyncio
import math
from typing import Any, Awaitable

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from attested_eval.api.schemas import (
    ApiCallResponse,
    CertResponse,
    ErrorResponse,
    ExpressionResponse,
    UserDataResponse,
)
from attested_eval.api.timeouts import read_body
from attested_eval.logging import get_logger
from attested_eval.service.errors import ClientDisconnected
from attested_eval.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")
# Served only on the attested TLS listener
tls_router = APIRouter(prefix="/v1")

# Caller-supplied deadline, in seconds; can only shorten the server timeout
DEADLINE_HEADER = "X-Request-Timeout"

_DISCONNECT_POLL_SECONDS = 0.25

_ERROR_RESPONSES = {
    500: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
    504: {"model": ErrorResponse},
}


def _effective_timeout(request: Request, server_timeout: float) -> float:
    raw = request.headers.get(DEADLINE_HEADER)
    if raw is None:
        return server_timeout
    try:
        caller_timeout = float(raw)
    except ValueError:
        logger.warning("invalid_deadline_header", value=raw[:32])
        return server_timeout
    if not math.isfinite(caller_timeout) or caller_timeout <= 0:
        logger.warning("invalid_deadline_header", value=raw[:32])
        return server_timeout
    return min(server_timeout, caller_timeout)


async def _cancel_on_disconnect(request: Request, work: Awaitable[Any]) -> Any:
    """Await ``work`` but cancel it if the caller disconnects first."""
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=_DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info("client_disconnected", path=request.url.path)
                task.cancel()
                raise ClientDisconnected("client closed request")
    finally:
        if not task.done():
            task.cancel()


async def _handle(kind: str, request: Request, runtime: Runtime) -> JSONResponse:
    body = await read_body(request, timeout=runtime.settings.read_timeout)
    handler = runtime.handlers[kind]
    timeout = _effective_timeout(request, runtime.settings.evaluation_timeout)
    response = await _cancel_on_disconnect(request, handler.handle(body, timeout=timeout))
    return JSONResponse(content=response.model_dump(mode="json"))


@router.post("/attest-jmespath", response_model=ExpressionResponse, responses=_ERROR_RESPONSES)
async def attest_jmespath(request: Request, runtime: Runtime = Depends(get_runtime)):
    return await _handle("jmespath", request, runtime)


@router.post("/attest-pyexpr", response_model=ExpressionResponse, responses=_ERROR_RESPONSES)
async def attest_pyexpr(request: Request, runtime: Runtime = Depends(get_runtime)):
    return await _handle("pyexpr", request, runtime)


@router.post("/attest-api-call", response_model=ApiCallResponse, responses=_ERROR_RESPONSES)
async def attest_api_call(request: Request, runtime: Runtime = Depends(get_runtime)):
    return await _handle("api-call", request, runtime)


@router.post("/attest-user-data", response_model=UserDataResponse, responses=_ERROR_RESPONSES)
async def attest_user_data(request: Request, runtime: Runtime = Depends(get_runtime)):
    return await _handle("user-data", request, runtime)


@router.post("/attest-cert", response_model=CertResponse, responses=_ERROR_RESPONSES)
async def attest_cert(request: Request, runtime: Runtime = Depends(get_runtime)):
    return await _handle("cert", request, runtime)


@tls_router.post("/attest-https-call", response_model=ApiCallResponse, responses=_ERROR_RESPONSES)
async def attest_https_call(request: Request, runtime: Runtime = Depends(get_runtime)):
    return await _handle("https-call", request, runtime)
