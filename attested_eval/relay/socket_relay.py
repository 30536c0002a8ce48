"""User-data attestation over the framed message socket.

The public process accepts ``POST /v1/attest-user-data`` and hands the raw
body to the isolated process over a :class:`FramedSocket`; the isolated
process runs it through the same attestation pipeline as the HTTP listener
and sends back the encoded response (or an ``{"error": ...}`` body).

Every frame in either direction starts with a 16-byte request id; the
isolated process echoes it so the relay can tell a reply to the current
request from a late reply to one that already timed out.
"""
from __future__ import annotations

import asyncio
import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import Response

from attested_eval.api.error_handling import register_exception_handlers
from attested_eval.api.schemas import ErrorResponse
from attested_eval.api.timeouts import install_write_timeout, read_body
from attested_eval.app import __version__, install_correlation_middleware
from attested_eval.logging import get_logger, sanitize_error_message
from attested_eval.relay.framing import FramedSocket
from attested_eval.service.errors import DeadlineExceeded, ServiceError, TransportError
from attested_eval.service.pipeline import UserDataHandler

logger = get_logger(__name__)

REQUEST_ID_BYTES = 16


def pack_envelope(request_id: bytes, payload: bytes) -> bytes:
    if len(request_id) != REQUEST_ID_BYTES:
        raise ValueError(f"request id must be {REQUEST_ID_BYTES} bytes")
    return request_id + payload


def unpack_envelope(frame: bytes) -> tuple[bytes, bytes]:
    if len(frame) < REQUEST_ID_BYTES:
        raise TransportError(f"frame of {len(frame)} bytes is shorter than its request id")
    return frame[:REQUEST_ID_BYTES], frame[REQUEST_ID_BYTES:]


def _is_error_reply(reply: bytes) -> bool:
    try:
        decoded = json.loads(reply)
    except ValueError:
        return False
    return isinstance(decoded, dict) and set(decoded) == {"error"}


def create_socket_relay_app(
    socket: FramedSocket,
    enclave_addr: str,
    *,
    send_timeout: float = 5.0,
    receive_timeout: float = 5.0,
    read_timeout: float = 15.0,
    write_timeout: float = 15.0,
) -> FastAPI:
    """Relay attest-user-data requests to ``enclave_addr`` one at a time.

    The socket has a single inbound queue, so exchanges are serialized to keep
    each reply paired with its request.
    """
    exchange_lock = asyncio.Lock()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if socket.bound_addr is None:
            await socket.start()
        logger.info("socket_relay_started", addr=socket.bound_addr, enclave=enclave_addr)
        yield
        await socket.close()

    app = FastAPI(title="attested-eval socket relay", version=__version__, lifespan=lifespan)
    install_write_timeout(app, write_timeout)
    install_correlation_middleware(app)
    register_exception_handlers(app)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "enclave": enclave_addr}

    @app.post("/v1/attest-user-data")
    async def attest_user_data(request: Request) -> Response:
        body = await read_body(request, timeout=read_timeout)
        request_id = uuid.uuid4().bytes
        async with exchange_lock:
            stale = socket.discard_pending()
            if stale:
                logger.warning("relay_stale_replies_dropped", count=stale)
            try:
                await socket.send(enclave_addr, pack_envelope(request_id, body), timeout=send_timeout)
            except ServiceError as exc:
                logger.error("relay_send_failed", enclave=enclave_addr, error=exc.message)
                exc.stage = "sending request to enclave"
                raise
            try:
                reply = await _receive_reply(socket, request_id, timeout=receive_timeout)
            except ServiceError as exc:
                logger.error("relay_receive_failed", enclave=enclave_addr, error=exc.message)
                exc.stage = "receiving response from enclave"
                raise

        status_code = 500 if _is_error_reply(reply) else 200
        logger.info("relay_exchange_complete", status_code=status_code, reply_bytes=len(reply))
        return Response(content=reply, status_code=status_code, media_type="application/json")

    return app


async def _receive_reply(socket: FramedSocket, request_id: bytes, *, timeout: float) -> bytes:
    """Wait for the reply tagged ``request_id``, dropping replies to earlier requests."""
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise DeadlineExceeded(f"receive exceeded {timeout:g}s deadline")
        frame = await socket.receive(timeout=remaining)
        try:
            reply_id, reply = unpack_envelope(frame)
        except TransportError as exc:
            logger.warning("relay_malformed_reply_dropped", error=exc.message)
            continue
        if reply_id == request_id:
            return reply
        logger.warning("relay_mismatched_reply_dropped", reply_id=reply_id.hex())


async def serve_enclave_socket(
    socket: FramedSocket,
    handler: UserDataHandler,
    reply_addr: str,
    *,
    timeout: float = 15.0,
    send_timeout: float = 5.0,
) -> None:
    """Answer framed user-data requests until cancelled.

    Each reply carries the request id it answers. A failing request gets an
    error reply; only a reply that cannot be delivered is logged and dropped,
    since the relay side times out on its own.
    """
    logger.info("enclave_socket_serving", addr=socket.bound_addr, reply_to=reply_addr)
    while True:
        frame = await socket.receive()
        try:
            request_id, body = unpack_envelope(frame)
        except TransportError as exc:
            logger.warning("enclave_socket_malformed_request", error=exc.message)
            continue
        try:
            response = await handler.handle(body, timeout=timeout)
            reply = response.model_dump_json().encode("utf-8")
        except ServiceError as exc:
            error = ErrorResponse(error=sanitize_error_message(exc.public_message))
            reply = error.model_dump_json().encode("utf-8")
        try:
            await socket.send(reply_addr, pack_envelope(request_id, reply), timeout=send_timeout)
        except ServiceError as exc:
            logger.error("enclave_socket_reply_failed", reply_to=reply_addr, error=exc.message)
