"""Per-request I/O bounds.

uvicorn bounds idle keep-alive connections (``timeout_keep_alive``) and the
size of an unparsed request head (``h11_max_incomplete_event_size``) but puts
no time limit on receiving a request or writing a response. Both are
bounded here so a client that trickles bytes cannot hold a
connection open.
"""
from __future__ import annotations

import asyncio
from typing import Any

from fastapi import FastAPI, Request
from uvicorn.protocols.http.h11_impl import H11Protocol

from attested_eval.logging import get_logger
from attested_eval.service.errors import DeadlineExceeded

logger = get_logger(__name__)


async def read_body(request: Request, *, timeout: float) -> bytes:
    """Read the whole request body or raise ``DeadlineExceeded`` after ``timeout`` seconds."""
    try:
        return await asyncio.wait_for(request.body(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("request_body_timeout", path=request.url.path, timeout_seconds=timeout)
        raise DeadlineExceeded(f"reading request: body not received within {timeout:g}s")


class WriteTimeoutMiddleware:
    """Fail a response whose send is not accepted by the transport within ``timeout``."""

    def __init__(self, app: Any, timeout: float) -> None:
        self.app = app
        self.timeout = timeout

    async def __call__(self, scope, receive, send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def bounded_send(message) -> None:
            try:
                await asyncio.wait_for(send(message), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "response_write_timeout",
                    path=scope.get("path"),
                    timeout_seconds=self.timeout,
                )
                raise DeadlineExceeded(f"writing response: not sent within {self.timeout:g}s")

        await self.app(scope, receive, bounded_send)


def install_write_timeout(app: FastAPI, timeout: float) -> None:
    app.add_middleware(WriteTimeoutMiddleware, timeout=timeout)


class HeaderTimeoutProtocol(H11Protocol):
    """uvicorn's h11 protocol with a deadline for receiving each request head.

    The timer runs from connection start, and again after every completed
    response, until the next request line and headers are parsed. A client
    that trickles its head past the deadline is disconnected.
    """

    header_timeout: float = 10.0

    def connection_made(self, transport) -> None:
        super().connection_made(transport)
        self._header_timer = None
        self._awaiting_after = None
        self._arm_header_timer()

    def data_received(self, data: bytes) -> None:
        super().data_received(data)
        if self._header_timer is not None and self.cycle is not self._awaiting_after:
            self._cancel_header_timer()

    def on_response_complete(self) -> None:
        super().on_response_complete()
        # a pipelined request may already have started a new cycle
        if not self.transport.is_closing() and self.cycle is not None and self.cycle.response_complete:
            self._arm_header_timer()

    def connection_lost(self, exc) -> None:
        self._cancel_header_timer()
        super().connection_lost(exc)

    def _arm_header_timer(self) -> None:
        self._cancel_header_timer()
        self._awaiting_after = self.cycle
        self._header_timer = self.loop.call_later(self.header_timeout, self._header_timed_out)

    def _cancel_header_timer(self) -> None:
        if self._header_timer is not None:
            self._header_timer.cancel()
            self._header_timer = None

    def _header_timed_out(self) -> None:
        self._header_timer = None
        if self.transport.is_closing():
            return
        logger.warning("request_header_timeout", client=self.client, timeout_seconds=self.header_timeout)
        self.transport.close()


def header_timeout_protocol(timeout: float) -> type[HeaderTimeoutProtocol]:
    """Protocol class for ``uvicorn.Config(http=...)`` with the given head deadline."""
    return type("HeaderTimeoutProtocol", (HeaderTimeoutProtocol,), {"header_timeout": timeout})
