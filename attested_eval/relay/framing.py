"""Length-framed message socket.

Each message travels over a fresh TCP connection as a 4-byte big-endian
length followed by that many payload bytes. Inbound messages from any peer are
queued and handed out in arrival order by :meth:`FramedSocket.receive`.
"""
from __future__ import annotations

import asyncio
import struct
from typing import Optional

from attested_eval.config import split_host_port
from attested_eval.logging import get_logger
from attested_eval.relay.tcp import bound_addr, close_writer
from attested_eval.service.errors import DeadlineExceeded, TransportError

logger = get_logger(__name__)

MAX_FRAME_BYTES = 16 * 1024 * 1024

_HEADER = struct.Struct(">I")


def encode_frame(payload: bytes) -> bytes:
    if len(payload) > MAX_FRAME_BYTES:
        raise TransportError(f"message of {len(payload)} bytes exceeds {MAX_FRAME_BYTES} byte limit")
    return _HEADER.pack(len(payload)) + payload


async def read_frame(reader: asyncio.StreamReader) -> Optional[bytes]:
    """Read one frame; ``None`` on a clean EOF before the header."""
    try:
        header = await reader.readexactly(_HEADER.size)
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            return None
        raise TransportError("truncated frame header") from exc
    (length,) = _HEADER.unpack(header)
    if length > MAX_FRAME_BYTES:
        raise TransportError(f"frame of {length} bytes exceeds {MAX_FRAME_BYTES} byte limit")
    try:
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise TransportError(
            f"truncated frame: expected {length} bytes, got {len(exc.partial)}"
        ) from exc


class FramedSocket:
    """Send/receive endpoint bound to ``listen_addr`` (``host:port``)."""

    def __init__(self, listen_addr: str) -> None:
        self.listen_addr = listen_addr
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def bound_addr(self) -> Optional[str]:
        if self._server is None:
            return None
        return bound_addr(self._server)

    async def start(self) -> "FramedSocket":
        host, port = split_host_port(self.listen_addr)
        self._server = await asyncio.start_server(self._accept, host, port)
        logger.info("framed_socket_listening", addr=self.bound_addr)
        return self

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def _accept(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        try:
            while True:
                payload = await read_frame(reader)
                if payload is None:
                    break
                await self._queue.put(payload)
        except TransportError as exc:
            logger.warning("framed_socket_bad_frame", peer=str(peer), error=exc.message)
        except (ConnectionError, OSError) as exc:
            logger.warning("framed_socket_read_failed", peer=str(peer), error=str(exc))
        finally:
            await close_writer(writer)

    async def send(self, dest: str, payload: bytes, *, timeout: float) -> None:
        frame = encode_frame(payload)
        host, port = split_host_port(dest)

        async def _send() -> None:
            _, writer = await asyncio.open_connection(host, port)
            try:
                writer.write(frame)
                await writer.drain()
            finally:
                await close_writer(writer)

        try:
            await asyncio.wait_for(_send(), timeout=timeout)
        except asyncio.TimeoutError:
            raise DeadlineExceeded(f"sending to {dest} exceeded {timeout:g}s deadline")
        except OSError as exc:
            raise TransportError(f"sending to {dest}: {exc.strerror or exc}") from exc

    def discard_pending(self) -> int:
        """Drop queued messages, e.g. late replies to an exchange that timed out."""
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            dropped += 1
        return dropped

    async def receive(self, *, timeout: Optional[float] = None) -> bytes:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            raise DeadlineExceeded(f"receive exceeded {timeout:g}s deadline")
