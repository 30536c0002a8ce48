"""Byte-level forwarding between asyncio streams."""
from __future__ import annotations

import asyncio
import contextlib
from typing import Optional

from attested_eval.logging import get_logger

logger = get_logger(__name__)

_CHUNK_SIZE = 64 * 1024


async def close_writer(writer: asyncio.StreamWriter) -> None:
    writer.close()
    with contextlib.suppress(ConnectionError, OSError):
        await writer.wait_closed()


async def pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> int:
    """Copy ``reader`` into ``writer`` until EOF; returns bytes copied."""
    copied = 0
    try:
        while True:
            chunk = await reader.read(_CHUNK_SIZE)
            if not chunk:
                break
            writer.write(chunk)
            await writer.drain()
            copied += len(chunk)
    except (ConnectionError, OSError) as exc:
        logger.debug("pipe_closed", error=str(exc), copied=copied)
    finally:
        if writer.can_write_eof():
            with contextlib.suppress(ConnectionError, OSError, RuntimeError):
                writer.write_eof()
    return copied


async def splice(
    client_reader: asyncio.StreamReader,
    client_writer: asyncio.StreamWriter,
    upstream_reader: asyncio.StreamReader,
    upstream_writer: asyncio.StreamWriter,
) -> None:
    """Shuttle bytes both ways until both sides are done, then close both."""
    try:
        await asyncio.gather(
            pipe(client_reader, upstream_writer),
            pipe(upstream_reader, client_writer),
        )
    finally:
        await close_writer(upstream_writer)
        await close_writer(client_writer)


async def start_passthrough(
    listen_host: str,
    listen_port: int,
    target_host: str,
    target_port: int,
    *,
    connect_timeout: float,
) -> asyncio.AbstractServer:
    """Forward raw TCP, e.g. TLS that must terminate inside the isolated process."""

    async def _handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        try:
            upstream_reader, upstream_writer = await asyncio.wait_for(
                asyncio.open_connection(target_host, target_port), timeout=connect_timeout
            )
        except (asyncio.TimeoutError, OSError) as exc:
            logger.warning(
                "passthrough_connect_failed",
                target=f"{target_host}:{target_port}",
                peer=str(peer),
                error=str(exc) or type(exc).__name__,
            )
            await close_writer(writer)
            return
        await splice(reader, writer, upstream_reader, upstream_writer)

    server = await asyncio.start_server(_handle, listen_host, listen_port)
    logger.info(
        "passthrough_listening",
        addr=bound_addr(server),
        target=f"{target_host}:{target_port}",
    )
    return server


def bound_addr(server: asyncio.AbstractServer) -> Optional[str]:
    sockets = getattr(server, "sockets", None) or ()
    for sock in sockets:
        host, port = sock.getsockname()[:2]
        return f"{host}:{port}"
    return None


def bound_port(server: asyncio.AbstractServer) -> int:
    """Port the server actually bound, useful when listening on port 0."""
    return server.sockets[0].getsockname()[1]
