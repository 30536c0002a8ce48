"""Egress proxy for the isolated process.

The isolated process has no direct network route; its HTTP clients are
configured with this proxy. ``CONNECT host:port`` opens a tunnel (used for
HTTPS, so TLS still terminates inside the isolated process) and absolute-form
requests (``GET http://host/path HTTP/1.1``) are rewritten to origin-form and
forwarded over a fresh connection.
"""
from __future__ import annotations

import asyncio
import contextlib
import ipaddress
from collections.abc import Sequence
from typing import Optional
from urllib.parse import urlsplit

from attested_eval.config import split_host_port
from attested_eval.logging import get_logger
from attested_eval.relay.tcp import bound_addr, close_writer, splice

logger = get_logger(__name__)

_MAX_HEADER_LINES = 100
_MAX_LINE_BYTES = 16 * 1024

# Headers addressed to this proxy rather than the origin
_PROXY_HEADERS = frozenset({"proxy-connection", "proxy-authorization", "connection", "keep-alive"})


class EgressRejected(Exception):
    def __init__(self, status: int, reason: str) -> None:
        super().__init__(reason)
        self.status = status
        self.reason = reason


def host_matches_allowlist(host: str, allowlist: Sequence[str]) -> bool:
    """Match ``host`` against names, ``*.suffix`` wildcards and CIDR blocks."""
    if not host:
        return False
    lowered = host.lower()
    for entry in allowlist:
        candidate = entry.lower()
        if candidate.startswith("*."):
            if lowered.endswith(candidate[1:]):
                return True
        elif lowered == candidate:
            return True
        elif "/" in candidate:
            try:
                net = ipaddress.ip_network(candidate, strict=False)
                if ipaddress.ip_address(host) in net:
                    return True
            except ValueError:
                continue
    return False


class EgressProxy:
    def __init__(
        self,
        *,
        allowlist: Sequence[str] = (),
        connect_timeout: float = 15.0,
    ) -> None:
        self.allowlist = [entry.strip().lower() for entry in allowlist if entry.strip()]
        self.connect_timeout = connect_timeout
        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self, host: str, port: int) -> asyncio.AbstractServer:
        self._server = await asyncio.start_server(self._handle, host, port)
        logger.info(
            "egress_proxy_listening",
            addr=bound_addr(self._server),
            allowlist=self.allowlist or "any",
        )
        return self._server

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    def _check_host(self, host: str) -> None:
        if self.allowlist and not host_matches_allowlist(host, self.allowlist):
            raise EgressRejected(403, f"egress to '{host}' is not allowlisted")

    async def _read_head(self, reader: asyncio.StreamReader) -> tuple[str, str, str, list[tuple[str, str]]]:
        request_line = await reader.readline()
        if not request_line:
            raise EgressRejected(400, "empty request")
        parts = request_line.decode("latin-1").split()
        if len(parts) != 3:
            raise EgressRejected(400, "malformed request line")
        method, target, version = parts

        headers: list[tuple[str, str]] = []
        for _ in range(_MAX_HEADER_LINES):
            line = await reader.readline()
            if len(line) > _MAX_LINE_BYTES:
                raise EgressRejected(431, "header line too long")
            if line in (b"\r\n", b"\n", b""):
                return method.upper(), target, version, headers
            name, sep, value = line.decode("latin-1").partition(":")
            if not sep:
                raise EgressRejected(400, "malformed header")
            headers.append((name.strip(), value.strip()))
        raise EgressRejected(431, "too many headers")

    async def _open(self, host: str, port: int) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=self.connect_timeout
            )
        except asyncio.TimeoutError:
            raise EgressRejected(504, f"connecting to {host}:{port} timed out")
        except OSError as exc:
            raise EgressRejected(502, f"connecting to {host}:{port}: {exc.strerror or exc}")

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            method, target, version, headers = await asyncio.wait_for(
                self._read_head(reader), timeout=self.connect_timeout
            )
            if method == "CONNECT":
                await self._tunnel(target, reader, writer)
            else:
                await self._forward(method, target, version, headers, reader, writer)
        except asyncio.TimeoutError:
            await self._reject(writer, EgressRejected(408, "request head timed out"))
        except EgressRejected as exc:
            await self._reject(writer, exc)
        except (ConnectionError, OSError, ValueError) as exc:
            logger.warning("egress_connection_error", error=str(exc) or type(exc).__name__)
            await close_writer(writer)

    async def _tunnel(
        self, target: str, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            host, port = split_host_port(target)
        except ValueError:
            raise EgressRejected(400, "CONNECT target must be host:port")
        self._check_host(host)
        upstream_reader, upstream_writer = await self._open(host, port)
        logger.info("egress_tunnel_opened", target=target)
        writer.write(b"HTTP/1.1 200 Connection Established\r\n\r\n")
        await writer.drain()
        await splice(reader, writer, upstream_reader, upstream_writer)

    async def _forward(
        self,
        method: str,
        target: str,
        version: str,
        headers: list[tuple[str, str]],
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        url = urlsplit(target)
        if url.scheme != "http" or not url.hostname:
            raise EgressRejected(400, "only absolute http:// targets can be forwarded")
        self._check_host(url.hostname)
        port = url.port or 80
        path = url.path or "/"
        if url.query:
            path = f"{path}?{url.query}"

        upstream_reader, upstream_writer = await self._open(url.hostname, port)
        head = [f"{method} {path} {version}"]
        head.extend(
            f"{name}: {value}" for name, value in headers if name.lower() not in _PROXY_HEADERS
        )
        head.append("Connection: close")
        upstream_writer.write(("\r\n".join(head) + "\r\n\r\n").encode("latin-1"))
        await upstream_writer.drain()
        logger.info("egress_forward", method=method, host=url.hostname, port=port)
        await splice(reader, writer, upstream_reader, upstream_writer)

    async def _reject(self, writer: asyncio.StreamWriter, exc: EgressRejected) -> None:
        logger.warning("egress_rejected", status=exc.status, reason=exc.reason)
        body = exc.reason.encode("utf-8")
        writer.write(
            f"HTTP/1.1 {exc.status} Proxy Error\r\n"
            f"Content-Type: text/plain\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"Connection: close\r\n\r\n".encode("latin-1")
            + body
        )
        with contextlib.suppress(ConnectionError, OSError):
            await writer.drain()
        await close_writer(writer)
