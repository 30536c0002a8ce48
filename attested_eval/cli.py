"""Process entry points for the isolated service, its relays and a demo client.

Usage:
    # Isolated process: HTTP API (plus the TLS API when TLS_CERT_FILE is set)
    attested-eval enclave

    # Public relay: reverse proxy, TLS passthrough and egress proxy
    attested-eval proxy

    # User-data attestation over the framed message socket
    attested-eval enclave-socket
    attested-eval proxy-socket

    # Attest and verify from the caller side
    attested-eval client jmespath
    attested-eval client pyexpr --expression 'sprintf(greet, names[1])'
    attested-eval client https-call --url https://httpbin.org/get

Settings come from the environment or a .env file (see attested_eval.config).
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Optional

import uvicorn

from attested_eval.api.timeouts import header_timeout_protocol
from attested_eval.app import create_app
from attested_eval.client import (
    AttestClient,
    ClientError,
    establish_attested_tls,
    verify_api_call_result,
    verify_expression_result,
)
from attested_eval.config import Settings, get_settings
from attested_eval.logging import get_logger
from attested_eval.relay.egress import EgressProxy
from attested_eval.relay.framing import FramedSocket
from attested_eval.relay.http_proxy import create_proxy_app
from attested_eval.relay.socket_relay import create_socket_relay_app, serve_enclave_socket
from attested_eval.relay.tcp import start_passthrough
from attested_eval.service.attestation import new_verifier
from attested_eval.service.errors import ServiceError
from attested_eval.service.runtime import Runtime

logger = get_logger(__name__)

DEFAULT_EXPRESSION = "sprintf(greet, names[0])"
DEFAULT_ENV = {"greet": "Hello, %v!", "names": ["world", "you"]}
DEFAULT_USERDATA = "Hello, world!"
DEFAULT_HTTP_URL = "http://httpbin.org/get"
DEFAULT_HTTPS_URL = "https://httpbin.org/get"

# Bound on a single unparsed HTTP event (request line plus headers)
_MAX_INCOMPLETE_EVENT_SIZE = 16 * 1024


async def _serve(app: Any, host: str, port: int, settings: Settings, **ssl_kwargs: Any) -> None:
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        timeout_keep_alive=settings.timeout_keep_alive,
        http=header_timeout_protocol(settings.header_timeout),
        h11_max_incomplete_event_size=_MAX_INCOMPLETE_EVENT_SIZE,
        log_config=None,
        **ssl_kwargs,
    )
    logger.info("server_starting", host=host, port=port, tls=bool(ssl_kwargs))
    await uvicorn.Server(config).serve()


async def run_enclave(settings: Settings) -> None:
    runtime = Runtime(settings)
    servers = [_serve(create_app(runtime), settings.enclave_host, settings.enclave_port, settings)]
    if settings.tls_cert_file and settings.tls_key_file:
        servers.append(
            _serve(
                create_app(runtime, tls=True),
                settings.enclave_host,
                settings.enclave_tls_port,
                settings,
                ssl_certfile=settings.tls_cert_file,
                ssl_keyfile=settings.tls_key_file,
            )
        )
    else:
        logger.warning("tls_listener_disabled", reason="TLS_CERT_FILE and TLS_KEY_FILE not set")
    try:
        await asyncio.gather(*servers)
    finally:
        await runtime.close()


async def run_enclave_socket(settings: Settings) -> None:
    runtime = Runtime(settings)
    socket = await FramedSocket(settings.enclave_socket_addr).start()
    try:
        await serve_enclave_socket(
            socket,
            runtime.handlers["user-data"],
            settings.proxy_socket_addr,
            timeout=settings.evaluation_timeout,
            send_timeout=settings.relay_send_timeout,
        )
    finally:
        await socket.close()
        await runtime.close()


async def run_proxy(settings: Settings) -> None:
    egress = EgressProxy(allowlist=settings.egress_allowlist, connect_timeout=settings.relay_timeout)
    await egress.start(settings.egress_proxy_host, settings.egress_proxy_port)
    passthrough = await start_passthrough(
        settings.proxy_host,
        settings.proxy_tls_port,
        settings.enclave_host,
        settings.enclave_tls_port,
        connect_timeout=settings.relay_timeout,
    )
    app = create_proxy_app(
        settings.enclave_url,
        timeout=settings.relay_timeout,
        read_timeout=settings.read_timeout,
        write_timeout=settings.write_timeout,
    )
    try:
        await _serve(app, settings.proxy_host, settings.proxy_port, settings)
    finally:
        passthrough.close()
        await passthrough.wait_closed()
        await egress.close()


async def run_proxy_socket(settings: Settings) -> None:
    socket = await FramedSocket(settings.proxy_socket_addr).start()
    app = create_socket_relay_app(
        socket,
        settings.enclave_socket_addr,
        send_timeout=settings.relay_send_timeout,
        receive_timeout=settings.relay_receive_timeout,
        read_timeout=settings.read_timeout,
        write_timeout=settings.write_timeout,
    )
    await _serve(app, settings.proxy_host, settings.proxy_port, settings)


def run_client(args: argparse.Namespace, settings: Settings) -> dict:
    """Perform one attested call and return the verified, printable result."""
    verifier = new_verifier(settings.platform)
    policy = {"measurement": settings.measurement, "allow_debug": settings.verify_debug}
    base_url = f"http://{args.host}:{args.port}"

    with AttestClient(base_url, timeout=settings.relay_timeout) as client:
        if args.action in ("jmespath", "pyexpr"):
            env = json.loads(args.env) if args.env else DEFAULT_ENV
            expression = args.expression or DEFAULT_EXPRESSION
            call = client.attest_jmespath if args.action == "jmespath" else client.attest_pyexpr
            response = call(expression, env)
            verify_expression_result(verifier, response, **policy)
            return response.result.model_dump()

        if args.action == "user-data":
            userdata = (args.userdata or DEFAULT_USERDATA).encode("utf-8")
            nonce = args.nonce.encode("utf-8") if args.nonce else None
            response = client.attest_user_data(userdata, nonce=nonce)
            verified = verifier.verify(response.attestation, nonce=nonce, **policy)
            return {"userdata": verified.user_data.decode("utf-8", errors="replace")}

        if args.action == "api-call":
            response = client.attest_api_call(args.method, args.url or DEFAULT_HTTP_URL)
            verify_api_call_result(verifier, response, full_body=False, **policy)
            return {"response": response.response.decode("utf-8", errors="replace")}

        with AttestClient(f"https://{args.host}:{args.tls_port}", timeout=settings.relay_timeout) as tls_client:
            establish_attested_tls(client, tls_client, verifier, domain=settings.domain, **policy)
            response = tls_client.attest_https_call(args.method, args.url or DEFAULT_HTTPS_URL)
            verify_api_call_result(verifier, response, full_body=True, **policy)
            return {"response": response.response.decode("utf-8", errors="replace")}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="attested-eval",
        description="Attested expression evaluation service, relays and client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("enclave", help="Run the isolated process HTTP (and TLS) API")
    commands.add_parser("enclave-socket", help="Answer user-data requests on the framed socket")
    commands.add_parser("proxy", help="Run the reverse proxy, TLS passthrough and egress proxy")
    commands.add_parser("proxy-socket", help="Relay user-data requests over the framed socket")

    client = commands.add_parser("client", help="Make one attested call and verify it")
    client.add_argument(
        "action",
        choices=["jmespath", "pyexpr", "user-data", "api-call", "https-call"],
    )
    client.add_argument("--host", default="127.0.0.1", help="Proxy host (default: 127.0.0.1)")
    client.add_argument("--port", type=int, default=None, help="Proxy port (default: PROXY_PORT)")
    client.add_argument(
        "--tls-port", type=int, default=None, help="Proxy TLS port (default: PROXY_TLS_PORT)"
    )
    client.add_argument("--expression", help=f"Expression to evaluate (default: {DEFAULT_EXPRESSION})")
    client.add_argument("--env", help="JSON object of named input values")
    client.add_argument("--userdata", help=f"User data to attest (default: {DEFAULT_USERDATA!r})")
    client.add_argument("--nonce", help="Nonce to bind into the user-data attestation")
    client.add_argument("--method", default="GET", help="HTTP method for api-call/https-call")
    client.add_argument("--url", help="Target URL for api-call/https-call")
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    if args.command == "client":
        args.port = args.port or settings.proxy_port
        args.tls_port = args.tls_port or settings.proxy_tls_port
        try:
            result = run_client(args, settings)
        except (ClientError, ServiceError, ValueError) as e:
            print(f"Error: {e}")
            sys.exit(1)
        print(json.dumps(result, indent=2, ensure_ascii=False))
        return

    runners = {
        "enclave": run_enclave,
        "enclave-socket": run_enclave_socket,
        "proxy": run_proxy,
        "proxy-socket": run_proxy_socket,
    }
    try:
        asyncio.run(runners[args.command](settings))
    except KeyboardInterrupt:
        logger.info("shutdown_requested", command=args.command)


if __name__ == "__main__":
    main()
