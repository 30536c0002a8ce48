import json
import socket

import pytest
from fastapi.testclient import TestClient

from attested_eval import cli
from attested_eval.app import create_app
from attested_eval.client import AttestClient
from attested_eval.config import Settings


@pytest.fixture
def routed_client(monkeypatch, runtime_factory):
    """Point the CLI's AttestClient at an in-process service."""
    with TestClient(create_app(runtime_factory())) as test_client:
        monkeypatch.setattr(
            cli,
            "AttestClient",
            lambda base_url, timeout: AttestClient("http://testserver", client=test_client),
        )
        yield


def _args(*argv):
    args = cli.build_parser().parse_args(["client", *argv])
    args.port = args.port or 8080
    args.tls_port = args.tls_port or 8443
    return args


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_parser_client_defaults():
    args = cli.build_parser().parse_args(["client", "pyexpr"])

    assert (args.command, args.action, args.host, args.method) == ("client", "pyexpr", "127.0.0.1", "GET")
    assert args.port is None


def test_client_expression_defaults(routed_client):
    result = cli.run_client(_args("jmespath"), Settings())

    assert result == {
        "expression": cli.DEFAULT_EXPRESSION,
        "env": cli.DEFAULT_ENV,
        "output": "Hello, world!",
    }


def test_client_custom_expression(routed_client):
    args = _args("pyexpr", "--expression", "sprintf(greet, names[1])", "--env", json.dumps(cli.DEFAULT_ENV))

    assert cli.run_client(args, Settings())["output"] == "Hello, you!"


def test_client_user_data(routed_client):
    result = cli.run_client(_args("user-data", "--userdata", "hi", "--nonce", "n1"), Settings())

    assert result == {"userdata": "hi"}


def test_main_reports_connection_failure(capsys):
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["client", "pyexpr", "--port", str(port)])

    assert excinfo.value.code == 1
    assert capsys.readouterr().out.startswith("Error: client: sending request: ")
