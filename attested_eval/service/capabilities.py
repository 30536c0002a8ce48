"""Host capability functions exposed to sandboxed expressions.

Capabilities are the only route by which an expression can reach outside the
evaluator. They are registered once at startup into an immutable
``CapabilityRegistry`` and shared by every engine and request, so each
function must be safe to call from several worker threads at once.
"""
from __future__ import annotations

import json
import keyword
import re
import threading
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Optional

import httpx

from attested_eval.logging import get_logger
from attested_eval.service.errors import CapabilityError

logger = get_logger(__name__)

CapabilityFn = Callable[..., Any]

_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class Capability:
    """A named host function callable from expressions with any number of arguments."""

    name: str
    fn: CapabilityFn
    description: str = ""

    def invoke(self, args: Iterable[Any], *, abandoned: Optional[threading.Event] = None) -> Any:
        """Call the function, normalizing every failure to ``CapabilityError``.

        Once ``abandoned`` is set the evaluation that owns this call has been
        given up on, so no new call is started.
        """
        if abandoned is not None and abandoned.is_set():
            raise CapabilityError(f"{self.name}: evaluation abandoned")
        try:
            return self.fn(*args)
        except CapabilityError:
            raise
        except Exception as exc:
            logger.warning(
                "capability_unexpected_error",
                capability=self.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise CapabilityError(f"{self.name}: {exc}") from exc


class CapabilityRegistry(Mapping[str, Capability]):
    """Immutable name to capability whitelist."""

    def __init__(self, capabilities: Iterable[Capability] = ()) -> None:
        table: dict[str, Capability] = {}
        for capability in capabilities:
            if not _NAME_PATTERN.match(capability.name) or keyword.iskeyword(capability.name):
                raise ValueError(f"invalid capability name {capability.name!r}")
            if capability.name in table:
                raise ValueError(f"duplicate capability {capability.name!r}")
            if not callable(capability.fn):
                raise ValueError(f"capability {capability.name!r} is not callable")
            table[capability.name] = capability
        self._table = MappingProxyType(table)

    def __getitem__(self, name: str) -> Capability:
        return self._table[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._table)

    def __len__(self) -> int:
        return len(self._table)

    def __repr__(self) -> str:
        return f"CapabilityRegistry({sorted(self._table)!r})"


def make_http_get(client: httpx.Client) -> CapabilityFn:
    """Build ``http_get(url)``: GET ``url`` and return its decoded JSON body."""

    def http_get(*params: Any) -> Any:
        if len(params) < 1:
            raise CapabilityError("url not provided")
        url = params[0]
        if not isinstance(url, str):
            raise CapabilityError("url should be a string")

        try:
            resp = client.get(url)
        except httpx.HTTPError as exc:
            raise CapabilityError(f"making GET req to '{url}': {exc}") from exc
        if resp.status_code != 200:
            raise CapabilityError(
                f"received non-200 response: {resp.status_code} {resp.reason_phrase}".rstrip()
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise CapabilityError(f"decoding JSON response: {exc}") from exc

    return http_get


_VERB_PATTERN = re.compile(r"%(.)", re.DOTALL)


def _go_type(value: Any) -> str:
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "float64"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "[]interface {}"
    if isinstance(value, Mapping):
        return "map[string]interface {}"
    return type(value).__name__


def _format_value(value: Any) -> str:
    """Render ``value`` the way Go's ``%v`` renders decoded JSON."""
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer() and abs(value) < 1e21:
            return str(int(value))
        return repr(value)
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_format_value(item) for item in value) + "]"
    if isinstance(value, Mapping):
        items = " ".join(f"{key}:{_format_value(value[key])}" for key in sorted(value))
        return "map[" + items + "]"
    return str(value)


def _bad_verb(verb: str, value: Any) -> str:
    return f"%!{verb}({_go_type(value)}={_format_value(value)})"


def _format_verb(verb: str, value: Any) -> str:
    if verb in ("v", "s"):
        return _format_value(value)
    if verb == "d":
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return _bad_verb(verb, value)
    if verb == "t":
        if isinstance(value, bool):
            return _format_value(value)
        return _bad_verb(verb, value)
    if verb == "q":
        if isinstance(value, str):
            return json.dumps(value, ensure_ascii=False)
        return _bad_verb(verb, value)
    return f"%!{verb}(BADVERB)"


def sprintf(*args: Any) -> str:
    """Format like Go's ``fmt.Sprintf`` for the verbs ``%v %s %d %t %q %%``."""
    if not args:
        raise CapabilityError("format string not provided")
    fmt, operands = args[0], list(args[1:])
    if not isinstance(fmt, str):
        raise CapabilityError("format should be a string")

    consumed = 0

    def _replace(match: re.Match) -> str:
        nonlocal consumed
        verb = match.group(1)
        if verb == "%":
            return "%"
        if consumed >= len(operands):
            return f"%!{verb}(MISSING)"
        value = operands[consumed]
        consumed += 1
        return _format_verb(verb, value)

    out = _VERB_PATTERN.sub(_replace, fmt)
    if consumed < len(operands):
        extra = ", ".join(
            f"{_go_type(value)}={_format_value(value)}" for value in operands[consumed:]
        )
        out += f"%!(EXTRA {extra})"
    return out


def default_registry(http_client: httpx.Client) -> CapabilityRegistry:
    """Whitelist served by the isolated process."""
    return CapabilityRegistry(
        [
            Capability(
                "http_get",
                make_http_get(http_client),
                "GET a URL through the egress proxy and return its JSON body",
            ),
            Capability("sprintf", sprintf, "Go-style string formatting"),
        ]
    )
