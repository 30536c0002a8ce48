from __future__ import annotations

import json
from typing import Any

from attested_eval.service.errors import CanonicalizationError


def canonicalize(value: Any) -> bytes:
    """Deterministic JSON encoding of ``value``.

    Keys are sorted, separators carry no whitespace, text is UTF-8 and
    NaN/Infinity are rejected. Re-encoding a decoded copy yields the same
    bytes, which is what lets a verifier recompute attested data from a
    returned record.
    """
    try:
        return json.dumps(
            value,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        ).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise CanonicalizationError(f"result is not canonically serializable: {exc}") from exc
