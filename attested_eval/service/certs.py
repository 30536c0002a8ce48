from __future__ import annotations

import base64
import hashlib
import re
import ssl
from pathlib import Path
from typing import Optional, Sequence

from attested_eval.logging import get_logger
from attested_eval.service.canonical import canonicalize
from attested_eval.service.errors import AttestationError

logger = get_logger(__name__)

_PEM_CERT_PATTERN = re.compile(
    r"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----", re.DOTALL
)


def pem_to_der_chain(pem: str) -> list[bytes]:
    """Split a PEM bundle into DER certificates, leaf first."""
    blocks = _PEM_CERT_PATTERN.findall(pem)
    if not blocks:
        raise AttestationError("no certificates found in PEM data")
    try:
        return [ssl.PEM_cert_to_DER_cert(block) for block in blocks]
    except ValueError as exc:
        raise AttestationError(f"invalid PEM certificate: {exc}") from exc


def der_chain_to_pem(chain: Sequence[bytes]) -> str:
    return "".join(ssl.DER_cert_to_PEM_cert(der) for der in chain)


def encode_chain(chain: Sequence[bytes]) -> list[str]:
    return [base64.b64encode(der).decode("ascii") for der in chain]


def chain_fingerprint(chain: Sequence[bytes]) -> bytes:
    """SHA-256 over the canonical JSON list of base64 DER certificates.

    The whole chain is bound, not only the leaf, because every certificate in
    it becomes a trust root for the client.
    """
    return hashlib.sha256(canonicalize(encode_chain(chain))).digest()


class FileCertProvider:
    """Serves a certificate chain and key generated outside this process."""

    def __init__(self, cert_file: str | Path, key_file: Optional[str | Path] = None) -> None:
        self.cert_file = Path(cert_file)
        self.key_file = Path(key_file) if key_file else None
        self._chain: Optional[list[bytes]] = None

    def chain(self) -> list[bytes]:
        if self._chain is None:
            try:
                pem = self.cert_file.read_text(encoding="ascii")
            except OSError as exc:
                logger.error("cert_chain_read_failed", path=str(self.cert_file), error=str(exc))
                raise AttestationError("certificate chain unavailable") from exc
            self._chain = pem_to_der_chain(pem)
            logger.info(
                "cert_chain_loaded",
                path=str(self.cert_file),
                certificates=len(self._chain),
            )
        return list(self._chain)
