"""Mesh Authority — certificate issuing/verification and agent key material.

The CA signs certificates with an Ed25519 key that is loaded once and then
only read.  Agents hold X25519 key-agreement keys; the CA certifies the
public half so peers can later derive a shared session key from it.
"""

from __future__ import annotations

import base64
import binascii
import time
from pathlib import Path
from typing import Any, Callable

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, x25519
from pydantic import ValidationError

from agentns.errors import InvalidSubject
from agentns.logging import fingerprint_of, get_logger
from agentns.mesh.protocol import Certificate

logger = get_logger("authority")

X25519_PREFIX = "x25519:"
DEFAULT_VALIDITY_SECONDS = 30 * 24 * 3600


# ── Agent key material ───────────────────────────────────────────────────────

def encode_public_key(public_key: x25519.X25519PublicKey) -> str:
    raw = public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return f"{X25519_PREFIX}{base64.b64encode(raw).decode()}"


def decode_public_key(encoded: str) -> x25519.X25519PublicKey:
    """Parse an ``x25519:<base64>`` string.  Raises ``ValueError`` if malformed."""
    if not isinstance(encoded, str) or not encoded.startswith(X25519_PREFIX):
        raise ValueError("public key must use the x25519: prefix")
    try:
        raw = base64.b64decode(encoded[len(X25519_PREFIX):], validate=True)
    except binascii.Error as exc:
        raise ValueError("public key is not valid base64") from exc
    if len(raw) != 32:
        raise ValueError(f"X25519 public key must be 32 bytes, got {len(raw)}")
    return x25519.X25519PublicKey.from_public_bytes(raw)


class AgentKeys:
    """An agent's X25519 key-agreement keypair."""

    def __init__(self, private_key: x25519.X25519PrivateKey) -> None:
        self._private_key = private_key
        self.public_key = encode_public_key(private_key.public_key())

    @classmethod
    def generate(cls) -> "AgentKeys":
        return cls(x25519.X25519PrivateKey.generate())

    def exchange(self, peer_public_key: str) -> bytes:
        """Raw X25519 shared secret with a peer's encoded public key."""
        return self._private_key.exchange(decode_public_key(peer_public_key))

    def __repr__(self) -> str:
        return f"AgentKeys(public={fingerprint_of(self.public_key)})"


# ── Certificate authority ────────────────────────────────────────────────────

class CertificateAuthority:
    """Issues and verifies agent certificates.

    The signing key is process-scoped, read-only state: construct one CA at
    start-up and hand the same instance to the registry and the handshake.
    ``clock`` is injectable so issuing is reproducible in tests.
    """

    def __init__(
        self,
        signing_key: ed25519.Ed25519PrivateKey,
        name: str = "agentns-ca",
        validity_seconds: float = DEFAULT_VALIDITY_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.validity_seconds = validity_seconds
        self.clock = clock
        self._signing_key = signing_key
        self._verify_key = signing_key.public_key()

    # ── Construction ─────────────────────────────────────────────────────

    @classmethod
    def generate(cls, **kwargs: Any) -> "CertificateAuthority":
        return cls(ed25519.Ed25519PrivateKey.generate(), **kwargs)

    @classmethod
    def from_pem(cls, pem: str | bytes, **kwargs: Any) -> "CertificateAuthority":
        if isinstance(pem, str):
            pem = pem.encode()
        key = serialization.load_pem_private_key(pem, password=None)
        if not isinstance(key, ed25519.Ed25519PrivateKey):
            raise TypeError(f"Expected Ed25519 private key, got {type(key).__name__}")
        return cls(key, **kwargs)

    @classmethod
    def from_pem_file(cls, path: str | Path, **kwargs: Any) -> "CertificateAuthority":
        return cls.from_pem(Path(path).read_bytes(), **kwargs)

    def private_key_pem(self) -> str:
        """PKCS8 PEM of the signing key (for storage)."""
        return self._signing_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()

    @property
    def public_key(self) -> str:
        raw = self._verify_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return f"ed25519:{base64.b64encode(raw).decode()}"

    # ── Issue / verify ───────────────────────────────────────────────────

    def issue(self, agent_id: str, public_key: str) -> Certificate:
        """Sign a certificate for *agent_id* valid from now for ``validity_seconds``."""
        if not isinstance(agent_id, str) or not agent_id.strip():
            raise InvalidSubject("agent id must be a non-empty string", agent_id=agent_id)

        now = self.clock()
        unsigned = Certificate(
            subject_id=agent_id,
            public_key=public_key,
            issuer=self.name,
            not_before=now,
            not_after=now + self.validity_seconds,
        )
        signature = self._signing_key.sign(unsigned.canonical_bytes())
        cert = unsigned.model_copy(update={"signature": base64.b64encode(signature).decode()})
        logger.info(
            "Issued certificate for %s (key %s, expires %.0f)",
            agent_id, fingerprint_of(public_key), cert.not_after,
        )
        return cert

    def verify(self, certificate: Any, now: float | None = None) -> bool:
        """Return True when *certificate* is signed by this CA and currently valid.

        Malformed input of any shape yields False rather than an exception.
        """
        try:
            if isinstance(certificate, dict):
                certificate = Certificate.model_validate(certificate)
            if not isinstance(certificate, Certificate):
                return False
            if certificate.issuer != self.name:
                return False
            signature = base64.b64decode(certificate.signature, validate=True)
            self._verify_key.verify(signature, certificate.canonical_bytes())
        except (InvalidSignature, ValidationError, binascii.Error, ValueError, TypeError):
            return False

        now = self.clock() if now is None else now
        return certificate.is_current(now)
