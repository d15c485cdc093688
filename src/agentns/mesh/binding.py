"""Mesh Binding — turn a winning offer into a verified, keyed session.

Each attempt is an explicit state machine::

    Initiated → CertificatesExchanged → Verified → Bound
        └──────────────┴─────────────────┴──────→ Failed

``Bound`` and ``Failed`` are terminal.  Nothing is retried: a failed
attempt needs a new negotiation.  At most one attempt, and at most one
live binding, may exist per (initiator, responder, negotiation) triple.

The session key is HKDF-SHA256 over the X25519 shared secret of the two
*certified* keys, so a party whose certificate did not verify cannot end
up holding a usable key.
"""

from __future__ import annotations

import asyncio
import base64
import threading
import time
from typing import Callable, Literal, Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from pydantic import BaseModel, Field

from agentns.errors import (
    ERRORS_BY_CODE,
    AgentNSError,
    BindingInProgress,
    CertificateRejected,
    InvalidTransition,
    NotFound,
)
from agentns.logging import get_logger
from agentns.mesh.authority import AgentKeys, CertificateAuthority
from agentns.mesh.discovery import AgentRegistry
from agentns.mesh.locks import ClaimSet
from agentns.mesh.protocol import Binding, CapabilityOffer, Certificate

logger = get_logger("binding")

DEFAULT_BINDING_TTL = 3600.0
DEFAULT_VERIFY_TIMEOUT = 5.0
SESSION_KEY_BYTES = 32

Triple = tuple[str, str, str]


# ── States ───────────────────────────────────────────────────────────────────

class Initiated(BaseModel):
    kind: Literal["initiated"] = "initiated"


class CertificatesExchanged(BaseModel):
    kind: Literal["certificates_exchanged"] = "certificates_exchanged"
    initiator_certificate: Certificate
    responder_certificate: Certificate


class Verified(BaseModel):
    kind: Literal["verified"] = "verified"
    initiator_certificate: Certificate
    responder_certificate: Certificate


class Bound(BaseModel):
    kind: Literal["bound"] = "bound"
    binding: Binding


class Failed(BaseModel):
    kind: Literal["failed"] = "failed"
    code: str
    reason: str
    context: dict = Field(default_factory=dict)

    def to_error(self) -> AgentNSError:
        cls = ERRORS_BY_CODE.get(self.code, AgentNSError)
        return cls(self.reason, **self.context)


HandshakeState = Union[Initiated, CertificatesExchanged, Verified, Bound, Failed]

TRANSITIONS: dict[str, set[str]] = {
    "initiated": {"certificates_exchanged", "failed"},
    "certificates_exchanged": {"verified", "failed"},
    "verified": {"bound", "failed"},
    "bound": set(),
    "failed": set(),
}


class HandshakeAttempt:
    """One run of the state machine; keeps the full state history."""

    def __init__(self, initiator_id: str, responder_id: str, negotiation_id: str) -> None:
        self.initiator_id = initiator_id
        self.responder_id = responder_id
        self.negotiation_id = negotiation_id
        self.state: HandshakeState = Initiated()
        self.history: list[HandshakeState] = [self.state]

    @property
    def triple(self) -> Triple:
        return (self.initiator_id, self.responder_id, self.negotiation_id)

    @property
    def is_terminal(self) -> bool:
        return not TRANSITIONS[self.state.kind]

    @property
    def binding(self) -> Binding | None:
        return self.state.binding if isinstance(self.state, Bound) else None

    def advance(self, new_state: HandshakeState) -> None:
        if new_state.kind not in TRANSITIONS[self.state.kind]:
            raise InvalidTransition(
                f"cannot move from {self.state.kind} to {new_state.kind}",
                negotiation_id=self.negotiation_id,
            )
        logger.debug("Handshake %s: %s -> %s", self.triple, self.state.kind, new_state.kind)
        self.state = new_state
        self.history.append(new_state)

    def fail(self, error: AgentNSError) -> None:
        self.advance(Failed(code=error.code, reason=error.message, context=error.context))


# ── Key derivation ───────────────────────────────────────────────────────────

def derive_session_key(
    own_keys: AgentKeys,
    own_certificate: Certificate,
    peer_certificate: Certificate,
    negotiation_id: str,
) -> bytes:
    """Session key either side can compute from its key and the peer's certificate.

    The HKDF info covers both certified keys (sorted, so order-free) and the
    negotiation id, so keys never repeat across negotiations.
    """
    shared = own_keys.exchange(peer_certificate.public_key)
    keys = sorted([own_certificate.public_key, peer_certificate.public_key])
    info = "|".join(["agentns-binding-v1", negotiation_id, *keys]).encode()
    return HKDF(algorithm=hashes.SHA256(), length=SESSION_KEY_BYTES, salt=None, info=info).derive(shared)


# ── Handshake ────────────────────────────────────────────────────────────────

class BindingHandshake:
    """Runs binding attempts on behalf of one initiating agent."""

    def __init__(
        self,
        authority: CertificateAuthority,
        registry: AgentRegistry,
        initiator_keys: AgentKeys,
        initiator_certificate: Certificate,
        binding_ttl: float = DEFAULT_BINDING_TTL,
        verify_timeout: float = DEFAULT_VERIFY_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.authority = authority
        self.registry = registry
        self.initiator_keys = initiator_keys
        self.initiator_certificate = initiator_certificate
        self.binding_ttl = binding_ttl
        self.verify_timeout = verify_timeout
        self.clock = clock
        self._guard = ClaimSet()
        self._bindings: dict[Triple, Binding] = {}
        self._bindings_lock = threading.Lock()

    @property
    def initiator_id(self) -> str:
        return self.initiator_certificate.subject_id

    # ── Public API ───────────────────────────────────────────────────────

    async def establish(
        self,
        negotiation_id: str,
        winner: CapabilityOffer | str,
        timeout: float | None = None,
    ) -> HandshakeAttempt:
        """Run a handshake to completion; the attempt ends in Bound or Failed.

        ``timeout`` (default ``verify_timeout``) bounds verification of both
        certificates together, not each one.
        """
        responder_id = winner if isinstance(winner, str) else winner.responder_id
        attempt = HandshakeAttempt(self.initiator_id, responder_id, negotiation_id)
        triple = attempt.triple

        if not self._guard.try_claim(triple):
            attempt.fail(BindingInProgress(
                "a handshake for this negotiation is already running",
                initiator_id=self.initiator_id, responder_id=responder_id,
                negotiation_id=negotiation_id, check="in_flight",
            ))
            return attempt
        try:
            if self.live_binding(*triple) is not None:
                attempt.fail(BindingInProgress(
                    "a live binding already exists for this negotiation",
                    initiator_id=self.initiator_id, responder_id=responder_id,
                    negotiation_id=negotiation_id, check="live_binding",
                ))
                return attempt
            try:
                await self._run(attempt, timeout)
            except CertificateRejected as exc:
                attempt.fail(exc)
        except asyncio.CancelledError:
            if not attempt.is_terminal:
                attempt.advance(Failed(code="CANCELLED", reason="handshake cancelled"))
            raise
        finally:
            self._guard.release(triple)

        if isinstance(attempt.state, Failed):
            logger.warning("Binding %s failed: %s", triple, attempt.state.reason)
        return attempt

    async def bind(
        self,
        negotiation_id: str,
        winner: CapabilityOffer | str,
        timeout: float | None = None,
    ) -> Binding:
        """Like :meth:`establish` but returns the Binding or raises the failure."""
        attempt = await self.establish(negotiation_id, winner, timeout)
        if isinstance(attempt.state, Failed):
            raise attempt.state.to_error()
        return attempt.binding

    def live_binding(self, initiator_id: str, responder_id: str, negotiation_id: str) -> Binding | None:
        self._drop_expired()
        with self._bindings_lock:
            return self._bindings.get((initiator_id, responder_id, negotiation_id))

    def release(self, binding_id: str) -> Binding:
        """End a binding before it expires."""
        with self._bindings_lock:
            for triple, binding in self._bindings.items():
                if binding.binding_id == binding_id:
                    del self._bindings[triple]
                    logger.info("Released binding %s", binding_id)
                    return binding
        raise NotFound(f"binding {binding_id!r} does not exist", binding_id=binding_id)

    def list_bindings(self) -> list[Binding]:
        self._drop_expired()
        with self._bindings_lock:
            return list(self._bindings.values())

    def _drop_expired(self) -> None:
        now = self.clock()
        with self._bindings_lock:
            expired = [t for t, b in self._bindings.items() if not b.is_live(now)]
            for triple in expired:
                del self._bindings[triple]
        if expired:
            logger.debug("Dropped %d expired binding(s)", len(expired))

    # ── State machine ────────────────────────────────────────────────────

    async def _run(self, attempt: HandshakeAttempt, timeout: float | None) -> None:
        limit = self.verify_timeout if timeout is None else timeout
        context = {
            "initiator_id": attempt.initiator_id,
            "responder_id": attempt.responder_id,
            "negotiation_id": attempt.negotiation_id,
        }

        # Initiated: collect both certificates
        try:
            responder_record = self.registry.lookup(attempt.responder_id)
        except NotFound as exc:
            raise CertificateRejected(
                "responder is not registered; no certificate to verify",
                check="responder_lookup", **context,
            ) from exc
        initiator_cert = self.initiator_certificate
        responder_cert = responder_record.certificate
        attempt.advance(CertificatesExchanged(
            initiator_certificate=initiator_cert, responder_certificate=responder_cert,
        ))

        # CertificatesExchanged: verify both within one deadline
        loop = asyncio.get_running_loop()
        deadline = loop.time() + limit
        for role, cert, expected in (
            ("initiator", initiator_cert, attempt.initiator_id),
            ("responder", responder_cert, attempt.responder_id),
        ):
            if cert.subject_id != expected:
                raise CertificateRejected(
                    f"{role} certificate subject does not match", check=f"{role}_subject", **context,
                )
            try:
                valid = await asyncio.wait_for(
                    asyncio.to_thread(self.authority.verify, cert), timeout=deadline - loop.time(),
                )
            except asyncio.TimeoutError as exc:
                raise CertificateRejected(
                    f"{role} certificate verification timed out", check=f"{role}_timeout", **context,
                ) from exc
            if not valid:
                raise CertificateRejected(
                    f"{role} certificate failed signature or validity check",
                    check=f"{role}_certificate", **context,
                )
        if initiator_cert.public_key != self.initiator_keys.public_key:
            raise CertificateRejected(
                "initiator certificate does not certify the local key",
                check="initiator_key", **context,
            )
        attempt.advance(Verified(
            initiator_certificate=initiator_cert, responder_certificate=responder_cert,
        ))

        # Verified: derive the session key from both certified keys
        try:
            key = derive_session_key(
                self.initiator_keys, initiator_cert, responder_cert, attempt.negotiation_id,
            )
        except ValueError as exc:
            raise CertificateRejected(
                "responder certificate carries an unusable public key",
                check="key_agreement", **context,
            ) from exc

        now = self.clock()
        binding = Binding(
            negotiation_id=attempt.negotiation_id,
            initiator_id=attempt.initiator_id,
            responder_id=attempt.responder_id,
            session_key_material=base64.b64encode(key).decode(),
            established_at=now,
            expires_at=now + self.binding_ttl,
        )
        with self._bindings_lock:
            self._bindings[attempt.triple] = binding
        attempt.advance(Bound(binding=binding))
        logger.info(
            "Bound %s -> %s for negotiation %s (binding %s)",
            attempt.initiator_id, attempt.responder_id, attempt.negotiation_id, binding.binding_id,
        )
