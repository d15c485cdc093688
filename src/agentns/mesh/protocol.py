"""Mesh Protocol — the records exchanged between discovery, negotiation and binding.

    register → resolve → negotiate → select → bind

All models are plain pydantic objects that serialise to JSON dicts.
"""

from __future__ import annotations

import hashlib
import json
import time
import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Identity ─────────────────────────────────────────────────────────────────

class Certificate(BaseModel):
    """CA-signed statement binding an agent id to a public key.

    Immutable once issued.  ``signature`` covers every other field.
    """

    model_config = ConfigDict(frozen=True)

    subject_id: str
    public_key: str                    # "x25519:<base64>"
    issuer: str
    not_before: float                  # unix seconds
    not_after: float
    signature: str = ""                # base64 Ed25519 signature by the issuer

    def signed_body(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "public_key": self.public_key,
            "issuer": self.issuer,
            "not_before": self.not_before,
            "not_after": self.not_after,
        }

    def canonical_bytes(self) -> bytes:
        """Deterministic byte representation of the signed fields."""
        return json.dumps(self.signed_body(), sort_keys=True, separators=(",", ":")).encode()

    @property
    def fingerprint(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()

    def is_current(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return self.not_before <= now <= self.not_after


class AgentRecord(BaseModel):
    """Registry entry: who an agent is and what it can do."""

    agent_id: str
    capability_descriptions: list[str] = Field(default_factory=list)
    certificate: Certificate
    protocol_info: str = ""            # e.g. "a2a/1.0", "mcp"

    @field_validator("capability_descriptions")
    @classmethod
    def _dedupe(cls, value: list[str]) -> list[str]:
        # set semantics, first occurrence wins
        return list(dict.fromkeys(value))


# ── Negotiation ──────────────────────────────────────────────────────────────

class OfferWeights(BaseModel):
    cost: float = Field(default=0.4, ge=0)
    qos: float = Field(default=0.4, ge=0)
    protocol: float = Field(default=0.2, ge=0)


class NegotiationRequirement(BaseModel):
    """What the requester cares about.  Built per request, never stored."""

    security_requirements: str | None = None
    weights: OfferWeights = Field(default_factory=OfferWeights)
    preferred_protocol: str | None = None


class CapabilityOffer(BaseModel):
    """A candidate's proposed terms.

    Field ranges are checked by the negotiation engine so that one bad
    offer fails the whole batch with a single, contextual error.
    """

    id: str
    description: str
    cost: float | None = None
    qos: float | None = None           # 0..1
    protocol_compatibility: str | None = None
    agent_id: str | None = None        # registry id of the offering agent

    @property
    def responder_id(self) -> str:
        return self.agent_id or self.id


class EvaluatedOffer(CapabilityOffer):
    score: float                       # 0..100
    reasoning: str = ""


class NegotiationRequest(BaseModel):
    """Inbound negotiation: a requester and the offers to choose between."""

    negotiation_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    requester_id: str = ""
    offers: list[dict[str, Any] | CapabilityOffer] = Field(default_factory=list)
    security_requirements: str | None = None
    requirements: NegotiationRequirement | None = None

    def effective_requirements(self) -> NegotiationRequirement:
        req = self.requirements or NegotiationRequirement()
        if self.security_requirements and not req.security_requirements:
            req = req.model_copy(update={"security_requirements": self.security_requirements})
        return req


class NegotiationOutcome(BaseModel):
    negotiation_id: str
    evaluated: list[EvaluatedOffer]
    winner: EvaluatedOffer


# ── Binding ──────────────────────────────────────────────────────────────────

class Binding(BaseModel):
    """Trusted session produced by a successful handshake."""

    binding_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    negotiation_id: str
    initiator_id: str
    responder_id: str
    session_key_material: str = Field(repr=False)   # base64, 32 bytes
    established_at: float
    expires_at: float

    @property
    def triple(self) -> tuple[str, str, str]:
        return (self.initiator_id, self.responder_id, self.negotiation_id)

    def is_live(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now < self.expires_at

    def public_view(self) -> dict[str, Any]:
        """Serialise without the session key."""
        return self.model_dump(exclude={"session_key_material"})
