"""AgentNS Mesh — discovery, negotiation and secure binding between agents.

Enables agents to:
- **Discover** each other via the Agent Name Service (capability lookup)
- **Prove identity** with CA-signed certificates
- **Negotiate** by having competing offers scored and one winner selected
- **Bind** to the winner over a session key derived from both certificates
"""

from agentns.mesh.protocol import (
    AgentRecord,
    Binding,
    CapabilityOffer,
    Certificate,
    EvaluatedOffer,
    NegotiationOutcome,
    NegotiationRequest,
    NegotiationRequirement,
    OfferWeights,
)
from agentns.mesh.authority import AgentKeys, CertificateAuthority
from agentns.mesh.storage import InMemoryStore, JsonFileStore, KeyValueStore
from agentns.mesh.discovery import AgentRegistry, AgentResolver
from agentns.mesh.negotiation import (
    NegotiationEngine,
    OfferScorer,
    normalize_scorer_output,
    select_winner,
    validate_offers,
)
from agentns.mesh.scorers import LLMOfferScorer, RuleBasedScorer
from agentns.mesh.binding import (
    Bound,
    BindingHandshake,
    CertificatesExchanged,
    Failed,
    HandshakeAttempt,
    Initiated,
    Verified,
    derive_session_key,
)

__all__ = [
    # Protocol
    "AgentRecord",
    "Binding",
    "CapabilityOffer",
    "Certificate",
    "EvaluatedOffer",
    "NegotiationOutcome",
    "NegotiationRequest",
    "NegotiationRequirement",
    "OfferWeights",
    # Authority
    "AgentKeys",
    "CertificateAuthority",
    # Discovery
    "KeyValueStore",
    "InMemoryStore",
    "JsonFileStore",
    "AgentRegistry",
    "AgentResolver",
    # Negotiation
    "NegotiationEngine",
    "OfferScorer",
    "RuleBasedScorer",
    "LLMOfferScorer",
    "normalize_scorer_output",
    "select_winner",
    "validate_offers",
    # Binding
    "BindingHandshake",
    "HandshakeAttempt",
    "Initiated",
    "CertificatesExchanged",
    "Verified",
    "Bound",
    "Failed",
    "derive_session_key",
]
