"""Mesh Server — FastAPI endpoints that expose a node's ANS, negotiation and binding.

Can be run standalone (``agentns serve``) or mounted inside another app.

Endpoints:

    GET    /ca                      — CA name and public key
    POST   /ca/certificates         — issue a certificate for an agent key
    POST   /ans/agents              — register an agent record
    GET    /ans/agents/{agent_id}   — look up one agent
    DELETE /ans/agents/{agent_id}   — deregister an agent
    GET    /ans/resolve             — resolve a capability to candidates
    GET    /ans/stats               — registry stats
    POST   /negotiations            — evaluate offers and select a winner
    POST   /bindings                — bind this node to a negotiation winner
    GET    /bindings                — live bindings held by this node
    DELETE /bindings/{binding_id}   — release a binding
"""

from __future__ import annotations

from collections import OrderedDict

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from agentns.config import Settings, load_settings
from agentns.errors import AgentNSError, InvalidRequest, NotFound
from agentns.logging import configure_logging, get_logger
from agentns.mesh.authority import AgentKeys, CertificateAuthority
from agentns.mesh.binding import BindingHandshake
from agentns.mesh.discovery import AgentRegistry, AgentResolver
from agentns.mesh.negotiation import NegotiationEngine, OfferScorer
from agentns.mesh.protocol import AgentRecord, NegotiationOutcome, NegotiationRequest
from agentns.mesh.scorers import LLMOfferScorer, RuleBasedScorer
from agentns.mesh.storage import InMemoryStore, JsonFileStore, KeyValueStore

logger = get_logger("server")

MAX_RECORDED_OUTCOMES = 1024


# ── Node state ───────────────────────────────────────────────────────────────

class MeshNode:
    """Everything one AgentNS deployment needs, wired in dependency order."""

    def __init__(
        self,
        agent_id: str = "node@localhost",
        authority: CertificateAuthority | None = None,
        store: KeyValueStore | None = None,
        scorer: OfferScorer | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.authority = authority or CertificateAuthority.generate(
            name=self.settings.ca_name, validity_seconds=self.settings.cert_ttl_seconds,
        )
        self.registry = AgentRegistry(self.authority, store)
        self.resolver = AgentResolver(self.registry)
        self.engine = NegotiationEngine(
            scorer or RuleBasedScorer(), timeout=self.settings.scorer_timeout_seconds,
        )
        self.keys = AgentKeys.generate()
        self.certificate = self.authority.issue(agent_id, self.keys.public_key)
        self.handshake = BindingHandshake(
            self.authority,
            self.registry,
            self.keys,
            self.certificate,
            binding_ttl=self.settings.binding_ttl_seconds,
            verify_timeout=self.settings.verify_timeout_seconds,
        )
        self._winners: OrderedDict[str, str] = OrderedDict()

    @property
    def agent_id(self) -> str:
        return self.certificate.subject_id

    def record_outcome(self, outcome: NegotiationOutcome) -> None:
        """Remember who won *outcome* so a later bind can be checked against it."""
        self._winners[outcome.negotiation_id] = outcome.winner.responder_id
        self._winners.move_to_end(outcome.negotiation_id)
        while len(self._winners) > MAX_RECORDED_OUTCOMES:
            self._winners.popitem(last=False)

    def winner_of(self, negotiation_id: str) -> str:
        try:
            return self._winners[negotiation_id]
        except KeyError:
            raise NotFound(
                f"no negotiation {negotiation_id!r} has been settled on this node",
                negotiation_id=negotiation_id,
            ) from None

    @classmethod
    def from_settings(cls, settings: Settings, agent_id: str = "node@localhost") -> "MeshNode":
        if settings.ca_key_path:
            authority = CertificateAuthority.from_pem_file(
                settings.ca_key_path,
                name=settings.ca_name,
                validity_seconds=settings.cert_ttl_seconds,
            )
        else:
            logger.warning("No CA key configured; generated an ephemeral CA key")
            authority = None
        store = JsonFileStore(settings.store_path) if settings.store_path else InMemoryStore()
        if settings.scorer == "llm":
            scorer = LLMOfferScorer(model=settings.scorer_model)
        else:
            scorer = RuleBasedScorer()
        return cls(agent_id=agent_id, authority=authority, store=store, scorer=scorer, settings=settings)


_node: MeshNode | None = None


def get_node() -> MeshNode:
    global _node
    if _node is None:
        _node = MeshNode.from_settings(load_settings())
    return _node


def init_node(node: MeshNode) -> MeshNode:
    global _node
    _node = node
    return _node


# ── FastAPI app ──────────────────────────────────────────────────────────────

mesh_app = FastAPI(title="AgentNS Mesh", version="0.1.0")


@mesh_app.exception_handler(AgentNSError)
async def agentns_error_handler(request: Request, exc: AgentNSError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@mesh_app.get("/ca")
async def ca_info() -> dict:
    node = get_node()
    return {"name": node.authority.name, "public_key": node.authority.public_key}


class IssueBody(BaseModel):
    agent_id: str
    public_key: str


@mesh_app.post("/ca/certificates")
async def issue_certificate(body: IssueBody) -> dict:
    return get_node().authority.issue(body.agent_id, body.public_key).model_dump()


@mesh_app.post("/ans/agents", status_code=201)
async def register_agent(record: AgentRecord) -> dict:
    get_node().registry.register(record)
    return {"status": "registered", "agent_id": record.agent_id}


@mesh_app.get("/ans/agents/{agent_id}")
async def lookup_agent(agent_id: str) -> dict:
    return get_node().registry.lookup(agent_id).model_dump()


@mesh_app.delete("/ans/agents/{agent_id}")
async def deregister_agent(agent_id: str) -> dict:
    get_node().registry.deregister(agent_id)
    return {"status": "deregistered", "agent_id": agent_id}


@mesh_app.get("/ans/resolve")
async def resolve_capability(
    capability: str,
    protocol: list[str] | None = Query(default=None),
    limit: int | None = Query(default=None, ge=0),
    verified_only: bool = False,
) -> list[dict]:
    records = get_node().resolver.resolve(
        capability, protocols=protocol, limit=limit, verified_only=verified_only,
    )
    return [r.model_dump() for r in records]


@mesh_app.get("/ans/stats")
async def registry_stats() -> dict:
    return get_node().registry.stats()


@mesh_app.post("/negotiations")
async def negotiate(request: NegotiationRequest) -> dict:
    node = get_node()
    outcome = await node.engine.negotiate(request)
    node.record_outcome(outcome)
    return outcome.model_dump()


class BindBody(BaseModel):
    negotiation_id: str
    responder_id: str | None = None      # defaults to the recorded winner


@mesh_app.post("/bindings", status_code=201)
async def create_binding(body: BindBody) -> dict:
    node = get_node()
    winner = node.winner_of(body.negotiation_id)
    if body.responder_id is not None and body.responder_id != winner:
        raise InvalidRequest(
            "responder did not win this negotiation",
            negotiation_id=body.negotiation_id, responder_id=body.responder_id, check="winner",
        )
    binding = await node.handshake.bind(body.negotiation_id, winner)
    return binding.public_view()


@mesh_app.get("/bindings")
async def list_bindings() -> list[dict]:
    return [b.public_view() for b in get_node().handshake.list_bindings()]


@mesh_app.delete("/bindings/{binding_id}")
async def release_binding(binding_id: str) -> dict:
    get_node().handshake.release(binding_id)
    return {"status": "released", "binding_id": binding_id}


# ── Standalone runner ────────────────────────────────────────────────────────

def run_mesh_server(
    agent_id: str = "node@localhost",
    host: str = "0.0.0.0",
    port: int = 9100,
) -> None:
    """Start the mesh server (blocking)."""
    import uvicorn

    settings = load_settings()
    configure_logging(settings.log_level)
    init_node(MeshNode.from_settings(settings, agent_id=agent_id))
    uvicorn.run(mesh_app, host=host, port=port)


if __name__ == "__main__":
    run_mesh_server()
