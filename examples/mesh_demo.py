#!/usr/bin/env python3
"""
Mesh Demo — a buyer agent finds a translator, negotiates, and binds.

This example runs entirely in-process (no HTTP servers needed).
It walks through the whole protocol:

    1. A CA issues certificates to three translation agents
    2. The agents register in the Agent Name Service
    3. The buyer resolves "translate-text" to candidates
    4. The candidates' offers are scored and a winner is selected
    5. The buyer binds to the winner; both sides derive the same session key
    6. A second, concurrent bind for the same negotiation is refused
"""

from __future__ import annotations

import asyncio
import base64
import json
import textwrap

from agentns.errors import BindingInProgress
from agentns.logging import configure_logging
from agentns.mesh import (
    AgentKeys,
    AgentRecord,
    AgentRegistry,
    AgentResolver,
    BindingHandshake,
    CapabilityOffer,
    CertificateAuthority,
    NegotiationEngine,
    NegotiationRequest,
    NegotiationRequirement,
    RuleBasedScorer,
    derive_session_key,
)


# ── Helpers ──────────────────────────────────────────────────────────────────

DIVIDER = "═" * 60


def pp(label: str, obj: dict | list | str) -> None:
    """Pretty-print a labelled section."""
    print(f"\n{DIVIDER}")
    print(f"  {label}")
    print(DIVIDER)
    if isinstance(obj, (dict, list)):
        print(textwrap.indent(json.dumps(obj, indent=2, default=str), "  "))
    else:
        print(f"  {obj}")


SELLERS = [
    # agent_id, protocol, cost, qos
    ("lingua@acme.com", "a2a/1.0", 12.0, 0.97),
    ("babel@globex.io", "a2a/1.0", 5.0, 0.80),
    ("polyglot@initech.dev", "mcp", 5.0, 0.80),
]


async def main() -> None:
    ca = CertificateAuthority.generate(name="demo-ca")
    registry = AgentRegistry(ca)
    resolver = AgentResolver(registry)

    # ── 1–2. Issue certificates and register ─────────────────────────────
    seller_keys: dict[str, AgentKeys] = {}
    for agent_id, protocol, _, _ in SELLERS:
        keys = AgentKeys.generate()
        seller_keys[agent_id] = keys
        registry.register(AgentRecord(
            agent_id=agent_id,
            capability_descriptions=["translate-text", "detect-language"],
            certificate=ca.issue(agent_id, keys.public_key),
            protocol_info=protocol,
        ))
    pp("Registry", registry.stats())

    # ── 3. Resolve ───────────────────────────────────────────────────────
    candidates = resolver.resolve("translate-text", protocols=["a2a/1.0", "mcp"])
    pp("Candidates for 'translate-text'", [r.agent_id for r in candidates])

    # ── 4. Negotiate ─────────────────────────────────────────────────────
    terms = {agent_id: (cost, qos) for agent_id, _, cost, qos in SELLERS}
    offers = [
        CapabilityOffer(
            id=f"offer-{i}",
            agent_id=r.agent_id,
            description=f"EN↔DE translation by {r.agent_id}",
            cost=terms[r.agent_id][0],
            qos=terms[r.agent_id][1],
            protocol_compatibility=r.protocol_info,
        )
        for i, r in enumerate(candidates)
    ]
    request = NegotiationRequest(
        requester_id="buyer@local",
        offers=offers,
        requirements=NegotiationRequirement(preferred_protocol="a2a"),
    )
    outcome = await NegotiationEngine(RuleBasedScorer()).negotiate(request)
    pp("Evaluated offers", [
        {"id": e.id, "agent": e.agent_id, "score": e.score, "reasoning": e.reasoning}
        for e in outcome.evaluated
    ])
    pp("Winner", f"{outcome.winner.id} ({outcome.winner.agent_id})")

    # ── 5–6. Bind ────────────────────────────────────────────────────────
    buyer_keys = AgentKeys.generate()
    buyer_cert = ca.issue("buyer@local", buyer_keys.public_key)
    handshake = BindingHandshake(ca, registry, buyer_keys, buyer_cert)

    first, second = await asyncio.gather(
        handshake.establish(outcome.negotiation_id, outcome.winner),
        handshake.establish(outcome.negotiation_id, outcome.winner),
    )
    for attempt in (first, second):
        pp(f"Attempt → {attempt.state.kind}", [s.kind for s in attempt.history])

    binding = first.binding or second.binding
    winner_id = outcome.winner.responder_id
    responder_key = derive_session_key(
        seller_keys[winner_id],
        registry.lookup(winner_id).certificate,
        buyer_cert,
        outcome.negotiation_id,
    )
    pp("Binding", binding.public_view())
    pp("Responder derived the same key", base64.b64encode(responder_key).decode() == binding.session_key_material)

    try:
        await handshake.bind(outcome.negotiation_id, outcome.winner)
    except BindingInProgress as e:
        pp("Re-bind refused", e.to_dict())


if __name__ == "__main__":
    configure_logging("WARNING")
    asyncio.run(main())
