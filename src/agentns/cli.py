"""AgentNS CLI — operate a CA and an ANS node from the command line.

Usage:
    agentns ca-keygen --out ca.pem
    agentns issue my-agent@acme.com x25519:... --ca-key ca.pem
    agentns serve --port 9100
    agentns demo
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def cmd_ca_keygen(args):
    """Generate a CA signing key."""
    from agentns.mesh.authority import CertificateAuthority

    out = Path(args.out)
    if out.exists() and not args.force:
        print(f"Refusing to overwrite {out} (use --force)", file=sys.stderr)
        sys.exit(1)
    ca = CertificateAuthority.generate()
    out.write_text(ca.private_key_pem())
    out.chmod(0o600)
    print(f"Wrote CA key to {out}")
    print(f"Public key: {ca.public_key}")


def cmd_issue(args):
    """Issue a certificate for an agent public key."""
    from agentns.config import load_settings
    from agentns.errors import AgentNSError
    from agentns.mesh.authority import CertificateAuthority

    settings = load_settings()
    key_path = args.ca_key or settings.ca_key_path
    if not key_path:
        print("Error: no CA key given (--ca-key or AGENTNS_CA_KEY_PATH)", file=sys.stderr)
        sys.exit(1)
    ca = CertificateAuthority.from_pem_file(
        key_path,
        name=settings.ca_name,
        validity_seconds=args.ttl or settings.cert_ttl_seconds,
    )
    try:
        cert = ca.issue(args.agent_id, args.public_key)
    except AgentNSError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(cert.model_dump(), indent=2))


def cmd_serve(args):
    """Start the mesh server."""
    from agentns.mesh.server import run_mesh_server

    print("=" * 60)
    print("AgentNS Mesh Node")
    print(f"   Node:  {args.agent_id}")
    print(f"   URL:   http://{args.host}:{args.port}")
    print("   Press Ctrl+C to stop")
    print("=" * 60)
    run_mesh_server(agent_id=args.agent_id, host=args.host, port=args.port)


async def _demo():
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
        RuleBasedScorer,
    )

    ca = CertificateAuthority.generate()
    registry = AgentRegistry(ca)
    resolver = AgentResolver(registry)

    offers = []
    for agent_id, cost, qos in [("fast@acme", 12.0, 0.95), ("cheap@globex", 4.0, 0.7), ("mid@initech", 8.0, 0.85)]:
        keys = AgentKeys.generate()
        registry.register(AgentRecord(
            agent_id=agent_id,
            capability_descriptions=["translate-text"],
            certificate=ca.issue(agent_id, keys.public_key),
            protocol_info="a2a/1.0",
        ))
        offers.append(CapabilityOffer(
            id=f"offer-{agent_id}", agent_id=agent_id,
            description=f"Translation by {agent_id}", cost=cost, qos=qos,
        ))

    candidates = resolver.resolve("translate-text")
    print(f"Resolved {len(candidates)} candidate(s): {', '.join(r.agent_id for r in candidates)}")

    engine = NegotiationEngine(RuleBasedScorer())
    outcome = await engine.negotiate(NegotiationRequest(requester_id="buyer@local", offers=offers))
    for e in outcome.evaluated:
        print(f"   {e.id:<22} score={e.score:6.2f}  {e.reasoning}")
    print(f"Winner: {outcome.winner.id}")

    buyer_keys = AgentKeys.generate()
    handshake = BindingHandshake(ca, registry, buyer_keys, ca.issue("buyer@local", buyer_keys.public_key))
    binding = await handshake.bind(outcome.negotiation_id, outcome.winner)
    print(f"Bound {binding.initiator_id} -> {binding.responder_id} (binding {binding.binding_id})")


def cmd_demo(args):
    """Discovery → negotiation → binding, end to end, in-process."""
    asyncio.run(_demo())


def main():
    parser = argparse.ArgumentParser(
        prog="agentns",
        description="AgentNS — agent discovery, negotiation and secure binding",
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # agentns ca-keygen
    p_keygen = sub.add_parser("ca-keygen", help="Generate a CA signing key")
    p_keygen.add_argument("--out", default="ca.pem", help="Output PEM path")
    p_keygen.add_argument("--force", action="store_true", help="Overwrite an existing file")
    p_keygen.set_defaults(func=cmd_ca_keygen)

    # agentns issue
    p_issue = sub.add_parser("issue", help="Issue an agent certificate")
    p_issue.add_argument("agent_id", help="Agent identifier")
    p_issue.add_argument("public_key", help="Agent public key (x25519:<base64>)")
    p_issue.add_argument("--ca-key", default="", help="CA key PEM (default: AGENTNS_CA_KEY_PATH)")
    p_issue.add_argument("--ttl", type=float, default=None, help="Validity in seconds")
    p_issue.set_defaults(func=cmd_issue)

    # agentns serve
    p_serve = sub.add_parser("serve", help="Start the mesh server")
    p_serve.add_argument("--agent-id", default="node@localhost", help="This node's agent id")
    p_serve.add_argument("--host", default="0.0.0.0", help="Bind address")
    p_serve.add_argument("--port", type=int, default=9100, help="Port number")
    p_serve.set_defaults(func=cmd_serve)

    # agentns demo
    p_demo = sub.add_parser("demo", help="Run an in-process end-to-end demo")
    p_demo.set_defaults(func=cmd_demo)

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
