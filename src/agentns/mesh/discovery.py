"""Mesh Discovery — the Agent Name Service registry and resolver.

The :class:`AgentRegistry` is the phone-book: agents are registered with a
CA-verified certificate and the capabilities they advertise.  The
:class:`AgentResolver` answers "who can do X?" queries against it without
ever writing to it.

Capability matching is case-insensitive.  Records advertising the query
verbatim rank first; records with a capability that merely *contains* the
query follow.  Within each group, registration order is preserved.
"""

from __future__ import annotations

from typing import Any, Iterable, Iterator

from agentns.errors import CertificateInvalid, DuplicateAgent, NotFound
from agentns.logging import get_logger
from agentns.mesh.authority import CertificateAuthority
from agentns.mesh.locks import KeyedLock
from agentns.mesh.protocol import AgentRecord
from agentns.mesh.storage import InMemoryStore, KeyValueStore

logger = get_logger("discovery")


class AgentRegistry:
    """Agent id → :class:`AgentRecord`, backed by a :class:`KeyValueStore`."""

    def __init__(
        self,
        authority: CertificateAuthority,
        store: KeyValueStore | None = None,
    ) -> None:
        self.authority = authority
        self.store: KeyValueStore = store if store is not None else InMemoryStore()
        self._locks = KeyedLock()

    # ── Registration ─────────────────────────────────────────────────────

    def register(self, record: AgentRecord) -> AgentRecord:
        """Add a new agent.  Never an upsert: deregister first to replace."""
        agent_id = record.agent_id
        if record.certificate.subject_id != agent_id:
            logger.warning("Rejected registration of %s: certificate subject mismatch", agent_id)
            raise CertificateInvalid(
                "certificate subject does not match agent id",
                agent_id=agent_id,
                check="subject",
                subject_id=record.certificate.subject_id,
            )
        if not self.authority.verify(record.certificate):
            logger.warning("Rejected registration of %s: certificate failed verification", agent_id)
            raise CertificateInvalid(
                "certificate failed signature or validity check",
                agent_id=agent_id,
                check="signature_or_validity",
            )

        with self._locks.hold(agent_id):
            if self.store.get(agent_id) is not None:
                raise DuplicateAgent(f"agent {agent_id!r} is already registered", agent_id=agent_id)
            self.store.put(agent_id, record)

        logger.info(
            "Registered %s (%d capabilities, protocol=%s)",
            agent_id, len(record.capability_descriptions), record.protocol_info or "-",
        )
        return record

    def deregister(self, agent_id: str) -> AgentRecord:
        """Remove an agent and return the record it had."""
        with self._locks.hold(agent_id):
            record = self.store.get(agent_id)
            if record is None or not self.store.delete(agent_id):
                raise NotFound(f"agent {agent_id!r} is not registered", agent_id=agent_id)
        logger.info("Deregistered %s", agent_id)
        return record

    # ── Lookup ───────────────────────────────────────────────────────────

    def lookup(self, agent_id: str) -> AgentRecord:
        """Exact lookup by agent id (like a DNS A-record)."""
        record = self.store.get(agent_id)
        if record is None:
            raise NotFound(f"agent {agent_id!r} is not registered", agent_id=agent_id)
        return record

    def list_by_capability(self, capability: str) -> Iterator[AgentRecord]:
        """Yield records advertising *capability*: exact matches, then substring matches."""
        needle = capability.strip().lower()
        if not needle:
            return

        def exact(record: AgentRecord) -> bool:
            return any(c.lower() == needle for c in record.capability_descriptions)

        def partial(record: AgentRecord) -> bool:
            return not exact(record) and any(
                needle in c.lower() for c in record.capability_descriptions
            )

        yield from self.store.scan(exact)
        yield from self.store.scan(partial)

    def list_all(self) -> list[AgentRecord]:
        return list(self.store.scan(lambda _: True))

    # ── Stats ────────────────────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        records = self.list_all()
        return {
            "total_agents": len(records),
            "capabilities": sorted({c for r in records for c in r.capability_descriptions}),
            "protocols": sorted({r.protocol_info for r in records if r.protocol_info}),
        }


class AgentResolver:
    """Read-only capability resolution over an :class:`AgentRegistry`."""

    def __init__(self, registry: AgentRegistry) -> None:
        self.registry = registry

    def resolve(
        self,
        capability: str,
        protocols: Iterable[str] | None = None,
        limit: int | None = None,
        verified_only: bool = False,
    ) -> list[AgentRecord]:
        """Ordered candidates for *capability*; an empty list when nothing matches.

        ``protocols`` keeps only records whose ``protocol_info`` equals one of
        the given values (case-insensitive).  ``verified_only`` drops records
        whose certificate no longer verifies (e.g. expired since registration).
        """
        if limit is not None and limit <= 0:
            return []
        wanted = {p.lower() for p in protocols} if protocols else None
        results: list[AgentRecord] = []
        for record in self.registry.list_by_capability(capability):
            if wanted is not None and record.protocol_info.lower() not in wanted:
                continue
            if verified_only and not self.registry.authority.verify(record.certificate):
                continue
            results.append(record)
            if limit is not None and len(results) >= limit:
                break
        logger.debug("Resolved %r -> %d candidate(s)", capability, len(results))
        return results
