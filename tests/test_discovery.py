import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from agentns.errors import CertificateInvalid, DuplicateAgent, NotFound
from agentns.mesh.authority import AgentKeys, CertificateAuthority
from agentns.mesh.discovery import AgentRegistry, AgentResolver
from agentns.mesh.locks import KeyedLock
from agentns.mesh.protocol import AgentRecord
from agentns.mesh.storage import JsonFileStore


def _snapshot(registry):
    return [r.model_dump() for r in registry.list_all()]


def test_register_and_lookup(registry, make_record):
    record, _ = make_record("agent-a")
    registry.register(record)
    assert registry.lookup("agent-a") == record


def test_duplicate_registration_leaves_record_unchanged(registry, make_record):
    original, _ = make_record("agent-a", capabilities=["translate-text"])
    replacement, _ = make_record("agent-a", capabilities=["summarise"])
    registry.register(original)

    with pytest.raises(DuplicateAgent) as exc_info:
        registry.register(replacement)

    assert exc_info.value.context["agent_id"] == "agent-a"
    assert registry.lookup("agent-a") == original


def test_register_rejects_certificate_from_other_ca(registry, clock):
    other = CertificateAuthority.generate(name="test-ca", clock=clock)
    record = AgentRecord(
        agent_id="agent-a",
        capability_descriptions=["translate-text"],
        certificate=other.issue("agent-a", AgentKeys.generate().public_key),
    )
    with pytest.raises(CertificateInvalid):
        registry.register(record)
    with pytest.raises(NotFound):
        registry.lookup("agent-a")


def test_register_rejects_subject_mismatch(registry, ca):
    record = AgentRecord(
        agent_id="agent-a",
        certificate=ca.issue("agent-b", AgentKeys.generate().public_key),
    )
    with pytest.raises(CertificateInvalid) as exc_info:
        registry.register(record)
    assert exc_info.value.context["check"] == "subject"


def test_register_rejects_expired_certificate(registry, make_record, clock):
    record, _ = make_record("agent-a")
    clock.advance(5000)
    with pytest.raises(CertificateInvalid):
        registry.register(record)


def test_deregister_is_not_idempotent(registry, make_record):
    record, _ = make_record("agent-a")
    registry.register(record)
    assert registry.deregister("agent-a") == record
    with pytest.raises(NotFound):
        registry.deregister("agent-a")


def test_lookup_missing_agent(registry):
    with pytest.raises(NotFound) as exc_info:
        registry.lookup("ghost")
    assert exc_info.value.status_code == 404


def test_capabilities_have_set_semantics(make_record):
    record, _ = make_record("agent-a", capabilities=["b", "a", "b"])
    assert record.capability_descriptions == ["b", "a"]


def test_register_resolve_deregister_scenario(registry, resolver, make_record):
    record, _ = make_record("agent-a", capabilities=["translate-text"])
    registry.register(record)
    assert [r.agent_id for r in resolver.resolve("translate-text")] == ["agent-a"]

    registry.deregister("agent-a")
    assert resolver.resolve("translate-text") == []


def test_resolve_ranks_exact_before_substring_in_insertion_order(registry, resolver, make_record):
    for agent_id, caps in [
        ("partial-1", ["translate-text-fast"]),
        ("exact-1", ["Translate-Text"]),
        ("unrelated", ["summarise"]),
        ("partial-2", ["bulk-translate-text"]),
        ("exact-2", ["translate-text", "ocr"]),
    ]:
        registry.register(make_record(agent_id, capabilities=caps)[0])

    ids = [r.agent_id for r in resolver.resolve("translate-text")]
    assert ids == ["exact-1", "exact-2", "partial-1", "partial-2"]


def test_resolve_filters_and_limits(registry, resolver, make_record):
    registry.register(make_record("a2a-1", protocol_info="a2a/1.0")[0])
    registry.register(make_record("mcp-1", protocol_info="MCP")[0])
    registry.register(make_record("a2a-2", protocol_info="a2a/1.0")[0])

    assert [r.agent_id for r in resolver.resolve("translate", protocols=["mcp"])] == ["mcp-1"]
    assert [r.agent_id for r in resolver.resolve("translate", protocols=["a2a/1.0"], limit=1)] == ["a2a-1"]
    assert resolver.resolve("translate", protocols=["grpc"]) == []
    assert resolver.resolve("") == []


def test_resolve_non_positive_limit_returns_nothing(registry, resolver, make_record):
    registry.register(make_record("agent-a")[0])
    registry.register(make_record("agent-b")[0])
    assert resolver.resolve("translate-text", limit=0) == []
    assert resolver.resolve("translate-text", limit=-3) == []
    assert len(resolver.resolve("translate-text", limit=5)) == 2


def test_resolve_verified_only_drops_expired(registry, resolver, make_record, clock):
    registry.register(make_record("agent-a")[0])
    clock.advance(1001)
    assert len(resolver.resolve("translate-text")) == 1
    assert resolver.resolve("translate-text", verified_only=True) == []


def test_resolve_does_not_mutate_registry(registry, resolver, make_record):
    for agent_id in ("agent-a", "agent-b"):
        registry.register(make_record(agent_id)[0])
    before = _snapshot(registry)
    resolver.resolve("translate-text", protocols=["a2a/1.0"], limit=1, verified_only=True)
    resolver.resolve("nothing")
    assert _snapshot(registry) == before


def test_concurrent_registration_of_same_id_has_one_winner(registry, make_record):
    records = [make_record("agent-a")[0] for _ in range(8)]
    barrier = threading.Barrier(len(records))

    def attempt(record):
        barrier.wait()
        try:
            registry.register(record)
            return "ok"
        except DuplicateAgent:
            return "duplicate"

    with ThreadPoolExecutor(max_workers=len(records)) as pool:
        outcomes = list(pool.map(attempt, records))

    assert outcomes.count("ok") == 1
    assert outcomes.count("duplicate") == len(records) - 1


def test_keyed_lock_drops_unused_entries():
    locks = KeyedLock()
    with locks.hold("a"):
        with locks.hold("b"):
            assert len(locks) == 2
    assert len(locks) == 0


def test_json_file_store_persists_registrations(tmp_path, ca, make_record):
    path = str(tmp_path / "registry" / "agents.json")
    registry = AgentRegistry(ca, JsonFileStore(path))
    record, _ = make_record("agent-a")
    registry.register(record)

    reopened = AgentRegistry(ca, JsonFileStore(path))
    assert reopened.lookup("agent-a") == record

    reopened.deregister("agent-a")
    assert AgentRegistry(ca, JsonFileStore(path)).list_all() == []


def test_stats(registry, make_record):
    registry.register(make_record("agent-a", capabilities=["ocr", "translate-text"])[0])
    registry.register(make_record("agent-b", capabilities=["ocr"], protocol_info="mcp")[0])
    stats = registry.stats()
    assert stats["total_agents"] == 2
    assert stats["capabilities"] == ["ocr", "translate-text"]
    assert stats["protocols"] == ["a2a/1.0", "mcp"]


def test_resolver_works_without_fixture_wiring(ca, make_record):
    registry = AgentRegistry(ca)
    registry.register(make_record("agent-a")[0])
    assert AgentResolver(registry).resolve("TRANSLATE")[0].agent_id == "agent-a"
