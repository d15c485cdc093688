import asyncio
import base64
import time

import pytest

from agentns.errors import BindingInProgress, CertificateRejected, InvalidTransition, NotFound
from agentns.mesh.authority import AgentKeys, CertificateAuthority
from agentns.mesh.binding import (
    Bound,
    BindingHandshake,
    Failed,
    HandshakeAttempt,
    Initiated,
    derive_session_key,
)
from agentns.mesh.protocol import AgentRecord, CapabilityOffer


class SlowAuthority(CertificateAuthority):
    """Verification that blocks its worker thread for ``delay`` seconds."""

    delay = 0.0

    def verify(self, certificate, now=None):
        if self.delay:
            time.sleep(self.delay)
        return super().verify(certificate, now)


@pytest.fixture
def initiator(ca):
    keys = AgentKeys.generate()
    return keys, ca.issue("buyer", keys.public_key)


@pytest.fixture
def responder(registry, make_record):
    record, keys = make_record("seller")
    registry.register(record)
    return record, keys


@pytest.fixture
def handshake(ca, registry, initiator, clock):
    keys, cert = initiator
    return BindingHandshake(ca, registry, keys, cert, binding_ttl=60, clock=clock)


@pytest.mark.asyncio
async def test_successful_handshake_walks_every_state(handshake, responder):
    attempt = await handshake.establish("neg-1", "seller")

    assert [s.kind for s in attempt.history] == [
        "initiated", "certificates_exchanged", "verified", "bound",
    ]
    assert attempt.is_terminal
    binding = attempt.binding
    assert binding.triple == ("buyer", "seller", "neg-1")
    assert binding.expires_at - binding.established_at == 60
    assert len(base64.b64decode(binding.session_key_material)) == 32
    assert "session_key_material" not in binding.public_view()


@pytest.mark.asyncio
async def test_responder_derives_the_same_session_key(handshake, initiator, responder):
    binding = await handshake.bind("neg-1", "seller")
    record, responder_keys = responder
    _, initiator_cert = initiator

    theirs = derive_session_key(responder_keys, record.certificate, initiator_cert, "neg-1")
    assert base64.b64encode(theirs).decode() == binding.session_key_material

    other_negotiation = derive_session_key(responder_keys, record.certificate, initiator_cert, "neg-2")
    assert other_negotiation != theirs


@pytest.mark.asyncio
async def test_winner_offer_resolves_to_its_agent(handshake, responder):
    offer = CapabilityOffer(id="offer-7", description="translation", agent_id="seller")
    binding = await handshake.bind("neg-1", offer)
    assert binding.responder_id == "seller"


@pytest.mark.asyncio
async def test_expired_responder_certificate_fails(ca, registry, responder, clock):
    clock.advance(1001)
    keys = AgentKeys.generate()
    handshake = BindingHandshake(ca, registry, keys, ca.issue("buyer", keys.public_key), clock=clock)

    attempt = await handshake.establish("neg-1", "seller")

    assert isinstance(attempt.state, Failed)
    assert attempt.state.code == "CERTIFICATE_REJECTED"
    assert attempt.state.context["check"] == "responder_certificate"
    assert "bound" not in [s.kind for s in attempt.history]


@pytest.mark.asyncio
async def test_forged_responder_certificate_fails(handshake, registry, clock):
    forger = CertificateAuthority.generate(name="test-ca", clock=clock)
    forged = AgentRecord(
        agent_id="mallory",
        capability_descriptions=["translate-text"],
        certificate=forger.issue("mallory", AgentKeys.generate().public_key),
    )
    registry.store.put("mallory", forged)  # bypasses registration checks

    with pytest.raises(CertificateRejected) as exc_info:
        await handshake.bind("neg-1", "mallory")
    assert exc_info.value.context["responder_id"] == "mallory"


@pytest.mark.asyncio
async def test_unregistered_responder_fails(handshake):
    attempt = await handshake.establish("neg-1", "nobody")
    assert isinstance(attempt.state, Failed)
    assert attempt.state.context["check"] == "responder_lookup"
    assert [s.kind for s in attempt.history] == ["initiated", "failed"]


@pytest.mark.asyncio
async def test_initiator_certificate_must_match_local_key(ca, registry, responder, clock):
    cert = ca.issue("buyer", AgentKeys.generate().public_key)
    handshake = BindingHandshake(ca, registry, AgentKeys.generate(), cert, clock=clock)
    attempt = await handshake.establish("neg-1", "seller")
    assert attempt.state.context["check"] == "initiator_key"


@pytest.mark.asyncio
async def test_concurrent_attempts_for_same_triple(handshake, responder):
    first, second = await asyncio.gather(
        handshake.establish("neg-1", "seller"),
        handshake.establish("neg-1", "seller"),
    )
    kinds = sorted([first.state.kind, second.state.kind])
    assert kinds == ["bound", "failed"]
    failed = first if isinstance(first.state, Failed) else second
    assert failed.state.code == "BINDING_IN_PROGRESS"


@pytest.mark.asyncio
async def test_live_binding_blocks_rebinding_until_released(handshake, responder):
    binding = await handshake.bind("neg-1", "seller")

    with pytest.raises(BindingInProgress):
        await handshake.bind("neg-1", "seller")

    handshake.release(binding.binding_id)
    assert handshake.live_binding("buyer", "seller", "neg-1") is None
    await handshake.bind("neg-1", "seller")

    with pytest.raises(NotFound):
        handshake.release("no-such-binding")


@pytest.mark.asyncio
async def test_expired_binding_no_longer_counts_as_live(handshake, responder, clock):
    await handshake.bind("neg-1", "seller")
    clock.advance(61)
    assert handshake.list_bindings() == []
    await handshake.bind("neg-1", "seller")


@pytest.mark.asyncio
async def test_expired_bindings_are_dropped_from_the_table(ca, registry, initiator, responder, clock):
    keys, cert = initiator
    handshake = BindingHandshake(ca, registry, keys, cert, binding_ttl=1, clock=clock)
    for i in range(20):
        await handshake.bind(f"neg-{i}", "seller")
    assert len(handshake._bindings) == 20

    clock.advance(10)
    assert handshake.list_bindings() == []
    assert handshake._bindings == {}


@pytest.mark.asyncio
async def test_new_handshake_sweeps_expired_bindings(ca, registry, initiator, responder, clock):
    keys, cert = initiator
    handshake = BindingHandshake(ca, registry, keys, cert, binding_ttl=1, clock=clock)
    await handshake.bind("neg-old", "seller")
    clock.advance(10)

    await handshake.bind("neg-new", "seller")
    assert [t[2] for t in handshake._bindings] == ["neg-new"]


@pytest.mark.asyncio
async def test_distinct_negotiations_bind_independently(handshake, responder):
    a, b = await asyncio.gather(handshake.bind("neg-1", "seller"), handshake.bind("neg-2", "seller"))
    assert a.session_key_material != b.session_key_material
    assert len(handshake.list_bindings()) == 2


@pytest.mark.asyncio
async def test_verification_timeout_rejects(ca, registry, responder, clock):
    slow = SlowAuthority(ca._signing_key, name="test-ca", validity_seconds=1000, clock=clock)
    slow.delay = 0.5
    keys = AgentKeys.generate()
    handshake = BindingHandshake(slow, registry, keys, slow.issue("buyer", keys.public_key), clock=clock)

    attempt = await handshake.establish("neg-1", "seller", timeout=0.01)

    assert isinstance(attempt.state, Failed)
    assert attempt.state.context["check"] == "initiator_timeout"


@pytest.mark.asyncio
async def test_timeout_covers_both_verifications(ca, registry, responder, clock):
    slow = SlowAuthority(ca._signing_key, name="test-ca", validity_seconds=1000, clock=clock)
    slow.delay = 0.2
    keys = AgentKeys.generate()
    handshake = BindingHandshake(slow, registry, keys, slow.issue("buyer", keys.public_key), clock=clock)

    attempt = await handshake.establish("neg-1", "seller", timeout=0.3)

    assert isinstance(attempt.state, Failed)
    assert attempt.state.context["check"] == "responder_timeout"


@pytest.mark.asyncio
async def test_cancellation_releases_the_triple_guard(ca, registry, responder, clock):
    slow = SlowAuthority(ca._signing_key, name="test-ca", validity_seconds=1000, clock=clock)
    slow.delay = 0.2
    keys = AgentKeys.generate()
    handshake = BindingHandshake(slow, registry, keys, slow.issue("buyer", keys.public_key), clock=clock)

    task = asyncio.create_task(handshake.establish("neg-1", "seller"))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert not handshake._guard.is_claimed(("buyer", "seller", "neg-1"))
    slow.delay = 0.0
    binding = await handshake.bind("neg-1", "seller")
    assert binding.negotiation_id == "neg-1"


def test_state_machine_rejects_illegal_transitions():
    attempt = HandshakeAttempt("buyer", "seller", "neg-1")
    assert isinstance(attempt.state, Initiated)

    with pytest.raises(InvalidTransition):
        attempt.advance(Initiated())

    attempt.advance(Failed(code="CERTIFICATE_REJECTED", reason="test"))
    assert attempt.is_terminal
    with pytest.raises(InvalidTransition):
        attempt.advance(Failed(code="CERTIFICATE_REJECTED", reason="again"))


def test_cannot_skip_straight_to_bound():
    attempt = HandshakeAttempt("buyer", "seller", "neg-1")
    with pytest.raises(InvalidTransition):
        attempt.advance(Bound.model_construct(kind="bound", binding=None))
