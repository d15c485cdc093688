import pytest

from agentns.errors import InvalidSubject
from agentns.mesh.authority import AgentKeys, CertificateAuthority, decode_public_key
from agentns.mesh.protocol import Certificate


def test_issue_is_deterministic_for_fixed_key_and_clock(ca):
    keys = AgentKeys.generate()
    first = ca.issue("agent-a", keys.public_key)
    second = ca.issue("agent-a", keys.public_key)
    assert first == second
    assert first.subject_id == "agent-a"
    assert first.issuer == "test-ca"
    assert first.not_after - first.not_before == 1000


@pytest.mark.parametrize("agent_id", ["", "   "])
def test_issue_rejects_empty_subject(ca, agent_id):
    with pytest.raises(InvalidSubject) as exc_info:
        ca.issue(agent_id, AgentKeys.generate().public_key)
    assert exc_info.value.code == "INVALID_SUBJECT"


def test_verify_accepts_issued_certificate(ca):
    cert = ca.issue("agent-a", AgentKeys.generate().public_key)
    assert ca.verify(cert)
    assert ca.verify(cert.model_dump())


def test_verify_rejects_tampered_fields(ca):
    cert = ca.issue("agent-a", AgentKeys.generate().public_key)
    assert not ca.verify(cert.model_copy(update={"subject_id": "agent-b"}))
    assert not ca.verify(cert.model_copy(update={"not_after": cert.not_after + 10_000}))
    assert not ca.verify(cert.model_copy(update={"public_key": AgentKeys.generate().public_key}))


def test_verify_rejects_other_ca_with_same_name(ca, clock):
    impostor = CertificateAuthority.generate(name="test-ca", clock=clock)
    forged = impostor.issue("agent-a", AgentKeys.generate().public_key)
    assert not ca.verify(forged)


def test_verify_checks_time_window(ca, clock):
    cert = ca.issue("agent-a", AgentKeys.generate().public_key)
    assert not ca.verify(cert, now=cert.not_before - 1)
    clock.advance(1001)
    assert not ca.verify(cert)


@pytest.mark.parametrize(
    "junk",
    [None, "not a cert", 42, {}, {"subject_id": "x"}, ["a", "b"]],
)
def test_verify_never_raises_on_malformed_input(ca, junk):
    assert ca.verify(junk) is False


def test_verify_rejects_bad_signature_encoding(ca):
    cert = ca.issue("agent-a", AgentKeys.generate().public_key)
    assert not ca.verify(cert.model_copy(update={"signature": "%%%not-base64%%%"}))
    assert not ca.verify(cert.model_copy(update={"signature": ""}))


def test_pem_round_trip_keeps_signing_key(ca, clock):
    restored = CertificateAuthority.from_pem(ca.private_key_pem(), name="test-ca", validity_seconds=1000, clock=clock)
    assert restored.public_key == ca.public_key
    keys = AgentKeys.generate()
    assert restored.issue("agent-a", keys.public_key) == ca.issue("agent-a", keys.public_key)


def test_certificate_is_immutable(ca):
    cert = ca.issue("agent-a", AgentKeys.generate().public_key)
    with pytest.raises(Exception):
        cert.subject_id = "agent-b"
    assert isinstance(cert.fingerprint, str) and len(cert.fingerprint) == 64


def test_agent_keys_agree_on_shared_secret():
    a, b = AgentKeys.generate(), AgentKeys.generate()
    assert a.exchange(b.public_key) == b.exchange(a.public_key)
    assert "x25519:" not in repr(a)


@pytest.mark.parametrize("encoded", ["ed25519:AAAA", "x25519:%%%", "x25519:AAAA"])
def test_decode_public_key_rejects_malformed(encoded):
    with pytest.raises(ValueError):
        decode_public_key(encoded)


def test_certificate_model_accepts_round_trip(ca):
    cert = ca.issue("agent-a", AgentKeys.generate().public_key)
    assert Certificate.model_validate(cert.model_dump()) == cert
