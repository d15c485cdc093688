from __future__ import annotations
import sys
from pathlib import Path
import pytest

_src = Path(__file__).resolve().parent.parent / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from agentns.mesh.authority import AgentKeys, CertificateAuthority  # noqa: E402
from agentns.mesh.discovery import AgentRegistry, AgentResolver  # noqa: E402
from agentns.mesh.protocol import AgentRecord  # noqa: E402

T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ca(clock):
    return CertificateAuthority.generate(name="test-ca", validity_seconds=1000, clock=clock)


@pytest.fixture
def registry(ca):
    return AgentRegistry(ca)


@pytest.fixture
def resolver(registry):
    return AgentResolver(registry)


@pytest.fixture
def make_record(ca):
    """Build an AgentRecord with a fresh key and a CA-issued certificate."""

    def _make(agent_id, capabilities=("translate-text",), protocol_info="a2a/1.0"):
        keys = AgentKeys.generate()
        record = AgentRecord(
            agent_id=agent_id,
            capability_descriptions=list(capabilities),
            certificate=ca.issue(agent_id, keys.public_key),
            protocol_info=protocol_info,
        )
        return record, keys

    return _make
