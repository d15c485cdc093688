"""AgentNS error taxonomy.

Every error carries a machine-readable ``code``, a human ``message`` and a
``context`` dict naming the offending id and the check that failed.  Key
material is never placed in either.

Oracle fidelity relaxation: when the scorer returns fewer (or duplicated)
evaluations than offers submitted, the engine logs the mismatch and carries
on.  Evaluations that reference ids outside the submitted batch are still
rejected with :class:`OracleOutputMalformed`.
"""

from __future__ import annotations

from typing import Any


class AgentNSError(Exception):
    """Base exception for all AgentNS errors."""

    code = "AGENTNS_ERROR"
    status_code = 500

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        super().__init__(f"[{self.code}] {message}")

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": self.context}


# ── Validation (raised at the boundary, before any side effect) ─────────────

class InvalidSubject(AgentNSError):
    """Raised when a certificate is requested for an empty agent id."""

    code = "INVALID_SUBJECT"
    status_code = 422


class InvalidOffer(AgentNSError):
    """Raised when any offer in a batch fails validation."""

    code = "INVALID_OFFER"
    status_code = 422


class InvalidRequest(AgentNSError):
    """Raised when a negotiation request is structurally unusable."""

    code = "INVALID_REQUEST"
    status_code = 422


# ── Registry ─────────────────────────────────────────────────────────────────

class CertificateInvalid(AgentNSError):
    code = "CERTIFICATE_INVALID"
    status_code = 422


class DuplicateAgent(AgentNSError):
    code = "DUPLICATE_AGENT"
    status_code = 409


class NotFound(AgentNSError):
    code = "NOT_FOUND"
    status_code = 404


# ── Scoring oracle ───────────────────────────────────────────────────────────

class OracleOutputMalformed(AgentNSError):
    """Raised when scorer output cannot be normalised into evaluated offers."""

    code = "ORACLE_OUTPUT_MALFORMED"
    status_code = 502


class ScoringUnavailable(AgentNSError):
    """Raised when the scorer times out or fails.  Never retried here."""

    code = "SCORING_UNAVAILABLE"
    status_code = 503


# ── Binding handshake ────────────────────────────────────────────────────────

class CertificateRejected(AgentNSError):
    code = "CERTIFICATE_REJECTED"
    status_code = 403


class BindingInProgress(AgentNSError):
    code = "BINDING_IN_PROGRESS"
    status_code = 409


class InvalidTransition(AgentNSError):
    """Raised when the handshake state machine is driven out of order."""

    code = "INVALID_TRANSITION"
    status_code = 500


ERRORS_BY_CODE: dict[str, type[AgentNSError]] = {
    cls.code: cls
    for cls in (
        InvalidSubject,
        InvalidOffer,
        InvalidRequest,
        CertificateInvalid,
        DuplicateAgent,
        NotFound,
        OracleOutputMalformed,
        ScoringUnavailable,
        CertificateRejected,
        BindingInProgress,
        InvalidTransition,
    )
}
