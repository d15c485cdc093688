"""Mesh Negotiation — evaluate competing capability offers and pick one.

The engine owns everything around the scoring call:

1. validate the whole batch up front (one bad offer fails all of them),
2. hand the batch and requirements to a pluggable :class:`OfferScorer`,
3. normalise whatever shape the scorer returned into evaluated offers,
4. check the evaluations reference the submitted offers,
5. select a single winner with a deterministic tie-break.

The scorer is an oracle: it may wrap its answer in ``{"result": [...]}`` or
hand back a JSON string.  Those are tolerated; anything else is fatal.
"""

from __future__ import annotations

import asyncio
import json
import math
from typing import Any, Protocol, Sequence, runtime_checkable

from pydantic import ValidationError

from agentns.errors import (
    InvalidOffer,
    InvalidRequest,
    OracleOutputMalformed,
    ScoringUnavailable,
)
from agentns.logging import get_logger
from agentns.mesh.protocol import (
    CapabilityOffer,
    EvaluatedOffer,
    NegotiationOutcome,
    NegotiationRequest,
    NegotiationRequirement,
)

logger = get_logger("negotiation")

DEFAULT_SCORER_TIMEOUT = 30.0


@runtime_checkable
class OfferScorer(Protocol):
    """Anything that can score a full batch of offers against requirements."""

    async def score_offers(
        self,
        offers: list[CapabilityOffer],
        requirements: NegotiationRequirement,
    ) -> Any: ...


# ── Validation ───────────────────────────────────────────────────────────────

def validate_offers(offers: Sequence[CapabilityOffer | dict[str, Any]]) -> list[CapabilityOffer]:
    """Coerce and check a batch; raise on the first offending offer."""
    if not offers:
        raise InvalidRequest("at least one capability offer is required", check="non_empty")

    batch: list[CapabilityOffer] = []
    seen: set[str] = set()
    for index, raw in enumerate(offers):
        offer_id = raw.get("id") if isinstance(raw, dict) else getattr(raw, "id", None)
        if isinstance(raw, CapabilityOffer):
            offer = raw
        else:
            try:
                offer = CapabilityOffer.model_validate(raw)
            except ValidationError as exc:
                raise InvalidOffer(
                    f"offer at position {index} is malformed",
                    offer_id=offer_id,
                    index=index,
                    check="schema",
                    errors=[e["msg"] for e in exc.errors()],
                ) from exc

        if not offer.description or not offer.description.strip():
            raise InvalidOffer("offer description is required", offer_id=offer.id, check="description")
        if offer.qos is not None and not (0.0 <= offer.qos <= 1.0):
            raise InvalidOffer(
                f"qos must be within [0, 1], got {offer.qos}", offer_id=offer.id, check="qos",
            )
        if offer.cost is not None and not math.isfinite(offer.cost):
            raise InvalidOffer("cost must be a finite number", offer_id=offer.id, check="cost")
        if offer.id in seen:
            raise InvalidOffer("offer ids must be unique within a batch", offer_id=offer.id, check="unique_id")
        seen.add(offer.id)
        batch.append(offer)
    return batch


# ── Oracle output normalisation ──────────────────────────────────────────────

def normalize_scorer_output(output: Any) -> list[Any]:
    """Return the evaluated-offer list hidden in *output*, or raise.

    Accepted shapes: a list/tuple; a single-key mapping whose value is a
    list; a string that parses as a JSON list.
    """
    if isinstance(output, (list, tuple)):
        return list(output)

    if isinstance(output, dict):
        if len(output) == 1:
            (inner,) = output.values()
            if isinstance(inner, (list, tuple)):
                return list(inner)
        raise OracleOutputMalformed(
            "scorer returned a mapping that does not wrap a single list",
            check="shape", keys=sorted(str(k) for k in output),
        )

    if isinstance(output, (str, bytes)):
        try:
            parsed = json.loads(output)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise OracleOutputMalformed("scorer returned unparseable text", check="parse") from exc
        if isinstance(parsed, list):
            return parsed
        raise OracleOutputMalformed(
            f"scorer text parsed to {type(parsed).__name__}, expected a list", check="shape",
        )

    raise OracleOutputMalformed(
        f"scorer returned unsupported type {type(output).__name__}", check="shape",
    )


def _clamp(score: float) -> float:
    return max(0.0, min(100.0, score))


# ── Selection ────────────────────────────────────────────────────────────────

def select_winner(
    evaluated: Sequence[EvaluatedOffer],
    offers: Sequence[CapabilityOffer],
) -> EvaluatedOffer:
    """Highest score wins; then lower cost (priced beats unpriced); then batch order."""
    if not evaluated:
        raise InvalidRequest("no evaluated offers to select from", check="non_empty")
    position = {offer.id: i for i, offer in enumerate(offers)}

    def rank(e: EvaluatedOffer) -> tuple:
        has_cost = e.cost is not None
        return (-e.score, not has_cost, e.cost if has_cost else 0.0, position.get(e.id, len(position)))

    return min(evaluated, key=rank)


# ── Engine ───────────────────────────────────────────────────────────────────

class NegotiationEngine:
    """Stateless evaluator; concurrent batches share nothing mutable."""

    def __init__(self, scorer: OfferScorer, timeout: float = DEFAULT_SCORER_TIMEOUT) -> None:
        self.scorer = scorer
        self.timeout = timeout

    async def evaluate(
        self,
        offers: Sequence[CapabilityOffer | dict[str, Any]],
        requirements: NegotiationRequirement | None = None,
        timeout: float | None = None,
    ) -> list[EvaluatedOffer]:
        batch = validate_offers(offers)
        requirements = requirements or NegotiationRequirement()

        raw = await self._call_scorer(batch, requirements, timeout)
        items = normalize_scorer_output(raw)
        return self._reconcile(batch, items)

    async def negotiate(self, request: NegotiationRequest, timeout: float | None = None) -> NegotiationOutcome:
        """Evaluate a request's offers and pick the winner."""
        batch = validate_offers(request.offers)
        evaluated = await self.evaluate(batch, request.effective_requirements(), timeout)
        winner = select_winner(evaluated, batch)
        logger.info(
            "Negotiation %s: %d offer(s) evaluated, winner %s (score %.1f)",
            request.negotiation_id, len(evaluated), winner.id, winner.score,
        )
        return NegotiationOutcome(
            negotiation_id=request.negotiation_id, evaluated=evaluated, winner=winner,
        )

    # ── internals ────────────────────────────────────────────────────────

    async def _call_scorer(
        self,
        batch: list[CapabilityOffer],
        requirements: NegotiationRequirement,
        timeout: float | None,
    ) -> Any:
        limit = self.timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(self.scorer.score_offers(batch, requirements), timeout=limit)
        except asyncio.TimeoutError as exc:
            logger.warning("Scorer timed out after %.1fs for %d offer(s)", limit, len(batch))
            raise ScoringUnavailable(
                f"scorer did not respond within {limit}s", check="timeout", offers=len(batch),
            ) from exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Scorer failed: %s", exc)
            raise ScoringUnavailable(
                f"scorer invocation failed: {type(exc).__name__}", check="invocation",
            ) from exc

    def _reconcile(self, batch: list[CapabilityOffer], items: list[Any]) -> list[EvaluatedOffer]:
        by_id = {offer.id: offer for offer in batch}
        evaluated: list[EvaluatedOffer] = []
        seen: set[str] = set()

        for index, item in enumerate(items):
            if not isinstance(item, dict):
                raise OracleOutputMalformed(
                    f"evaluation at position {index} is not an object", check="element", index=index,
                )
            offer_id = item.get("id")
            source = by_id.get(offer_id) if isinstance(offer_id, str) else None
            if source is None:
                raise OracleOutputMalformed(
                    "scorer referenced an offer id that was not submitted",
                    check="referential_integrity", offer_id=offer_id,
                )
            if offer_id in seen:
                logger.warning("Scorer returned offer %s more than once; keeping the first", offer_id)
                continue
            try:
                score = float(item["score"])
            except (KeyError, TypeError, ValueError) as exc:
                raise OracleOutputMalformed(
                    "evaluation is missing a numeric score", check="score", offer_id=offer_id,
                ) from exc
            if not math.isfinite(score):
                raise OracleOutputMalformed("evaluation score is not finite", check="score", offer_id=offer_id)

            reasoning = item.get("reasoning", "")
            evaluated.append(EvaluatedOffer(
                **source.model_dump(),
                score=_clamp(score),
                reasoning=reasoning if isinstance(reasoning, str) else str(reasoning),
            ))
            seen.add(offer_id)

        missing = [offer.id for offer in batch if offer.id not in seen]
        if missing or len(items) != len(batch):
            logger.warning(
                "Scorer returned %d evaluation(s) for %d offer(s); unscored: %s",
                len(items), len(batch), ", ".join(missing) or "none",
            )
        if not evaluated:
            raise OracleOutputMalformed("scorer returned no evaluations", check="empty")
        return evaluated
