"""Offer scorers — implementations of the negotiation engine's scoring oracle.

``RuleBasedScorer`` is deterministic and needs no network; it is the default.
``LLMOfferScorer`` asks a Claude model to judge the offers and returns its
decoded answer, leaving shape normalisation to the engine.
"""

from __future__ import annotations

import json
from typing import Any

from anthropic import AsyncAnthropic

from agentns.mesh.protocol import CapabilityOffer, NegotiationRequirement

NEUTRAL_SCORE = 50.0


class RuleBasedScorer:
    """Weighted cost / QoS / protocol scoring with batch-relative cost.

    Factors an offer does not state are left out and the remaining weights
    are renormalised.  An offer stating none of them scores neutral.
    """

    async def score_offers(
        self,
        offers: list[CapabilityOffer],
        requirements: NegotiationRequirement,
    ) -> list[dict[str, Any]]:
        return [self._score(offer, offers, requirements) for offer in offers]

    def _score(
        self,
        offer: CapabilityOffer,
        batch: list[CapabilityOffer],
        requirements: NegotiationRequirement,
    ) -> dict[str, Any]:
        weights = requirements.weights
        factors: list[tuple[float, float]] = []   # (weight, value in 0..1)
        notes: list[str] = []

        costs = [o.cost for o in batch if o.cost is not None]
        if offer.cost is not None and weights.cost > 0:
            low, high = min(costs), max(costs)
            value = 1.0 if high == low else (high - offer.cost) / (high - low)
            factors.append((weights.cost, value))
            notes.append(f"cost {offer.cost:g} rates {value:.2f} against batch range {low:g}-{high:g}")

        if offer.qos is not None and weights.qos > 0:
            factors.append((weights.qos, offer.qos))
            notes.append(f"qos {offer.qos:.2f}")

        if offer.protocol_compatibility and weights.protocol > 0:
            wanted = requirements.preferred_protocol
            if wanted:
                value = 1.0 if wanted.lower() in offer.protocol_compatibility.lower() else 0.0
                notes.append(
                    f"protocol {offer.protocol_compatibility!r} "
                    f"{'matches' if value else 'does not match'} {wanted!r}"
                )
            else:
                value = 1.0
                notes.append(f"protocol {offer.protocol_compatibility!r} declared")
            factors.append((weights.protocol, value))

        total_weight = sum(w for w, _ in factors)
        if total_weight == 0:
            score = NEUTRAL_SCORE
            notes.append("no cost, qos or protocol stated; neutral score")
        else:
            score = round(100.0 * sum(w * v for w, v in factors) / total_weight, 2)

        if requirements.security_requirements:
            notes.append("security requirements noted but not machine-checkable")

        return {
            **offer.model_dump(),
            "score": score,
            "reasoning": "; ".join(notes),
        }


EVALUATE_PROMPT = """You are an expert in evaluating capability offers from agents.
You will receive a list of capability offers. Each offer will have a unique ID and a description. Cost, QoS, and protocol compatibility are optional.
{criteria}
You must output a list of evaluated capability offers. For each offer, include its original ID, description, any provided cost, QoS, protocolCompatibility, a score (0-100), and detailed reasoning for the score.
Ensure the output is a valid JSON array of evaluated capability offers, precisely matching the output schema.
{security}
Capability Offers:
{offers}
Respond with ONLY the JSON array of evaluated offers. Do not include any other text or explanation.
"""

_WITH_SECURITY = (
    "You will also receive security requirements.\n"
    "Evaluate each capability offer based on how well it meets the security requirements, "
    "its cost (if provided), quality of service (if provided), and protocol compatibility (if provided)."
)
_WITHOUT_SECURITY = (
    "Security requirements have not been specified. Evaluate each capability offer primarily "
    "based on its description, and if provided, its cost, quality of service, and protocol compatibility."
)


def _or_unspecified(value: Any) -> str:
    return "Not specified" if value is None or value == "" else str(value)


def render_prompt(offers: list[CapabilityOffer], requirements: NegotiationRequirement) -> str:
    blocks = []
    for o in offers:
        blocks.append(
            f"ID: {o.id}\n"
            f"Description: {o.description}\n"
            f"Cost: {_or_unspecified(o.cost)}\n"
            f"QoS: {_or_unspecified(o.qos)}\n"
            f"Protocol Compatibility: {_or_unspecified(o.protocol_compatibility)}\n"
            "---"
        )
    security = requirements.security_requirements
    return EVALUATE_PROMPT.format(
        criteria=_WITH_SECURITY if security else _WITHOUT_SECURITY,
        security=f"\nSecurity Requirements: {security}\n" if security else "",
        offers="\n".join(blocks),
    )


class LLMOfferScorer:
    """Scores offers with a Claude model.

    The reply is JSON-decoded when possible and otherwise returned as text;
    either way the engine decides whether the shape is usable.
    """

    def __init__(
        self,
        model: str = "claude-sonnet-4-6",
        max_tokens: int = 2048,
        client: Any | None = None,
    ) -> None:
        self._client = client if client is not None else AsyncAnthropic()
        self._model = model
        self._max_tokens = max_tokens

    async def score_offers(
        self,
        offers: list[CapabilityOffer],
        requirements: NegotiationRequirement,
    ) -> Any:
        resp = await self._client.messages.create(
            model=self._model,
            max_tokens=self._max_tokens,
            messages=[{"role": "user", "content": render_prompt(offers, requirements)}],
        )
        text = resp.content[0].text.strip()
        text = text.replace("```json", "").replace("```", "").strip()
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
