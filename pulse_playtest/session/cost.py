"""Token accounting and cost breakdown.

Usage is recorded per (bucket, model) so every model is priced at its own
rate. Buckets:

    narrator        narrator generations
    players         player reactions, spokesperson synthesis, discussion,
                    post-session interviews
    classification  classifier and payoff judgements

The ledger is only ever written by FallbackGenerator and only read at report
time.
"""

from __future__ import annotations

import logging
from typing import Literal

from pulse_playtest.models import CostBreakdown, CostLine, TokenUsage

logger = logging.getLogger(__name__)

Bucket = Literal["narrator", "players", "classification"]

# USD per 1M tokens: (input, output)
PRICING: dict[str, tuple[float, float]] = {
    "anthropic/claude-opus-4.5": (15.0, 75.0),
    "qwen/qwen-2.5-72b-instruct": (0.35, 0.4),
    "moonshotai/kimi-k2": (0.08, 0.08),
    "x-ai/grok-4.1-fast": (2.0, 10.0),
    "x-ai/grok-4": (5.0, 15.0),
    "deepseek/deepseek-v3.2": (0.27, 1.1),
    "google/gemini-2.5-flash": (0.075, 0.3),
    "openai/gpt-4o-mini": (0.15, 0.6),
    "openai/gpt-5-nano": (0.05, 0.4),
}

# Flat estimate for models missing from the table
DEFAULT_PRICE = 1.0

STAGE_BUCKETS: dict[str, Bucket] = {
    "narrator": "narrator",
    "player": "players",
    "spokesperson": "players",
    "discussion": "players",
    "feedback": "players",
    "classifier": "classification",
    "payoff": "classification",
}


def bucket_for(stage: str) -> Bucket:
    return STAGE_BUCKETS.get(stage, "classification")


def price(model: str, usage: TokenUsage) -> float:
    """Return the USD cost of `usage` on `model`."""
    rates = PRICING.get(model)
    if rates is None:
        logger.debug("No price for model %s, using flat estimate", model)
        return usage.total_tokens / 1_000_000 * DEFAULT_PRICE
    input_rate, output_rate = rates
    return (usage.input_tokens * input_rate + usage.output_tokens * output_rate) / 1_000_000


class CostLedger:
    def __init__(self) -> None:
        self._usage: dict[Bucket, dict[str, TokenUsage]] = {
            "narrator": {},
            "players": {},
            "classification": {},
        }

    def record(self, stage: str, model: str, usage: TokenUsage) -> None:
        per_model = self._usage[bucket_for(stage)]
        per_model[model] = per_model.get(model, TokenUsage()) + usage

    def usage(self, bucket: Bucket) -> TokenUsage:
        total = TokenUsage()
        for usage in self._usage[bucket].values():
            total = total + usage
        return total

    def models(self, bucket: Bucket) -> dict[str, TokenUsage]:
        return dict(self._usage[bucket])

    def _line(self, bucket: Bucket) -> CostLine:
        cost = sum(price(model, usage) for model, usage in self._usage[bucket].items())
        return CostLine(tokens=self.usage(bucket), cost=cost)

    def breakdown(self) -> CostBreakdown:
        narrator = self._line("narrator")
        players = self._line("players")
        classification = self._line("classification")
        total = CostLine(
            tokens=narrator.tokens + players.tokens + classification.tokens,
            cost=narrator.cost + players.cost + classification.cost,
        )
        return CostBreakdown(
            narrator=narrator,
            players=players,
            classification=classification,
            total=total,
        )
