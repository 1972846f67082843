"""Private moment tracking and payoff detection.

A private moment is narration shown to a single player. After every turn
the tracker checks each unpaid moment from earlier turns against the new
narration: first with a model judgement, and when the model path fails with
plain keyword overlap. A detected payoff is never reverted.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence

from pulse_playtest.errors import GenerationError
from pulse_playtest.fallback import FallbackGenerator
from pulse_playtest.models import PrivateMoment
from pulse_playtest.prompts import PAYOFF_CHECK, render_prompt

logger = logging.getLogger(__name__)

PAYOFF_MODELS = ("google/gemini-2.5-flash", "openai/gpt-4o-mini")
PAYOFF_SCHEMA = {
    "type": "object",
    "properties": {"payoff": {"type": "boolean"}},
    "required": ["payoff"],
    "additionalProperties": False,
}

KEYWORD_MIN_LENGTH = 5

_MARKERS = (
    re.compile(r"\[to [^\]]+\]\s*", re.IGNORECASE),
    re.compile(r"\[([^,\]]+), you alone[^\]]*\]\s*", re.IGNORECASE),
)


def private_content(narrator_text: str) -> str:
    """Narrator text with private-address markers removed."""
    text = narrator_text
    for marker in _MARKERS:
        text = marker.sub("", text)
    return text.strip()


def keyword_payoff(moment: PrivateMoment, narration: str) -> bool:
    """True when a word longer than four letters from the moment recurs."""
    words = {w.strip(".,;:!?\"'()[]").lower() for w in moment.content.split()}
    lower = narration.lower()
    return any(len(w) >= KEYWORD_MIN_LENGTH and w in lower for w in words)


class PrivateMomentTracker:
    def __init__(
        self,
        generator: FallbackGenerator | None = None,
        models: Sequence[str] = PAYOFF_MODELS,
    ) -> None:
        self._generator = generator
        self._models = models
        self._moments: list[PrivateMoment] = []

    @property
    def moments(self) -> list[PrivateMoment]:
        return list(self._moments)

    def restore(self, moments: Iterable[PrivateMoment]) -> None:
        self._moments = list(moments)

    def add(self, moment: PrivateMoment) -> None:
        self._moments.append(moment)

    def for_player(self, name: str) -> list[PrivateMoment]:
        return [m for m in self._moments if m.target == name]

    def unpaid(self) -> list[PrivateMoment]:
        return [m for m in self._moments if not m.payoff_detected]

    async def check_payoff(self, turn: int, narration: str) -> list[PrivateMoment]:
        """Check every unpaid moment from before `turn`; return the ones paid off."""
        paid: list[PrivateMoment] = []
        for i, moment in enumerate(self._moments):
            if moment.payoff_detected or moment.turn >= turn:
                continue
            if await self._judge(moment, narration):
                updated = moment.model_copy(update={"payoff_detected": True, "payoff_turn": turn})
                self._moments[i] = updated
                paid.append(updated)
                logger.info(
                    "Private moment for %s from turn %d paid off at turn %d",
                    moment.target, moment.turn, turn,
                )
        return paid

    async def _judge(self, moment: PrivateMoment, narration: str) -> bool:
        if self._generator is None:
            return keyword_payoff(moment, narration)
        prompt = render_prompt(PAYOFF_CHECK, {
            "target": moment.target,
            "content": moment.content,
            "response": moment.response,
            "narration": narration,
        })
        try:
            generation = await self._generator.generate(
                "payoff",
                self._models,
                messages=[{"role": "user", "content": prompt}],
                schema=PAYOFF_SCHEMA,
                temperature=0.1,
                max_tokens=50,
                label="payoff check",
            )
        except GenerationError as e:
            logger.warning("Payoff judgement unavailable, using keyword overlap: %s", e)
            return keyword_payoff(moment, narration)
        data = generation.data or {}
        payoff = data.get("payoff")
        if not isinstance(payoff, bool):
            logger.warning("Payoff judgement malformed (%r), using keyword overlap", data)
            return keyword_payoff(moment, narration)
        return payoff
