"""Tangent tracking.

A tangent is a player-initiated digression (out-of-character talk, jokes,
"by the way" asides, anachronisms). The narrator's turn answering it is
recorded as a pending TangentMoment, with `handling` read from how the
narrator phrased the answer. The next pulse turn resolves every pending
moment at once; whatever is still pending when the session ends is
finalized as unresolved.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence

from pulse_playtest.models import Classification, Handling, TangentAnalysis, TangentMoment

logger = logging.getLogger(__name__)

TANGENT_PATTERNS = (
    # meta / out of character
    re.compile(r"\b(ooc|out of character|meta|fourth wall)\b", re.IGNORECASE),
    # jokes
    re.compile(r"\b(lol|haha|just kidding|jk|lmao)\b", re.IGNORECASE),
    # off-topic
    re.compile(r"\b(by the way|btw|random question|totally unrelated)\b", re.IGNORECASE),
    # anachronisms
    re.compile(r"\b(selfie|smartphone|internet|wifi|tiktok|instagram)\b", re.IGNORECASE),
)

REDIRECT_PATTERNS = (
    re.compile(r"\b(however|but|yet|returning to|back to|focus on|more pressing)\b", re.IGNORECASE),
    re.compile(r"\b(the story|narrative|task at hand|matter at hand)\b", re.IGNORECASE),
)

ENGAGE_PATTERNS = (
    re.compile(r"\b(interesting point|good question|you're right|indeed|excellent)\b", re.IGNORECASE),
)

HANDLINGS: tuple[Handling, ...] = ("acknowledged", "redirected", "ignored", "engaged")


def is_tangent(player_messages: Iterable[str]) -> bool:
    return any(p.search(msg) for msg in player_messages for p in TANGENT_PATTERNS)


def classify_handling(narrator_text: str) -> Handling:
    if any(p.search(narrator_text) for p in REDIRECT_PATTERNS):
        return "redirected"
    if any(p.search(narrator_text) for p in ENGAGE_PATTERNS):
        return "engaged"
    if re.search(r"\byour?\b", narrator_text, re.IGNORECASE):
        return "acknowledged"
    return "ignored"


class TangentTracker:
    def __init__(self) -> None:
        self._moments: list[TangentMoment] = []

    @property
    def moments(self) -> list[TangentMoment]:
        return list(self._moments)

    @property
    def pending(self) -> list[TangentMoment]:
        return [m for m in self._moments if m.status == "pending"]

    def restore(self, moments: Iterable[TangentMoment]) -> None:
        self._moments = list(moments)

    def observe(
        self,
        turn: int,
        player_messages: Sequence[str],
        narrator_text: str,
        classification: Classification,
    ) -> list[TangentMoment]:
        """Feed one turn. Returns the moments resolved by it, if any."""
        if classification.is_pulse:
            return self._resolve(turn)

        if not is_tangent(player_messages):
            return []
        if any(m.turn == turn for m in self._moments):
            return []

        moment = TangentMoment(
            turn=turn,
            player_messages=tuple(player_messages),
            narrator_response=narrator_text,
            handling=classify_handling(narrator_text),
        )
        logger.info("Tangent at turn %d handled as %s", turn, moment.handling)
        self._moments.append(moment)
        return []

    def _resolve(self, turn: int) -> list[TangentMoment]:
        resolved: list[TangentMoment] = []
        for i, moment in enumerate(self._moments):
            if moment.status != "pending":
                continue
            done = moment.model_copy(update={
                "status": "resolved",
                "returned_to_story": True,
                "turns_until_return": turn - moment.turn,
            })
            self._moments[i] = done
            resolved.append(done)
        if resolved:
            logger.info("Story returned at turn %d, resolved %d tangent(s)", turn, len(resolved))
        return resolved

    def finalize(self) -> list[TangentMoment]:
        """Mark every still-pending moment unresolved."""
        unresolved: list[TangentMoment] = []
        for i, moment in enumerate(self._moments):
            if moment.status == "pending":
                self._moments[i] = moment.model_copy(update={"status": "unresolved"})
                unresolved.append(self._moments[i])
        return unresolved

    def analysis(self) -> TangentAnalysis:
        distribution = {h: 0 for h in HANDLINGS}
        returns = 0
        total_turns = 0
        for moment in self._moments:
            distribution[moment.handling] += 1
            if moment.returned_to_story and moment.turns_until_return:
                returns += 1
                total_turns += moment.turns_until_return
        return TangentAnalysis(
            moments=list(self._moments),
            total_tangents=len(self._moments),
            successful_returns=returns,
            avg_turns_to_return=total_turns / returns if returns else 0.0,
            handling_distribution=distribution,
        )
