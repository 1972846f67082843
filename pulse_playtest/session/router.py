"""Response routing.

route() turns one classified narrator turn into the players' messages for
that turn. It makes no model calls of its own: player output comes from
PlayerVoice and discussion turns go to the DiscussionEngine. Exactly one
branch runs per turn, selected by an exhaustive match on ResponseType.

    group       every non-spokesperson reacts (table), spokesperson answers (public)
    directed    each target answers in listed order (public), no synthesis
    private     the single target answers (private), opens a PrivateMoment
    discussion  DiscussionEngine; its synthesis is the answer
    none        nothing
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import assert_never

from pydantic import BaseModel, Field

from pulse_playtest.agents import PlayerVoice, commit_character
from pulse_playtest.models import (
    Classification,
    Message,
    PlayerAgent,
    PrivateMoment,
    ResponseType,
    utc_now,
)
from pulse_playtest.session.discussion import DiscussionEngine
from pulse_playtest.session.private import private_content

logger = logging.getLogger(__name__)


class RouteResult(BaseModel):
    branch: ResponseType
    messages: list[Message] = Field(default_factory=list)
    private_moment: PrivateMoment | None = None
    agents: list[PlayerAgent] = Field(default_factory=list)  # roster after identity commits

    @property
    def outgoing(self) -> list[Message]:
        """Messages the narrator hears."""
        return [m for m in self.messages if m.visibility != "table"]


def _by_name(agents: Sequence[PlayerAgent], names: Sequence[str]) -> list[PlayerAgent]:
    lookup = {a.name: a for a in agents}
    missing = [n for n in names if n not in lookup]
    if missing:
        raise ValueError(f"Targets not in roster: {', '.join(missing)}")
    return [lookup[n] for n in names]


class ResponseRouter:
    def __init__(
        self,
        voice: PlayerVoice,
        discussion: DiscussionEngine,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._voice = voice
        self._discussion = discussion
        self._clock = clock

    async def route(
        self,
        turn: int,
        classification: Classification,
        narrator_text: str,
        agents: Sequence[PlayerAgent],
        spokesperson: PlayerAgent,
        transcript: Sequence[Message],
    ) -> RouteResult:
        """Dispatch one turn. `transcript` already ends with the narrator message."""
        roster = list(agents)
        branch = classification.response_type
        logger.debug("turn %d routed as %s", turn, branch)

        match branch:
            case ResponseType.GROUP:
                messages = await self._group(turn, narrator_text, roster, spokesperson, transcript)
                return RouteResult(branch=branch, messages=messages, agents=roster)

            case ResponseType.DIRECTED:
                messages = []
                for agent in _by_name(roster, classification.target_players):
                    text = await self._voice.answer_directed(agent, transcript)
                    messages.append(Message(
                        role="player", author=agent.name, content=text, turn=turn,
                        timestamp=self._clock(),
                    ))
                return RouteResult(branch=branch, messages=messages, agents=roster)

            case ResponseType.PRIVATE:
                [agent] = _by_name(roster, classification.target_players[:1])
                text = await self._voice.answer_private(agent, transcript)
                reply = Message(
                    role="player", author=agent.name, content=text, turn=turn,
                    timestamp=self._clock(), visibility="private", target=agent.name,
                )
                moment = PrivateMoment(
                    turn=turn,
                    target=agent.name,
                    content=private_content(narrator_text),
                    response=text,
                )
                return RouteResult(branch=branch, messages=[reply], private_moment=moment, agents=roster)

            case ResponseType.DISCUSSION:
                outcome = await self._discussion.run(turn, narrator_text, roster, spokesperson, transcript)
                if outcome.choices:
                    roster = [
                        commit_character(a, outcome.choices[a.name]) if a.name in outcome.choices else a
                        for a in roster
                    ]
                return RouteResult(
                    branch=branch,
                    messages=[*outcome.comments, outcome.synthesis],
                    agents=roster,
                )

            case ResponseType.NONE:
                return RouteResult(branch=branch, agents=roster)

            case _:
                assert_never(branch)

    async def _group(
        self,
        turn: int,
        narrator_text: str,
        agents: list[PlayerAgent],
        spokesperson: PlayerAgent,
        transcript: Sequence[Message],
    ) -> list[Message]:
        others = [a for a in agents if a.name != spokesperson.name]
        # gather keeps argument order regardless of completion order
        texts = await asyncio.gather(*(self._voice.react(a, transcript) for a in others))
        reactions = [
            Message(
                role="player", author=a.name, content=text, turn=turn,
                timestamp=self._clock(), visibility="table",
            )
            for a, text in zip(others, texts)
        ]
        synthesis = await self._voice.synthesize(spokesperson, transcript, narrator_text, reactions)
        answer = Message(
            role="spokesperson", author=spokesperson.name, content=synthesis, turn=turn,
            timestamp=self._clock(),
        )
        return [*reactions, answer]
