"""Bounded group deliberation.

Used when a narrator turn needs the players to agree on something before
one answer goes back (a fork in the road, creating characters). Agents talk
in rounds; every round each agent that has not settled sees the discussion
so far plus the choices already settled and returns one comment with a
decision tag. The loop stops when everyone has settled or after MAX_ROUNDS,
and whoever is still undecided is settled on a default. The spokesperson
then relays the outcome in one message.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, ValidationError

from pulse_playtest.agents import PlayerVoice
from pulse_playtest.archetypes import get_archetype
from pulse_playtest.models import CharacterChoice, Message, PlayerAgent, utc_now
from pulse_playtest.prompts import (
    DISCUSSION_SYNTHESIS,
    DISCUSSION_TURN,
    PREGAME_CHATTER,
    render_prompt,
)

logger = logging.getLogger(__name__)

MAX_ROUNDS = 3

AgentState = Literal["settled", "discussing", "needs-input"]

CHARACTER_TOPIC = re.compile(
    r"\b(who are you|your characters?|backstor(?:y|ies)|introduce yourselves"
    r"|tell me about yourselves|what are your names)\b",
    re.IGNORECASE,
)

DEFAULT_POSITION = "goes along with the group"

_CHARACTER_SCHEMA = {
    "type": ["object", "null"],
    "properties": {
        "name": {"type": "string"},
        "role": {"type": "string"},
        "backstory": {"type": "string"},
        "inventory": {"type": "array", "items": {"type": "string"}},
        "relationships": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "player": {"type": "string"},
                    "relation": {"type": "string"},
                },
                "required": ["player", "relation"],
                "additionalProperties": False,
            },
        },
    },
    "required": ["name", "role", "backstory", "inventory", "relationships"],
    "additionalProperties": False,
}

DISCUSSION_SCHEMA = {
    "type": "object",
    "properties": {
        "message": {"type": "string"},
        "decision": {"type": "string", "enum": ["settled", "discussing", "needs-input"]},
        "position": {"type": "string"},
        "character": _CHARACTER_SCHEMA,
    },
    "required": ["message", "decision", "position", "character"],
    "additionalProperties": False,
}


class _Relationship(BaseModel):
    player: str
    relation: str


class _ProposedCharacter(BaseModel):
    name: str
    role: str = ""
    backstory: str = ""
    inventory: list[str] = Field(default_factory=list)
    relationships: list[_Relationship] = Field(default_factory=list)

    def to_choice(self) -> CharacterChoice:
        return CharacterChoice(
            name=self.name,
            role=self.role,
            backstory=self.backstory,
            inventory=tuple(self.inventory),
            relationships={r.player: r.relation for r in self.relationships},
        )


class _Reply(BaseModel):
    message: str = ""
    decision: AgentState = "discussing"
    position: str = ""
    character: _ProposedCharacter | None = None


class DiscussionOutcome(BaseModel):
    comments: list[Message] = Field(default_factory=list)
    synthesis: Message
    positions: dict[str, str] = Field(default_factory=dict)
    choices: dict[str, CharacterChoice] = Field(default_factory=dict)
    states: dict[str, AgentState] = Field(default_factory=dict)
    rounds: int = 0
    forced: list[str] = Field(default_factory=list)
    character_creation: bool = False


def is_character_creation(topic: str, agents: Sequence[PlayerAgent]) -> bool:
    return any(a.character is None for a in agents) and bool(CHARACTER_TOPIC.search(topic))


def default_choice(agent: PlayerAgent) -> CharacterChoice:
    archetype = get_archetype(agent.archetype)
    return CharacterChoice(
        name=agent.name,
        role=archetype.name.removeprefix("The "),
        backstory=archetype.context,
    )


def _describe(choice: CharacterChoice) -> str:
    return f"{choice.name}, {choice.role}" if choice.role else choice.name


def _parse_reply(agent: PlayerAgent, data: dict) -> _Reply:
    try:
        return _Reply.model_validate(data)
    except ValidationError as e:
        logger.warning("Discussion reply from %s malformed, treating as still discussing: %s", agent.name, e)
        message = data.get("message")
        return _Reply(message=message if isinstance(message, str) else "")


class DiscussionEngine:
    def __init__(
        self,
        voice: PlayerVoice,
        max_rounds: int = MAX_ROUNDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._voice = voice
        self._max_rounds = max_rounds
        self._clock = clock

    async def run(
        self,
        turn: int,
        topic: str,
        agents: Sequence[PlayerAgent],
        spokesperson: PlayerAgent,
        transcript: Sequence[Message],
    ) -> DiscussionOutcome:
        """Deliberate on `topic` until everyone settles, then synthesize."""
        character_creation = is_character_creation(topic, agents)
        states: dict[str, AgentState] = {}
        positions: dict[str, str] = {}
        choices: dict[str, CharacterChoice] = {}
        for agent in agents:
            if character_creation and agent.character is not None:
                states[agent.name] = "settled"
                positions[agent.name] = _describe(agent.character)
            else:
                states[agent.name] = "discussing"

        comments: list[Message] = []
        rounds = 0
        while rounds < self._max_rounds and any(s != "settled" for s in states.values()):
            rounds += 1
            for agent in agents:
                if states[agent.name] == "settled":
                    continue
                prompt = render_prompt(DISCUSSION_TURN, {
                    "name": agent.name,
                    "topic": topic,
                    "character_creation": character_creation,
                    "discussion": [{"author": m.author, "content": m.content} for m in comments],
                    "settled": [
                        {"name": name, "position": positions.get(name, "")}
                        for name, state in states.items() if state == "settled"
                    ],
                })
                data = await self._voice.ask(agent, transcript, prompt, DISCUSSION_SCHEMA, stage="discussion")
                reply = _parse_reply(agent, data)
                comments.append(Message(
                    role="player", author=agent.name, content=reply.message,
                    turn=turn, timestamp=self._clock(), visibility="table",
                ))

                decision = reply.decision
                if character_creation and reply.character is not None:
                    choices[agent.name] = reply.character.to_choice()
                    positions[agent.name] = reply.position or _describe(choices[agent.name])
                elif reply.position:
                    positions[agent.name] = reply.position

                has_choice = agent.name in choices if character_creation else agent.name in positions
                if decision == "settled" and not has_choice:
                    decision = "discussing"
                states[agent.name] = decision
            logger.debug("Discussion round %d states=%s", rounds, states)

        forced: list[str] = []
        for agent in agents:
            if states[agent.name] == "settled":
                continue
            forced.append(agent.name)
            if character_creation:
                choices.setdefault(agent.name, default_choice(agent))
                positions.setdefault(agent.name, _describe(choices[agent.name]))
            else:
                positions.setdefault(agent.name, DEFAULT_POSITION)
            states[agent.name] = "settled"
        if forced:
            logger.warning("Discussion force-settled after %d rounds: %s", rounds, ", ".join(forced))

        synthesis_prompt = render_prompt(DISCUSSION_SYNTHESIS, {
            "topic": topic,
            "positions": [{"name": a.name, "position": positions[a.name]} for a in agents],
        })
        text = await self._voice.say(spokesperson, transcript, synthesis_prompt, stage="spokesperson")
        synthesis = Message(
            role="spokesperson", author=spokesperson.name, content=text, turn=turn,
            timestamp=self._clock(),
        )

        return DiscussionOutcome(
            comments=comments,
            synthesis=synthesis,
            positions=positions,
            choices=choices,
            states=states,
            rounds=rounds,
            forced=forced,
            character_creation=character_creation,
        )

    async def chatter(
        self,
        title: str,
        agents: Sequence[PlayerAgent],
        transcript: Sequence[Message] = (),
        turn: int = 0,
    ) -> list[Message]:
        """One unsynthesized round of table talk, each agent seeing the previous lines."""
        prompt = render_prompt(PREGAME_CHATTER, {"title": title})
        messages: list[Message] = []
        for agent in agents:
            text = await self._voice.say(agent, [*transcript, *messages], prompt)
            messages.append(Message(
                role="player", author=agent.name, content=text,
                turn=turn, timestamp=self._clock(), visibility="table",
            ))
        return messages
