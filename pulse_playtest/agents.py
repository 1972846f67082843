"""Player agents: roster building, identity commits and player generation.

Roster helpers are pure. PlayerVoice is the one place player-side prompts
are assembled and sent through the fallback generator; the router,
discussion engine and feedback interviews all speak through it.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Sequence
from typing import Any

from pulse_playtest.archetypes import ARCHETYPES, Archetype, get_archetype
from pulse_playtest.errors import GenerationError
from pulse_playtest.fallback import FallbackGenerator
from pulse_playtest.models import CharacterChoice, Message, PlayerAgent
from pulse_playtest.prompts import (
    CHARACTER_LOCK,
    PLAYER_DIRECTED,
    PLAYER_PRIVATE,
    PLAYER_REACTION,
    PLAYER_SYSTEM,
    SPOKESPERSON_SYNTHESIS,
    render_prompt,
)

logger = logging.getLogger(__name__)

PLAYER_NAMES = (
    "Mira", "Theo", "Jonas", "Priya", "Sam", "Lena",
    "Marcus", "Aiko", "Dev", "Rosa", "Felix", "Nadia",
)

MIN_GROUP = 2
MAX_GROUP = 5


# ---------------------------------------------------------------------------
# Roster
# ---------------------------------------------------------------------------

def compose_system_prompt(
    archetype: Archetype, name: str, friends: Sequence[str], language: str
) -> str:
    prompt = render_prompt(PLAYER_SYSTEM, {
        "name": name,
        "style": archetype.style,
        "patterns": list(archetype.patterns),
        "quirk_percent": round(archetype.quirk_frequency * 100),
        "language": language,
    })
    if friends:
        prompt += f"\n\nAbout you: {archetype.context}. Your friends tonight: {', '.join(friends)}."
    else:
        prompt += f"\n\nAbout you: {archetype.context}. You are playing solo tonight."
    return prompt


def random_archetypes(rng: random.Random, group_size: int | None = None) -> list[str]:
    """Pick `group_size` distinct archetype ids, or a random 2-5 when unset."""
    size = group_size if group_size is not None else rng.randint(MIN_GROUP, MAX_GROUP)
    if not 1 <= size <= len(ARCHETYPES):
        raise ValueError(f"Group size must be between 1 and {len(ARCHETYPES)}, got {size}")
    return rng.sample([a.id for a in ARCHETYPES], size)


def create_agents(
    archetype_ids: Sequence[str],
    rng: random.Random,
    language: str = "english",
    names: Sequence[str] | None = None,
) -> list[PlayerAgent]:
    if len(set(archetype_ids)) != len(archetype_ids):
        raise ValueError("Archetype ids must be unique within a roster")
    archetypes = [get_archetype(a) for a in archetype_ids]
    if names is None:
        names = rng.sample(PLAYER_NAMES, len(archetypes))
    elif len(names) != len(archetypes):
        raise ValueError("Need exactly one name per archetype")

    agents = []
    for archetype, name in zip(archetypes, names):
        friends = [n for n in names if n != name]
        agents.append(PlayerAgent(
            archetype=archetype.id,
            name=name,
            model=archetype.model_id,
            fallback_models=archetype.fallback_model_ids,
            system_prompt=compose_system_prompt(archetype, name, friends, language),
        ))
    return agents


def pick_spokesperson(agents: Sequence[PlayerAgent], rng: random.Random) -> PlayerAgent:
    return rng.choice(list(agents))


def commit_character(agent: PlayerAgent, choice: CharacterChoice) -> PlayerAgent:
    """Lock `choice` in as the agent's in-fiction identity.

    An agent that already has an identity keeps it.
    """
    if agent.character is not None:
        return agent
    lock = render_prompt(CHARACTER_LOCK, {
        "name": choice.name,
        "role": choice.role,
        "backstory": choice.backstory,
        "inventory": ", ".join(choice.inventory),
    })
    return agent.model_copy(update={
        "character": choice,
        "system_prompt": agent.system_prompt + lock,
    })


def player_view(transcript: Sequence[Message], agent: PlayerAgent) -> list[dict[str, str]]:
    """Chat history as `agent` sees it: own lines as assistant, the rest as user."""
    history: list[dict[str, str]] = []
    for msg in transcript:
        if not msg.visible_to(agent.name):
            continue
        if msg.author == agent.name:
            role, content = "assistant", msg.content
        else:
            speaker = "Narrator" if msg.role == "narrator" else (msg.author or "Someone")
            if msg.visibility == "private":
                speaker += " (to you only)"
            role, content = "user", f"{speaker}: {msg.content}"
        if history and history[-1]["role"] == role:
            history[-1]["content"] += "\n\n" + content
        else:
            history.append({"role": role, "content": content})
    return history


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

class PlayerVoice:
    """Sends player-side prompts through the fallback generator."""

    def __init__(
        self,
        generator: FallbackGenerator,
        temperature: float = 0.8,
        max_tokens: int = 400,
    ) -> None:
        self._generator = generator
        self._temperature = temperature
        self._max_tokens = max_tokens

    def _messages(
        self, agent: PlayerAgent, transcript: Sequence[Message], prompt: str
    ) -> list[dict[str, str]]:
        messages = player_view(transcript, agent)
        if messages and messages[-1]["role"] == "user":
            messages[-1] = {"role": "user", "content": messages[-1]["content"] + "\n\n" + prompt}
        else:
            messages.append({"role": "user", "content": prompt})
        return messages

    async def say(
        self,
        agent: PlayerAgent,
        transcript: Sequence[Message],
        prompt: str,
        stage: str = "player",
    ) -> str:
        generation = await self._generator.generate(
            stage,
            agent.models,
            system=agent.system_prompt,
            messages=self._messages(agent, transcript, prompt),
            temperature=self._temperature,
            max_tokens=self._max_tokens,
            label=agent.name,
        )
        return generation.content.strip()

    async def ask(
        self,
        agent: PlayerAgent,
        transcript: Sequence[Message],
        prompt: str,
        schema: dict[str, Any],
        stage: str,
    ) -> dict[str, Any]:
        """Structured variant of say(); returns the parsed JSON object."""
        generation = await self._generator.generate(
            stage,
            agent.models,
            system=agent.system_prompt,
            messages=self._messages(agent, transcript, prompt),
            schema=schema,
            temperature=self._temperature,
            max_tokens=self._max_tokens * 2,
            label=agent.name,
        )
        if generation.data is None:
            raise GenerationError(agent.name, agent.models)
        return generation.data

    async def react(self, agent: PlayerAgent, transcript: Sequence[Message]) -> str:
        return await self.say(agent, transcript, render_prompt(PLAYER_REACTION, {"name": agent.name}))

    async def answer_directed(self, agent: PlayerAgent, transcript: Sequence[Message]) -> str:
        return await self.say(agent, transcript, render_prompt(PLAYER_DIRECTED, {"name": agent.name}))

    async def answer_private(self, agent: PlayerAgent, transcript: Sequence[Message]) -> str:
        return await self.say(agent, transcript, render_prompt(PLAYER_PRIVATE, {"name": agent.name}))

    async def synthesize(
        self,
        spokesperson: PlayerAgent,
        transcript: Sequence[Message],
        narrator_text: str,
        reactions: Sequence[Message],
    ) -> str:
        prompt = render_prompt(SPOKESPERSON_SYNTHESIS, {
            "narrator_text": narrator_text,
            "reactions": [{"author": m.author, "content": m.content} for m in reactions],
        })
        return await self.say(spokesperson, transcript, prompt, stage="spokesperson")
