import random

import pytest

from pulse_playtest.agents import create_agents
from pulse_playtest.fallback import FallbackGenerator
from pulse_playtest.models import NarratorConfig, SessionConfig, Story
from pulse_playtest.session.cost import CostLedger
from pulse_playtest.storage import CheckpointStore, MemoryBlobStore


@pytest.fixture
def story() -> Story:
    return Story(
        id="lighthouse",
        title="The Drowned Lighthouse",
        description="A storm, a dead keeper and a light that still turns.",
        guide="Act 1: arrive at the island. Act 2: climb the tower. Act 3: face the keeper.",
    )


@pytest.fixture
def session_config(story: Story) -> SessionConfig:
    return SessionConfig(
        story=story,
        narrator=NarratorConfig(model="anthropic/claude-opus-4.5"),
        max_turns=10,
        seed=7,
    )


@pytest.fixture
def agents():
    """Mira (joker), Theo (engaged), Jonas (questioner)."""
    return create_agents(
        ["joker", "engaged", "questioner"],
        random.Random(0),
        names=["Mira", "Theo", "Jonas"],
    )


@pytest.fixture
def store() -> CheckpointStore:
    return CheckpointStore(MemoryBlobStore(), branch_token=lambda: "1700000000000")


@pytest.fixture
def make_generator():
    """Build a FallbackGenerator with one attempt per model and no backoff."""

    def _make(llm, attempts: int = 1) -> FallbackGenerator:
        return FallbackGenerator(llm, CostLedger(), attempts_per_model=attempts, wait_base=0)

    return _make
