"""Core domain models.

Every stage of a session (classifier, router, trackers, checkpoint store)
operates on these types. Pydantic is used for validation and serialisation at
every data boundary; values that are shared across turns or written to disk
are frozen and changed only by building a new value.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["narrator", "player", "spokesperson"]

# public:  narrator and every player see it
# table:   players only (reactions, discussion, pre-game chatter)
# private: narrator and `target` only
Visibility = Literal["public", "table", "private"]

LegacyType = Literal[
    "pulse",
    "tangent-response",
    "private-moment",
    "directed-questions",
    "requires-discussion",
    "ending",
]

Handling = Literal["acknowledged", "redirected", "ignored", "engaged"]
TangentStatus = Literal["pending", "resolved", "unresolved"]
Outcome = Literal["completed", "timeout", "failed"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------

class Message(BaseModel):
    """A single entry in a session's append-only transcript."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    turn: int = Field(ge=0)  # 0 = pre-session chatter
    author: str | None = None  # player name; None for the narrator
    timestamp: datetime = Field(default_factory=utc_now)
    visibility: Visibility = "public"
    target: str | None = None  # set on private messages
    classification: LegacyType | None = None  # narrator messages only
    reasoning: str | None = None

    def visible_to(self, player_name: str) -> bool:
        if self.visibility == "private":
            return self.target == player_name or self.author == player_name
        return True

    @property
    def heard_by_narrator(self) -> bool:
        return self.turn > 0 and self.visibility != "table"


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

class ResponseType(StrEnum):
    """How the simulated players must answer a narrator turn."""

    GROUP = "group"            # everyone reacts, spokesperson synthesizes
    DISCUSSION = "discussion"  # players deliberate before one reply
    DIRECTED = "directed"      # only named players answer, verbatim
    PRIVATE = "private"        # one player answers out of the others' sight
    NONE = "none"              # no reply (pure narration, ending beat)


class Classification(BaseModel):
    """The classifier's verdict on one narrator message. Never revised."""

    model_config = ConfigDict(frozen=True)

    response_type: ResponseType
    is_pulse: bool
    is_ending: bool
    target_players: tuple[str, ...] = ()
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    rationale: str = ""
    source: Literal["model", "heuristic"] = "model"

    @property
    def legacy_type(self) -> LegacyType:
        """Single-label tag kept on narrator messages for report tooling."""
        if self.is_ending:
            return "ending"
        match self.response_type:
            case ResponseType.PRIVATE:
                return "private-moment"
            case ResponseType.DIRECTED:
                return "directed-questions"
            case ResponseType.DISCUSSION:
                return "requires-discussion"
            case ResponseType.GROUP | ResponseType.NONE:
                return "pulse" if self.is_pulse else "tangent-response"


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------

class CharacterChoice(BaseModel):
    """An in-fiction identity settled during a discussion round."""

    model_config = ConfigDict(frozen=True)

    name: str
    role: str = ""
    backstory: str = ""
    inventory: tuple[str, ...] = ()
    relationships: dict[str, str] = Field(default_factory=dict)


class PlayerAgent(BaseModel):
    """A simulated participant."""

    model_config = ConfigDict(frozen=True)

    archetype: str
    name: str
    model: str
    fallback_models: tuple[str, ...] = ()
    system_prompt: str
    character: CharacterChoice | None = None

    @property
    def models(self) -> list[str]:
        """Primary model followed by its fallbacks, without duplicates."""
        chain = [self.model]
        chain.extend(m for m in self.fallback_models if m not in chain)
        return chain


# ---------------------------------------------------------------------------
# Narrative tracking
# ---------------------------------------------------------------------------

class TangentMoment(BaseModel):
    model_config = ConfigDict(frozen=True)

    turn: int
    player_messages: tuple[str, ...] = ()
    narrator_response: str
    handling: Handling
    status: TangentStatus = "pending"
    returned_to_story: bool = False
    turns_until_return: int | None = None


class TangentAnalysis(BaseModel):
    moments: list[TangentMoment] = Field(default_factory=list)
    total_tangents: int = 0
    successful_returns: int = 0
    avg_turns_to_return: float = 0.0
    handling_distribution: dict[str, int] = Field(default_factory=dict)


class PrivateMoment(BaseModel):
    model_config = ConfigDict(frozen=True)

    turn: int
    target: str
    content: str
    response: str
    payoff_detected: bool = False
    payoff_turn: int | None = None


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class Story(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str = ""
    guide: str = ""  # free-text story material handed to the narrator


class NarratorConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: str
    fallback_models: tuple[str, ...] = ()
    temperature: float = 0.7
    max_tokens: int = 2000
    system_prompt: str = ""

    @property
    def models(self) -> list[str]:
        chain = [self.model]
        chain.extend(m for m in self.fallback_models if m not in chain)
        return chain


class SessionConfig(BaseModel):
    """Pure data describing one session. Carried verbatim in checkpoints."""

    model_config = ConfigDict(frozen=True)

    story: Story
    narrator: NarratorConfig
    max_turns: int = Field(default=100, ge=1)
    language: str = "english"
    seed: int | None = None
    pre_game: bool = True


# ---------------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------------

CHECKPOINT_VERSION = "2.0.0"


class Lineage(BaseModel):
    model_config = ConfigDict(frozen=True)

    parent: str | None = None  # "<session_id>/turn-<n>"
    branch_reason: str | None = None


class Checkpoint(BaseModel):
    """Complete, self-contained snapshot of a session after one turn."""

    model_config = ConfigDict(frozen=True)

    version: str = CHECKPOINT_VERSION
    session_id: str
    turn: int = Field(ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    transcript: tuple[Message, ...] = ()
    agents: tuple[PlayerAgent, ...]
    spokesperson_id: str
    config: SessionConfig
    tangents: tuple[TangentMoment, ...] = ()
    private_moments: tuple[PrivateMoment, ...] = ()
    pulses: tuple[int, ...] = ()
    lineage: Lineage = Field(default_factory=Lineage)

    @property
    def spokesperson(self) -> PlayerAgent:
        for agent in self.agents:
            if agent.archetype == self.spokesperson_id:
                return agent
        raise ValueError(f"Spokesperson {self.spokesperson_id!r} not in checkpoint roster")


# ---------------------------------------------------------------------------
# Cost
# ---------------------------------------------------------------------------

class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class CostLine(BaseModel):
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    cost: float = 0.0


class CostBreakdown(BaseModel):
    narrator: CostLine = Field(default_factory=CostLine)
    players: CostLine = Field(default_factory=CostLine)
    classification: CostLine = Field(default_factory=CostLine)
    total: CostLine = Field(default_factory=CostLine)


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------

Pacing = Literal["too-fast", "too-slow", "good"]


class PlayerFeedback(BaseModel):
    agent_name: str
    archetype: str
    highlight: str
    highlight_reason: str = ""
    agency_meaningful: bool = True
    agency_example: str = ""
    frustrations: list[str] = Field(default_factory=list)
    missed_opportunities: list[str] = Field(default_factory=list)
    pacing: Pacing = "good"
    pacing_notes: str = ""
    narrator_score: float = Field(ge=1, le=10)
    narrator_positives: list[str] = Field(default_factory=list)
    narrator_negatives: list[str] = Field(default_factory=list)
    group_dynamics: str = ""


class SessionFeedback(BaseModel):
    session_id: str
    players: list[PlayerFeedback] = Field(default_factory=list)
    top_moments: list[str] = Field(default_factory=list)
    shared_pain_points: list[str] = Field(default_factory=list)
    narrator_score: float = 0.0
    narrator_strengths: list[str] = Field(default_factory=list)
    narrator_weaknesses: list[str] = Field(default_factory=list)
    pacing_verdict: str = "mixed"
    recommendations: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

class SessionResult(BaseModel):
    """Terminal record of a session, the contract report tooling reads."""

    session_id: str
    config: SessionConfig
    transcript: list[Message]
    outcome: Outcome
    final_turn: int
    duration_seconds: float
    pulses: list[int] = Field(default_factory=list)
    tangents: list[TangentMoment] = Field(default_factory=list)
    tangent_analysis: TangentAnalysis = Field(default_factory=TangentAnalysis)
    private_moments: list[PrivateMoment] = Field(default_factory=list)
    cost: CostBreakdown = Field(default_factory=CostBreakdown)
    feedback: SessionFeedback | None = None
    lineage: Lineage = Field(default_factory=Lineage)
    error: str | None = None
