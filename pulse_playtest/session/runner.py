"""Session runner: drives one playtest session turn by turn.

Each session gets its own cost ledger, fallback generator, trackers and
transcript, so concurrent sessions never share mutable state. A turn's
results are committed to the session only after its checkpoint is written;
a turn that fails leaves the session exactly as the last checkpoint has it.
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime

from pulse_playtest.agents import (
    PlayerVoice,
    create_agents,
    pick_spokesperson,
    random_archetypes,
)
from pulse_playtest.errors import DegenerateOutputError, HarnessError
from pulse_playtest.fallback import FallbackGenerator
from pulse_playtest.llm import LLM
from pulse_playtest.models import (
    Checkpoint,
    Classification,
    Lineage,
    Message,
    Outcome,
    PlayerAgent,
    ResponseType,
    SessionConfig,
    SessionFeedback,
    SessionResult,
    utc_now,
)
from pulse_playtest.prompts import (
    NARRATOR_CONTINUE,
    NARRATOR_OPENING,
    NARRATOR_SYSTEM,
    PLAYERS_PREFIX,
    render_prompt,
)
from pulse_playtest.session.classifier import CLASSIFIER_MODELS, ClassifierContext, classify
from pulse_playtest.session.cost import CostLedger
from pulse_playtest.session.discussion import DiscussionEngine
from pulse_playtest.session.feedback import FEEDBACK_MODELS, collect_feedback
from pulse_playtest.session.private import PrivateMomentTracker
from pulse_playtest.session.router import ResponseRouter
from pulse_playtest.session.tangent import TangentTracker
from pulse_playtest.storage.checkpoints import CheckpointStore
from pulse_playtest.validation import degenerate_reason

logger = logging.getLogger(__name__)

NARRATOR_ATTEMPTS = 3


def default_session_id(config: SessionConfig) -> str:
    return f"{config.story.id}-{uuid.uuid4().hex[:8]}"


def narrator_history(transcript: Sequence[Message]) -> list[dict[str, str]]:
    """Chat history as the narrator sees it.

    Opens with a fixed user greeting. Narrator lines are assistant turns;
    spokesperson messages and directed/private replies are user turns.
    Table talk is never included. Consecutive user turns are merged and a
    stand-in user turn separates consecutive narrator turns, so the history
    always alternates and ends on a user turn.
    """
    history = [{"role": "user", "content": NARRATOR_OPENING}]
    for msg in transcript:
        if not msg.heard_by_narrator:
            continue
        if msg.role == "narrator":
            if history[-1]["role"] == "assistant":
                history.append({"role": "user", "content": NARRATOR_CONTINUE})
            history.append({"role": "assistant", "content": msg.content})
            continue

        if msg.role == "spokesperson":
            content = PLAYERS_PREFIX + msg.content
        else:
            content = f"{msg.author}: {msg.content}"
        if history[-1]["role"] == "user":
            history[-1] = {"role": "user", "content": history[-1]["content"] + "\n\n" + content}
        else:
            history.append({"role": "user", "content": content})

    if history[-1]["role"] == "assistant":
        history.append({"role": "user", "content": NARRATOR_CONTINUE})
    return history


def answered_messages(transcript: Sequence[Message], turn: int) -> list[str]:
    """Player output from `turn` that the narrator heard, i.e. what it answers next."""
    if turn < 1:
        return []
    return [
        m.content for m in transcript
        if m.turn == turn and m.role != "narrator" and m.heard_by_narrator
    ]


class _Session:
    """Mutable state of one running session."""

    def __init__(
        self,
        session_id: str,
        config: SessionConfig,
        lineage: Lineage,
        generator: FallbackGenerator,
        payoff_models: Sequence[str],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.id = session_id
        self.config = config
        self.lineage = lineage
        self.generator = generator
        self.voice = PlayerVoice(generator)
        self.discussion = DiscussionEngine(self.voice, clock=clock)
        self.router = ResponseRouter(self.voice, self.discussion, clock=clock)
        self.tangents = TangentTracker()
        self.private = PrivateMomentTracker(generator, payoff_models)
        self.transcript: list[Message] = []
        self.agents: list[PlayerAgent] = []
        self.spokesperson_id = ""
        self.pulses: list[int] = []
        self.turn = 0  # last checkpointed turn
        self.feedback: SessionFeedback | None = None

    @property
    def ledger(self) -> CostLedger:
        return self.generator.ledger

    @property
    def spokesperson(self) -> PlayerAgent:
        for agent in self.agents:
            if agent.archetype == self.spokesperson_id:
                return agent
        raise ValueError(f"Spokesperson {self.spokesperson_id!r} not in roster")

    def checkpoint(self, turn: int, created_at: datetime) -> Checkpoint:
        return Checkpoint(
            session_id=self.id,
            turn=turn,
            created_at=created_at,
            transcript=tuple(self.transcript),
            agents=tuple(self.agents),
            spokesperson_id=self.spokesperson_id,
            config=self.config,
            tangents=tuple(self.tangents.moments),
            private_moments=tuple(self.private.moments),
            pulses=tuple(self.pulses),
            lineage=self.lineage,
        )


class SessionRunner:
    """Runs and resumes sessions against one Generation Service and store.

    Args:
        llm:               Generation Service client.
        store:             Checkpoint store every turn is written to.
        classifier_models: Model chain for turn classification.
        auxiliary_models:  Model chain for payoff judgements and feedback.
        attempts_per_model / wait_base / wait_max: FallbackGenerator retry policy.
        clock:             Timestamp source for checkpoints and transcript messages.
        session_ids:       Builds the id of a new session from its config.
        feedback:          Interview the players after a completed session.
        narrator_attempts: Narrator generations allowed per turn before a
                           degenerate output fails the session.
    """

    def __init__(
        self,
        llm: LLM,
        store: CheckpointStore,
        *,
        classifier_models: Sequence[str] = CLASSIFIER_MODELS,
        auxiliary_models: Sequence[str] = FEEDBACK_MODELS,
        attempts_per_model: int = 3,
        wait_base: float = 2.0,
        wait_max: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
        session_ids: Callable[[SessionConfig], str] = default_session_id,
        feedback: bool = True,
        narrator_attempts: int = NARRATOR_ATTEMPTS,
    ) -> None:
        self._llm = llm
        self._store = store
        self._classifier_models = list(classifier_models)
        self._auxiliary_models = list(auxiliary_models)
        self._attempts = attempts_per_model
        self._wait_base = wait_base
        self._wait_max = wait_max
        self._clock = clock
        self._session_ids = session_ids
        self._feedback = feedback
        self._narrator_attempts = narrator_attempts

    def _new_session(self, session_id: str, config: SessionConfig, lineage: Lineage) -> _Session:
        generator = FallbackGenerator(
            self._llm,
            CostLedger(),
            attempts_per_model=self._attempts,
            wait_base=self._wait_base,
            wait_max=self._wait_max,
        )
        return _Session(session_id, config, lineage, generator, self._auxiliary_models, self._clock)

    # ── Entry points ─────────────────────────────────────────

    async def run(
        self,
        config: SessionConfig,
        archetypes: Sequence[str] | None = None,
        group_size: int | None = None,
    ) -> SessionResult:
        """Start a new session and play it to an ending, the turn budget or a failure."""
        started = time.monotonic()
        rng = random.Random(config.seed)
        archetype_ids = list(archetypes) if archetypes else random_archetypes(rng, group_size)
        agents = create_agents(archetype_ids, rng, config.language)
        spokesperson = pick_spokesperson(agents, rng)

        session = self._new_session(self._session_ids(config), config, Lineage())
        session.agents = agents
        session.spokesperson_id = spokesperson.archetype
        logger.info(
            "Session %s: %s with %s (spokesperson %s)",
            session.id, config.story.title,
            ", ".join(f"{a.name}/{a.archetype}" for a in agents), spokesperson.name,
        )

        try:
            if config.pre_game:
                session.transcript = await session.discussion.chatter(config.story.title, agents)
            self._store.save(session.checkpoint(0, self._clock()))
        except HarnessError as e:
            logger.error("Session %s failed before the first turn: %s", session.id, e)
            return self._result(session, "failed", started, error=f"{type(e).__name__}: {e}")

        return await self._play(session, started)

    async def resume(self, checkpoint: Checkpoint) -> SessionResult:
        """Continue the session stored in `checkpoint` under its own session id.

        To branch with different settings, create the branch checkpoint with
        CheckpointStore.resume() first and pass that here.
        """
        started = time.monotonic()
        session = self._new_session(checkpoint.session_id, checkpoint.config, checkpoint.lineage)
        session.transcript = list(checkpoint.transcript)
        session.agents = list(checkpoint.agents)
        session.spokesperson_id = checkpoint.spokesperson_id
        session.pulses = list(checkpoint.pulses)
        session.turn = checkpoint.turn
        session.tangents.restore(checkpoint.tangents)
        session.private.restore(checkpoint.private_moments)
        logger.info("Resuming %s from turn %d", session.id, checkpoint.turn)

        last = next((m for m in reversed(session.transcript) if m.role == "narrator"), None)
        if last is not None and last.classification == "ending":
            logger.info("Session %s already ended at turn %d", session.id, checkpoint.turn)
            return self._result(session, "completed", started)
        return await self._play(session, started)

    # ── Turn loop ────────────────────────────────────────────

    async def _play(self, session: _Session, started: float) -> SessionResult:
        outcome: Outcome = "timeout"
        error = None
        try:
            for turn in range(session.turn + 1, session.config.max_turns + 1):
                classification = await self._turn(session, turn)
                if classification.is_ending:
                    outcome = "completed"
                    break
        except HarnessError as e:
            logger.error("Session %s failed at turn %d: %s", session.id, session.turn + 1, e)
            outcome = "failed"
            error = f"{type(e).__name__}: {e}"

        if outcome == "completed" and self._feedback:
            session.feedback = await collect_feedback(
                session.id,
                session.agents,
                session.transcript,
                session.config.story.title,
                session.generator,
                self._auxiliary_models,
            )
        elif outcome == "timeout":
            logger.info("Session %s reached the turn limit (%d)", session.id, session.config.max_turns)
        return self._result(session, outcome, started, error=error)

    async def _turn(self, session: _Session, turn: int) -> Classification:
        tangents, moments = session.tangents.moments, session.private.moments
        try:
            return await self._play_turn(session, turn)
        except HarnessError:
            session.tangents.restore(tangents)
            session.private.restore(moments)
            raise

    async def _play_turn(self, session: _Session, turn: int) -> Classification:
        narrator_text = await self._narrate(session)
        classification = await classify(
            narrator_text,
            ClassifierContext(
                pulse_count=len(session.pulses),
                player_names=[a.name for a in session.agents],
            ),
            session.generator,
            self._classifier_models,
        )

        private_turn = classification.response_type == ResponseType.PRIVATE
        narration = Message(
            role="narrator",
            content=narrator_text,
            turn=turn,
            timestamp=self._clock(),
            visibility="private" if private_turn else "public",
            target=classification.target_players[0] if private_turn else None,
            classification=classification.legacy_type,
            reasoning=classification.rationale or None,
        )
        transcript = [*session.transcript, narration]
        pulses = [*session.pulses, turn] if classification.is_pulse else list(session.pulses)

        await session.private.check_payoff(turn, narrator_text)
        session.tangents.observe(
            turn, answered_messages(session.transcript, turn - 1), narrator_text, classification
        )

        routed = await session.router.route(
            turn, classification, narrator_text, session.agents, session.spokesperson, transcript
        )
        transcript.extend(routed.messages)
        if routed.private_moment is not None:
            session.private.add(routed.private_moment)

        previous = (session.transcript, session.agents, session.pulses)
        session.transcript, session.agents, session.pulses = transcript, routed.agents, pulses
        try:
            self._store.save(session.checkpoint(turn, self._clock()))
        except HarnessError:
            session.transcript, session.agents, session.pulses = previous
            raise
        session.turn = turn

        logger.info(
            "Turn %d: %s%s%s, %d player message(s)",
            turn,
            classification.response_type,
            " pulse" if classification.is_pulse else "",
            " ending" if classification.is_ending else "",
            len(routed.messages),
        )
        return classification

    async def _narrate(self, session: _Session) -> str:
        narrator = session.config.narrator
        story = session.config.story
        system = narrator.system_prompt or render_prompt(NARRATOR_SYSTEM, {
            "title": story.title,
            "description": story.description,
            "guide": story.guide,
            "player_list": ", ".join(a.name for a in session.agents),
            "language": session.config.language,
        })
        messages = narrator_history(session.transcript)

        reason = None
        for attempt in range(1, self._narrator_attempts + 1):
            generation = await session.generator.generate(
                "narrator",
                narrator.models,
                system=system,
                messages=messages,
                temperature=narrator.temperature,
                max_tokens=narrator.max_tokens,
                label="narrator",
            )
            text = generation.content.strip()
            reason = degenerate_reason(text)
            if reason is None:
                return text
            logger.warning(
                "Narrator output rejected (%s), attempt %d/%d",
                reason, attempt, self._narrator_attempts,
            )
        raise DegenerateOutputError(
            f"Narrator output degenerate after {self._narrator_attempts} attempts: {reason}"
        )

    # ── Result ───────────────────────────────────────────────

    def _result(
        self,
        session: _Session,
        outcome: Outcome,
        started: float,
        error: str | None = None,
    ) -> SessionResult:
        session.tangents.finalize()
        result = SessionResult(
            session_id=session.id,
            config=session.config,
            transcript=list(session.transcript),
            outcome=outcome,
            final_turn=session.turn,
            duration_seconds=round(time.monotonic() - started, 3),
            pulses=list(session.pulses),
            tangents=session.tangents.moments,
            tangent_analysis=session.tangents.analysis(),
            private_moments=session.private.moments,
            cost=session.ledger.breakdown(),
            feedback=session.feedback,
            lineage=session.lineage,
            error=error,
        )
        logger.info(
            "Session %s %s at turn %d, cost $%.4f",
            session.id, outcome, result.final_turn, result.cost.total.cost,
        )
        return result
