"""Checkpoint persistence.

One JSON blob per completed turn:

    sessions/
      {session_id}/
        turn-000.json   ← roster and pre-game chatter
        turn-001.json
        ...

Checkpoints are append-only: a (session_id, turn) key is written once.
resume() never touches the source checkpoint; it writes an adjusted copy
under a new session id whose lineage points back at the source.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable

from pydantic import BaseModel, Field, ValidationError

from pulse_playtest.errors import CheckpointError
from pulse_playtest.models import Checkpoint, Lineage, utc_now
from pulse_playtest.storage.blobs import BlobStore

logger = logging.getLogger(__name__)

_TURN_KEY = re.compile(r"^sessions/(?P<session>[^/]+)/turn-(?P<turn>\d+)\.json$")


def checkpoint_key(session_id: str, turn: int) -> str:
    return f"sessions/{session_id}/turn-{turn:03d}.json"


def _millis() -> str:
    return str(int(time.time() * 1000))


class ReplayOverrides(BaseModel):
    """Configuration changes applied when branching from a checkpoint."""

    narrator_model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=1)
    system_prompt: str | None = None
    story_guide: str | None = None
    max_turns: int | None = Field(default=None, ge=1)

    def describe(self) -> str:
        changes = []
        if self.narrator_model is not None:
            changes.append(f"narrator model → {self.narrator_model}")
        if self.temperature is not None:
            changes.append(f"temperature → {self.temperature}")
        if self.max_tokens is not None:
            changes.append(f"max tokens → {self.max_tokens}")
        if self.system_prompt is not None:
            changes.append("system prompt replaced")
        if self.story_guide is not None:
            changes.append("story guide replaced")
        if self.max_turns is not None:
            changes.append(f"max turns → {self.max_turns}")
        if not changes:
            return "Resumed without changes"
        return "Modified: " + ", ".join(changes)


class CheckpointStore:
    def __init__(self, blobs: BlobStore, branch_token: Callable[[], str] = _millis) -> None:
        self._blobs = blobs
        self._branch_token = branch_token

    def save(self, checkpoint: Checkpoint) -> str:
        """Write `checkpoint`. Returns its key."""
        key = checkpoint_key(checkpoint.session_id, checkpoint.turn)
        try:
            if self._blobs.exists(key):
                raise CheckpointError(f"Checkpoint {key} already exists")
            self._blobs.write(key, checkpoint.model_dump_json(indent=2))
        except OSError as e:
            raise CheckpointError(f"Cannot write checkpoint {key}: {e}") from e
        logger.debug("saved checkpoint %s", key)
        return key

    def load(self, session_id: str, turn: int) -> Checkpoint:
        key = checkpoint_key(session_id, turn)
        try:
            data = self._blobs.read(key)
        except KeyError:
            raise CheckpointError(f"No checkpoint for {session_id} turn {turn}") from None
        except OSError as e:
            raise CheckpointError(f"Cannot read checkpoint {key}: {e}") from e
        try:
            return Checkpoint.model_validate_json(data)
        except ValidationError as e:
            raise CheckpointError(f"Checkpoint {key} is corrupt: {e}") from e

    def list_turns(self, session_id: str) -> list[int]:
        try:
            keys = self._blobs.list(f"sessions/{session_id}/")
        except OSError as e:
            raise CheckpointError(f"Cannot list checkpoints for {session_id}: {e}") from e
        turns = []
        for key in keys:
            match = _TURN_KEY.match(key)
            if match and match["session"] == session_id:
                turns.append(int(match["turn"]))
        return sorted(turns)

    def list_sessions(self) -> list[str]:
        try:
            keys = self._blobs.list("sessions/")
        except OSError as e:
            raise CheckpointError(f"Cannot list sessions: {e}") from e
        sessions = {m["session"] for m in map(_TURN_KEY.match, keys) if m}
        return sorted(sessions)

    def load_latest(self, session_id: str) -> Checkpoint:
        turns = self.list_turns(session_id)
        if not turns:
            raise CheckpointError(f"No checkpoints for session {session_id}")
        return self.load(session_id, turns[-1])

    def resume(
        self, checkpoint: Checkpoint, overrides: ReplayOverrides | None = None
    ) -> tuple[str, Checkpoint]:
        """Branch a new session from `checkpoint` with `overrides` applied.

        The adjusted checkpoint is written under the new session id at the
        same turn, so the branch can itself be listed and resumed.
        """
        overrides = overrides or ReplayOverrides()
        config = checkpoint.config
        if overrides.max_turns is not None and overrides.max_turns < checkpoint.turn:
            raise ValueError(
                f"max_turns {overrides.max_turns} is below checkpoint turn {checkpoint.turn}"
            )

        narrator_changes = {}
        if overrides.narrator_model is not None:
            narrator_changes["model"] = overrides.narrator_model
        if overrides.temperature is not None:
            narrator_changes["temperature"] = overrides.temperature
        if overrides.max_tokens is not None:
            narrator_changes["max_tokens"] = overrides.max_tokens
        if overrides.system_prompt is not None:
            narrator_changes["system_prompt"] = overrides.system_prompt

        config_changes: dict = {}
        if narrator_changes:
            config_changes["narrator"] = config.narrator.model_copy(update=narrator_changes)
        if overrides.story_guide is not None:
            config_changes["story"] = config.story.model_copy(update={"guide": overrides.story_guide})
        if overrides.max_turns is not None:
            config_changes["max_turns"] = overrides.max_turns

        new_id = f"{checkpoint.session_id}-branch-{self._branch_token()}"
        branched = checkpoint.model_copy(update={
            "session_id": new_id,
            "created_at": utc_now(),
            "config": config.model_copy(update=config_changes),
            "lineage": Lineage(
                parent=f"{checkpoint.session_id}/turn-{checkpoint.turn}",
                branch_reason=overrides.describe(),
            ),
        })
        self.save(branched)
        logger.info("Branched %s from %s: %s", new_id, branched.lineage.parent, branched.lineage.branch_reason)
        return new_id, branched
