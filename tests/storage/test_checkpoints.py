"""Tests for checkpoint persistence, append-only writes and branching."""

import pytest

from pulse_playtest.errors import CheckpointError
from pulse_playtest.models import (
    Checkpoint,
    Lineage,
    Message,
    PrivateMoment,
    TangentMoment,
)
from pulse_playtest.storage import (
    CheckpointStore,
    FileBlobStore,
    MemoryBlobStore,
    ReplayOverrides,
    checkpoint_key,
)


@pytest.fixture
def checkpoint(agents, session_config) -> Checkpoint:
    return Checkpoint(
        session_id="lighthouse-abc",
        turn=3,
        transcript=(
            Message(role="player", author="Theo", content="ready", turn=0, visibility="table"),
            Message(role="narrator", content="You arrive at the island.", turn=1, classification="pulse"),
            Message(role="spokesperson", author="Theo", content="We land.", turn=1),
            Message(role="narrator", content="[to Mira only] Warmth.", turn=2,
                    visibility="private", target="Mira", classification="private-moment"),
            Message(role="player", author="Mira", content="Shh.", turn=2,
                    visibility="private", target="Mira"),
            Message(role="narrator", content="lol indeed", turn=3, classification="tangent-response"),
        ),
        agents=tuple(agents),
        spokesperson_id="engaged",
        config=session_config,
        tangents=(TangentMoment(turn=3, player_messages=("btw lol",), narrator_response="lol indeed",
                                handling="engaged"),),
        private_moments=(PrivateMoment(turn=2, target="Mira", content="Warmth.", response="Shh."),),
        pulses=(1,),
    )


def test_checkpoint_key():
    assert checkpoint_key("s1", 7) == "sessions/s1/turn-007.json"
    assert checkpoint_key("s1", 1234) == "sessions/s1/turn-1234.json"


class TestSaveLoad:
    def test_round_trip(self, store, checkpoint):
        key = store.save(checkpoint)
        assert key == "sessions/lighthouse-abc/turn-003.json"
        loaded = store.load("lighthouse-abc", 3)
        assert loaded == checkpoint
        assert loaded.tangents[0].handling == "engaged"
        assert loaded.private_moments[0].target == "Mira"
        assert loaded.spokesperson.name == "Theo"

    def test_round_trip_on_disk(self, tmp_path, checkpoint):
        CheckpointStore(FileBlobStore(tmp_path)).save(checkpoint)
        assert CheckpointStore(FileBlobStore(tmp_path)).load("lighthouse-abc", 3) == checkpoint

    def test_append_only(self, store, checkpoint):
        store.save(checkpoint)
        with pytest.raises(CheckpointError, match="already exists"):
            store.save(checkpoint.model_copy(update={"transcript": ()}))
        assert store.load("lighthouse-abc", 3) == checkpoint

    def test_missing_checkpoint(self, store):
        with pytest.raises(CheckpointError):
            store.load("nope", 1)

    def test_corrupt_checkpoint(self):
        blobs = MemoryBlobStore()
        blobs.write(checkpoint_key("s1", 1), '{"turn": "one"}')
        with pytest.raises(CheckpointError, match="corrupt"):
            CheckpointStore(blobs).load("s1", 1)

    def test_listing(self, store, checkpoint):
        for turn in (0, 1, 3, 10):
            store.save(checkpoint.model_copy(update={"turn": turn}))
        store.save(checkpoint.model_copy(update={"session_id": "other", "turn": 0}))
        assert store.list_turns("lighthouse-abc") == [0, 1, 3, 10]
        assert store.list_sessions() == ["lighthouse-abc", "other"]
        assert store.load_latest("lighthouse-abc").turn == 10

    def test_prefix_session_not_mixed_in(self, store, checkpoint):
        store.save(checkpoint)
        store.save(checkpoint.model_copy(update={"session_id": "lighthouse-abc-branch-1"}))
        assert store.list_turns("lighthouse-abc") == [3]

    def test_load_latest_without_checkpoints(self, store):
        with pytest.raises(CheckpointError):
            store.load_latest("nope")


class TestResume:
    def test_branch_without_overrides(self, store, checkpoint):
        store.save(checkpoint)
        new_id, branched = store.resume(checkpoint)

        assert new_id == "lighthouse-abc-branch-1700000000000"
        assert branched.session_id == new_id
        assert branched.turn == 3
        assert branched.lineage == Lineage(parent="lighthouse-abc/turn-3", branch_reason="Resumed without changes")
        assert branched.transcript == checkpoint.transcript
        assert branched.config == checkpoint.config
        assert store.load(new_id, 3) == branched

    def test_overrides_applied_to_copy(self, store, checkpoint):
        store.save(checkpoint)
        overrides = ReplayOverrides(narrator_model="x-ai/grok-4", temperature=0.9, story_guide="New act 3", max_turns=20)
        _, branched = store.resume(checkpoint, overrides)

        assert branched.config.narrator.model == "x-ai/grok-4"
        assert branched.config.narrator.temperature == 0.9
        assert branched.config.story.guide == "New act 3"
        assert branched.config.max_turns == 20
        assert branched.lineage.branch_reason == (
            "Modified: narrator model → x-ai/grok-4, temperature → 0.9, "
            "story guide replaced, max turns → 20"
        )
        source = store.load("lighthouse-abc", 3)
        assert source == checkpoint
        assert source.config.narrator.model == "anthropic/claude-opus-4.5"
        assert source.lineage == Lineage()

    def test_max_turns_below_checkpoint_rejected(self, store, checkpoint):
        with pytest.raises(ValueError):
            store.resume(checkpoint, ReplayOverrides(max_turns=2))
        assert store.list_sessions() == []

    def test_same_branch_token_twice_conflicts(self, store, checkpoint):
        store.resume(checkpoint)
        with pytest.raises(CheckpointError):
            store.resume(checkpoint)
