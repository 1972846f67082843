"""Tests for response routing: one branch per ResponseType, visibility of every message."""

from datetime import datetime, timezone

import pytest

from pulse_playtest.agents import PlayerVoice, player_view
from pulse_playtest.models import Classification, Message, ResponseType
from pulse_playtest.session.discussion import DiscussionEngine
from pulse_playtest.session.router import ResponseRouter
from tests.stub_llm import StubLLM


def _speaker(request) -> str:
    """Name of the agent a player request was made for."""
    return request.system.split(",", 1)[0].removeprefix("You are ")


def _router(llm, make_generator) -> ResponseRouter:
    voice = PlayerVoice(make_generator(llm))
    return ResponseRouter(voice, DiscussionEngine(voice))


def _classify(response_type, targets=()) -> Classification:
    return Classification(
        response_type=response_type, is_pulse=False, is_ending=False, target_players=tuple(targets),
    )


def _stub() -> StubLLM:
    return StubLLM(defaults={
        "player": lambda request: f"{_speaker(request)} reacts",
        "spokesperson": lambda request: f"{_speaker(request)} speaks for the group",
        "discussion": {"message": "agreed", "decision": "settled", "position": "tower", "character": None},
    })


NARRATION = "The keeper's ghost drifts down the stairs."
TARGETS = {
    ResponseType.GROUP: (),
    ResponseType.DIRECTED: ("Jonas", "Mira"),
    ResponseType.PRIVATE: ("Mira",),
    ResponseType.DISCUSSION: (),
    ResponseType.NONE: (),
}
EXPECTED_STAGES = {
    ResponseType.GROUP: {"player", "spokesperson"},
    ResponseType.DIRECTED: {"player"},
    ResponseType.PRIVATE: {"player"},
    ResponseType.DISCUSSION: {"discussion", "spokesperson"},
    ResponseType.NONE: set(),
}


@pytest.mark.parametrize("response_type", list(ResponseType))
async def test_exactly_one_branch_runs(response_type, agents, make_generator):
    llm = _stub()
    transcript = [Message(role="narrator", content=NARRATION, turn=3)]
    result = await _router(llm, make_generator).route(
        3, _classify(response_type, TARGETS[response_type]), NARRATION, agents, agents[1], transcript,
    )
    assert result.branch == response_type
    assert {stage for stage, _ in llm.calls} == EXPECTED_STAGES[response_type]
    assert (result.private_moment is not None) == (response_type == ResponseType.PRIVATE)
    assert all(m.turn == 3 for m in result.messages)


async def test_group_reactions_then_spokesperson(agents, make_generator):
    llm = _stub()
    result = await _router(llm, make_generator).route(
        3, _classify(ResponseType.GROUP), NARRATION, agents, agents[1], [],
    )
    assert [(m.author, m.role, m.visibility) for m in result.messages] == [
        ("Mira", "player", "table"),
        ("Jonas", "player", "table"),
        ("Theo", "spokesperson", "public"),
    ]
    assert [m.content for m in result.messages[:2]] == ["Mira reacts", "Jonas reacts"]
    assert [m.author for m in result.outgoing] == ["Theo"]
    synthesis = llm.stage_calls("spokesperson")[0]
    assert "- Mira: Mira reacts" in synthesis.messages[-1]["content"]
    assert "- Jonas: Jonas reacts" in synthesis.messages[-1]["content"]


async def test_directed_answers_in_listed_order(agents, make_generator):
    llm = _stub()
    result = await _router(llm, make_generator).route(
        3, _classify(ResponseType.DIRECTED, ("Jonas", "Mira")), NARRATION, agents, agents[1], [],
    )
    assert [(m.author, m.content, m.visibility) for m in result.messages] == [
        ("Jonas", "Jonas reacts", "public"),
        ("Mira", "Mira reacts", "public"),
    ]
    assert result.outgoing == result.messages


async def test_none_makes_no_calls(agents, make_generator):
    llm = StubLLM()
    result = await _router(llm, make_generator).route(
        3, _classify(ResponseType.NONE), NARRATION, agents, agents[1], [],
    )
    assert result.messages == []
    assert result.agents == agents
    assert llm.calls == []


async def test_unknown_target_raises(agents, make_generator):
    with pytest.raises(ValueError, match="Gandalf"):
        await _router(_stub(), make_generator).route(
            3, _classify(ResponseType.DIRECTED, ("Gandalf",)), NARRATION, agents, agents[1], [],
        )


async def test_discussion_commits_identities(agents, make_generator):
    intro = "Introduce yourselves: who are your characters?"
    character = {"name": "Wren", "role": "scout", "backstory": "", "inventory": [], "relationships": []}
    llm = StubLLM(defaults={
        "discussion": {"message": "I'm Wren", "decision": "settled", "position": "", "character": character},
        "spokesperson": "We are three scouts named Wren.",
    })
    result = await _router(llm, make_generator).route(
        1, _classify(ResponseType.DISCUSSION), intro, agents, agents[0], [],
    )
    assert all(a.character is not None and a.character.name == "Wren" for a in result.agents)
    assert all(a.character is None for a in agents)
    assert [m.visibility for m in result.messages] == ["table", "table", "table", "public"]
    assert result.outgoing[0].content == "We are three scouts named Wren."


class TestPrivateScenario:
    """Mira alone learns a secret; the others never see it or her answer."""

    async def test_private_reply_only_visible_to_target(self, agents, make_generator):
        secret = "[to Mira only] The silver amulet in your pocket grows warm."
        narration = Message(
            role="narrator", content=secret, turn=2, visibility="private", target="Mira",
        )
        llm = _stub()
        result = await _router(llm, make_generator).route(
            2, _classify(ResponseType.PRIVATE, ("Mira",)), secret, agents, agents[1], [narration],
        )

        [reply] = result.messages
        assert reply.author == "Mira"
        assert reply.visibility == "private"
        assert reply.target == "Mira"
        assert result.outgoing == [reply]

        moment = result.private_moment
        assert moment.turn == 2
        assert moment.target == "Mira"
        assert moment.content == "The silver amulet in your pocket grows warm."
        assert moment.response == "Mira reacts"

        [request] = llm.stage_calls("player")
        assert _speaker(request) == "Mira"
        assert "amulet" in request.messages[-1]["content"]

        transcript = [narration, reply]
        for other in agents[1:]:
            view = player_view(transcript, other)
            assert "amulet" not in str(view)
            assert "Mira reacts" not in str(view)
        assert "amulet" in str(player_view(transcript, agents[0]))


@pytest.mark.parametrize("response_type", list(ResponseType))
async def test_messages_stamped_with_injected_clock(response_type, agents, make_generator):
    stamp = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    voice = PlayerVoice(make_generator(_stub()))
    router = ResponseRouter(voice, DiscussionEngine(voice, clock=lambda: stamp), clock=lambda: stamp)
    transcript = [Message(role="narrator", content=NARRATION, turn=3)]
    result = await router.route(
        3, _classify(response_type, TARGETS[response_type]), NARRATION, agents, agents[1], transcript,
    )
    assert all(m.timestamp == stamp for m in result.messages)
