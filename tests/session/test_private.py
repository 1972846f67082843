"""Tests for private moment tracking and payoff detection."""

from pulse_playtest.llm import LLMError
from pulse_playtest.models import PrivateMoment
from pulse_playtest.session.private import (
    PAYOFF_MODELS,
    PrivateMomentTracker,
    keyword_payoff,
    private_content,
)
from tests.stub_llm import StubLLM

AMULET = PrivateMoment(
    turn=3,
    target="Mira",
    content="The silver amulet in your pocket grows warm.",
    response="I keep it hidden from the others.",
)


def test_private_content_strips_markers():
    assert private_content("[to Mira only] The amulet warms.") == "The amulet warms."
    assert private_content("[Mira, you alone see this] A face.") == "A face."
    assert private_content("Plain text.") == "Plain text."


def test_keyword_payoff():
    assert keyword_payoff(AMULET, "The amulet blazes with light.")
    assert not keyword_payoff(AMULET, "The door is in your way.")


class TestKeywordFallback:
    async def test_no_generator_uses_keywords(self):
        tracker = PrivateMomentTracker()
        tracker.add(AMULET)
        paid = await tracker.check_payoff(5, "The silver light spills over the stairs.")
        assert len(paid) == 1
        assert paid[0].payoff_detected
        assert paid[0].payoff_turn == 5

    async def test_generation_failure_uses_keywords(self, make_generator):
        llm = StubLLM(defaults={"payoff": LLMError("down")})
        tracker = PrivateMomentTracker(make_generator(llm))
        tracker.add(AMULET)
        paid = await tracker.check_payoff(4, "Nothing of note happens.")
        assert paid == []
        assert len(llm.calls) == len(PAYOFF_MODELS)

    async def test_malformed_judgement_uses_keywords(self, make_generator):
        llm = StubLLM({"payoff": [{"payoff": "maybe"}]})
        tracker = PrivateMomentTracker(make_generator(llm))
        tracker.add(AMULET)
        paid = await tracker.check_payoff(4, "The amulet glows.")
        assert [m.turn for m in paid] == [3]


class TestModelJudgement:
    async def test_model_detects_payoff(self, make_generator):
        llm = StubLLM({"payoff": [{"payoff": True}]})
        tracker = PrivateMomentTracker(make_generator(llm))
        tracker.add(AMULET)
        paid = await tracker.check_payoff(6, "A warmth at your side answers the keeper's call.")
        assert paid[0].payoff_turn == 6
        [request] = llm.stage_calls("payoff")
        assert "Mira privately learned" in request.messages[0]["content"]
        assert "The silver amulet" in request.messages[0]["content"]

    async def test_model_says_no(self, make_generator):
        llm = StubLLM({"payoff": [{"payoff": False}]})
        tracker = PrivateMomentTracker(make_generator(llm))
        tracker.add(AMULET)
        assert await tracker.check_payoff(6, "The amulet is mentioned.") == []
        assert tracker.unpaid() == [AMULET]

    async def test_same_turn_moment_not_checked(self, make_generator):
        llm = StubLLM()
        tracker = PrivateMomentTracker(make_generator(llm))
        tracker.add(AMULET)
        assert await tracker.check_payoff(3, "The amulet glows.") == []
        assert llm.calls == []

    async def test_payoff_never_reverts(self, make_generator):
        llm = StubLLM({"payoff": [{"payoff": True}]})
        tracker = PrivateMomentTracker(make_generator(llm))
        tracker.add(AMULET)
        await tracker.check_payoff(4, "The amulet glows.")
        assert await tracker.check_payoff(5, "Nothing.") == []
        [moment] = tracker.moments
        assert moment.payoff_detected
        assert moment.payoff_turn == 4
        assert len(llm.calls) == 1
        llm.assert_exhausted()


def test_for_player():
    tracker = PrivateMomentTracker()
    tracker.add(AMULET)
    tracker.add(AMULET.model_copy(update={"target": "Theo", "turn": 4}))
    assert [m.target for m in tracker.for_player("Theo")] == ["Theo"]
    assert len(tracker.unpaid()) == 2
