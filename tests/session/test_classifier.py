"""Tests for narrator turn classification: model verdicts, target validation, heuristic fallback."""

import pytest

from pulse_playtest.llm import LLMError
from pulse_playtest.models import ResponseType
from pulse_playtest.session.classifier import (
    CLASSIFIER_MODELS,
    ClassifierContext,
    classify,
    detect_private_target,
    detect_pulse,
    heuristic_classify,
    validate_targets,
)
from tests.stub_llm import StubLLM

NAMES = ["Mira", "Theo", "Jonas"]
CONTEXT = ClassifierContext(pulse_count=2, player_names=NAMES)

ADVANCE = "Suddenly the lighthouse door swings open and you see a staircase spiralling up into the dark."


def _verdict(response_type="group", is_pulse=False, is_ending=False, targets=(), confidence=0.9):
    return {
        "response_type": response_type,
        "is_pulse": is_pulse,
        "is_ending": is_ending,
        "target_players": list(targets),
        "confidence": confidence,
        "reasoning": "because",
    }


# ---------------------------------------------------------------------------
# Model path
# ---------------------------------------------------------------------------

class TestModelClassification:
    async def test_group_pulse(self, make_generator):
        llm = StubLLM({"classifier": [_verdict("group", is_pulse=True)]})
        result = await classify(ADVANCE, CONTEXT, make_generator(llm))
        assert result.response_type == ResponseType.GROUP
        assert result.is_pulse
        assert not result.is_ending
        assert result.source == "model"
        assert result.confidence == 0.9
        assert result.rationale == "because"

    async def test_request_uses_classifier_chain(self, make_generator):
        llm = StubLLM({"classifier": [_verdict()]})
        await classify("The rain falls.", CONTEXT, make_generator(llm))
        [request] = llm.stage_calls("classifier")
        assert request.model == CLASSIFIER_MODELS[0]
        assert request.temperature == 0.3
        assert request.json_schema is not None
        assert "Players: Mira, Theo, Jonas" in request.messages[0]["content"]
        assert "Story pulses so far: 2" in request.messages[0]["content"]

    async def test_pulse_and_directed_together(self, make_generator):
        text = ADVANCE + " Mira, do you climb first?"
        llm = StubLLM({"classifier": [_verdict("directed", is_pulse=True, targets=["Mira"])]})
        result = await classify(text, CONTEXT, make_generator(llm))
        assert result.response_type == ResponseType.DIRECTED
        assert result.is_pulse
        assert result.target_players == ("Mira",)

    async def test_targets_canonicalised(self, make_generator):
        llm = StubLLM({"classifier": [_verdict("directed", targets=["mira", " THEO", "Mira", "Gandalf"])]})
        result = await classify("Mira? Theo?", CONTEXT, make_generator(llm))
        assert result.target_players == ("Mira", "Theo")

    async def test_directed_without_valid_target_downgraded(self, make_generator):
        llm = StubLLM({"classifier": [_verdict("directed", targets=["Gandalf"])]})
        result = await classify("Gandalf, what now?", CONTEXT, make_generator(llm))
        assert result.response_type == ResponseType.GROUP
        assert result.target_players == ()
        assert "downgraded" in result.rationale

    async def test_private_target_recovered_from_marker(self, make_generator):
        llm = StubLLM({"classifier": [_verdict("private", targets=[])]})
        result = await classify("[to Mira only] The amulet warms.", CONTEXT, make_generator(llm))
        assert result.response_type == ResponseType.PRIVATE
        assert result.target_players == ("Mira",)

    async def test_private_keeps_single_target(self, make_generator):
        llm = StubLLM({"classifier": [_verdict("private", targets=["Theo", "Mira"])]})
        result = await classify("A whisper.", CONTEXT, make_generator(llm))
        assert result.target_players == ("Theo",)

    async def test_group_targets_dropped(self, make_generator):
        llm = StubLLM({"classifier": [_verdict("group", targets=["Theo"])]})
        result = await classify("Everyone looks up.", CONTEXT, make_generator(llm))
        assert result.target_players == ()

    async def test_falls_back_to_next_classifier_model(self, make_generator):
        llm = StubLLM({"classifier": [LLMError("down"), _verdict("none", is_ending=True)]})
        result = await classify("The end.", CONTEXT, make_generator(llm))
        assert result.is_ending
        assert result.source == "model"
        assert [r.model for r in llm.stage_calls("classifier")] == list(CLASSIFIER_MODELS[:2])


# ---------------------------------------------------------------------------
# Heuristic fallback
# ---------------------------------------------------------------------------

class TestHeuristicFallback:
    async def test_service_unavailable_uses_heuristic(self, make_generator):
        llm = StubLLM(defaults={"classifier": LLMError("down")})
        result = await classify("Mira, what do you do?", CONTEXT, make_generator(llm))
        assert result.source == "heuristic"
        assert result.confidence == 0.0
        assert result.response_type == ResponseType.DIRECTED
        assert len(llm.calls) == len(CLASSIFIER_MODELS)

    async def test_malformed_output_uses_heuristic(self, make_generator):
        llm = StubLLM({"classifier": [{"response_type": "shout"}]})
        result = await classify("The end.", CONTEXT, make_generator(llm))
        assert result.source == "heuristic"
        assert result.is_ending

    async def test_missing_structured_output_uses_heuristic(self, make_generator):
        llm = StubLLM({"classifier": ["group, I think"]})
        result = await classify("Everyone looks up.", CONTEXT, make_generator(llm))
        assert result.source == "heuristic"
        assert result.response_type == ResponseType.GROUP


class TestHeuristicRules:
    def test_ending(self):
        result = heuristic_classify("And so the light goes dark. The end.", NAMES)
        assert result.response_type == ResponseType.NONE
        assert result.is_ending

    @pytest.mark.parametrize("text", [
        "[to Mira only] The amulet grows warm.",
        "[Mira, you alone see this] A face in the window.",
        "Mira alone notices the footprints.",
    ])
    def test_private_markers(self, text):
        result = heuristic_classify(text, NAMES)
        assert result.response_type == ResponseType.PRIVATE
        assert result.target_players == ("Mira",)

    def test_private_marker_for_unknown_name_ignored(self):
        result = heuristic_classify("[to Gandalf only] You shall not pass.", NAMES)
        assert result.response_type != ResponseType.PRIVATE

    def test_directed(self):
        result = heuristic_classify("The keeper turns. Theo, what do you say? Jonas, do you help?", NAMES)
        assert result.response_type == ResponseType.DIRECTED
        assert result.target_players == ("Theo", "Jonas")

    def test_directed_targets_in_order_addressed(self):
        result = heuristic_classify("Jonas and Mira, what do you see in the water?", NAMES)
        assert result.target_players == ("Jonas", "Mira")

    def test_name_without_question_not_directed(self):
        result = heuristic_classify("Theo trips over a rope.", NAMES)
        assert result.response_type == ResponseType.GROUP

    @pytest.mark.parametrize("text", [
        "The path forks. Do you go left or right?",
        "Before we begin: who are you?",
    ])
    def test_discussion(self, text):
        assert heuristic_classify(text, NAMES).response_type == ResponseType.DISCUSSION

    def test_default_group(self):
        result = heuristic_classify("Rain drums on the roof.", NAMES)
        assert result.response_type == ResponseType.GROUP
        assert result.rationale.startswith("heuristic:")


class TestHeuristicHelpers:
    def test_detect_pulse(self):
        assert detect_pulse(ADVANCE)
        assert not detect_pulse("You see it.")
        assert not detect_pulse("To recap: you see the door that you found before in the room upstairs.")

    def test_detect_private_target(self):
        assert detect_private_target("[to Theo only] psst") == "Theo"
        assert detect_private_target("Everyone hears it.") is None

    def test_validate_targets(self):
        assert validate_targets(["jonas", "Mira", "JONAS", "Bob"], NAMES) == ["Jonas", "Mira"]
