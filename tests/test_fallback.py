"""Tests for FallbackGenerator: per-model retries, model fallback, cost recording."""

import pytest

from pulse_playtest.errors import GenerationError
from pulse_playtest.fallback import FallbackGenerator
from pulse_playtest.llm import LLMError
from pulse_playtest.session.cost import CostLedger
from tests.stub_llm import StubLLM

MODELS = ["deepseek/deepseek-v3.2", "qwen/qwen-2.5-72b-instruct", "x-ai/grok-4.1-fast"]


def _generator(llm, attempts: int = 3) -> FallbackGenerator:
    return FallbackGenerator(llm, CostLedger(), attempts_per_model=attempts, wait_base=0)


class TestFallbackGenerator:
    async def test_first_model_succeeds(self) -> None:
        llm = StubLLM({"player": ["hello"]})
        generator = _generator(llm)
        result = await generator.generate("player", MODELS, messages=[{"role": "user", "content": "hi"}])
        assert result.content == "hello"
        assert [r.model for r in llm.stage_calls("player")] == [MODELS[0]]
        llm.assert_exhausted()

    async def test_retries_same_model_before_falling_back(self) -> None:
        llm = StubLLM({"player": [LLMError("busy"), LLMError("busy"), "third time"]})
        generator = _generator(llm)
        result = await generator.generate("player", MODELS)
        assert result.content == "third time"
        assert [r.model for r in llm.stage_calls("player")] == [MODELS[0]] * 3

    async def test_falls_back_after_exhausting_model(self) -> None:
        llm = StubLLM({"player": [LLMError("down")] * 3 + ["from qwen"]})
        generator = _generator(llm)
        result = await generator.generate("player", MODELS)
        assert result.content == "from qwen"
        assert result.model == MODELS[1]
        assert [r.model for r in llm.stage_calls("player")] == [MODELS[0]] * 3 + [MODELS[1]]

    async def test_all_models_fail_raises_generation_error(self) -> None:
        llm = StubLLM(defaults={"player": LLMError("down")})
        generator = _generator(llm, attempts=2)
        with pytest.raises(GenerationError) as exc_info:
            await generator.generate("player", MODELS, label="Mira")
        assert "Mira" in str(exc_info.value)
        assert exc_info.value.models == MODELS
        assert isinstance(exc_info.value.__cause__, LLMError)
        assert len(llm.calls) == 6

    async def test_other_errors_propagate_without_retry(self) -> None:
        llm = StubLLM({"player": [ValueError("bug")]})
        generator = _generator(llm)
        with pytest.raises(ValueError):
            await generator.generate("player", MODELS)
        assert len(llm.calls) == 1

    async def test_request_carries_parameters(self) -> None:
        llm = StubLLM({"classifier": [{"ok": True}]})
        generator = _generator(llm)
        schema = {"type": "object"}
        result = await generator.generate(
            "classifier", MODELS, system="sys", schema=schema, temperature=0.3, max_tokens=42,
        )
        [request] = llm.stage_calls("classifier")
        assert request.system == "sys"
        assert request.json_schema == schema
        assert request.temperature == 0.3
        assert request.max_tokens == 42
        assert result.data == {"ok": True}

    async def test_usage_recorded_under_stage_bucket(self) -> None:
        llm = StubLLM({"narrator": ["a"], "classifier": [{"x": 1}], "spokesperson": ["b"]})
        generator = _generator(llm)
        await generator.generate("narrator", ["anthropic/claude-opus-4.5"])
        await generator.generate("classifier", ["openai/gpt-5-nano"])
        await generator.generate("spokesperson", MODELS)
        ledger = generator.ledger
        assert ledger.usage("narrator").total_tokens == 120
        assert ledger.usage("classification").total_tokens == 120
        assert ledger.usage("players").total_tokens == 120
        assert list(ledger.models("players")) == [MODELS[0]]

    async def test_failed_attempts_not_recorded(self) -> None:
        llm = StubLLM({"player": [LLMError("down"), "ok"]})
        generator = _generator(llm)
        await generator.generate("player", MODELS)
        assert generator.ledger.usage("players").total_tokens == 120
