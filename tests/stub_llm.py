"""Deterministic Generation Service stand-in for tests."""

import json
from collections.abc import Callable
from typing import Any

from pulse_playtest.llm import Generation, GenerationRequest
from pulse_playtest.models import TokenUsage

# A scripted response: plain text, a dict (structured output), an exception to
# raise, or a callable taking the request and returning one of those.
Response = str | dict | BaseException | Callable[[GenerationRequest], Any]

USAGE = TokenUsage(input_tokens=100, output_tokens=20, total_tokens=120)


class StubLLM:
    """Deterministic LLM stand-in.

    `responses` maps stage name → list of responses consumed in call order.
    `defaults` maps stage name → a response used whenever that stage's queue
    is empty. Calling a stage with neither raises AssertionError.
    """

    def __init__(
        self,
        responses: dict[str, list[Response]] | None = None,
        defaults: dict[str, Response] | None = None,
    ) -> None:
        self._queues: dict[str, list[Response]] = {k: list(v) for k, v in (responses or {}).items()}
        self._defaults = dict(defaults or {})
        self.calls: list[tuple[str, GenerationRequest]] = []

    async def __call__(self, stage: str, request: GenerationRequest) -> Generation:
        self.calls.append((stage, request))
        queue = self._queues.get(stage)
        if queue:
            item = queue.pop(0)
        elif stage in self._defaults:
            item = self._defaults[stage]
        else:
            raise AssertionError(
                f"StubLLM: unexpected call to stage={stage!r} "
                f"(no responses queued). calls so far: {[s for s, _ in self.calls]}"
            )

        if not isinstance(item, BaseException) and callable(item):
            item = item(request)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, dict):
            return Generation(content=json.dumps(item), data=item, usage=USAGE, model=request.model)
        return Generation(content=item, usage=USAGE, model=request.model)

    def stage_calls(self, stage: str) -> list[GenerationRequest]:
        return [request for s, request in self.calls if s == stage]

    def assert_exhausted(self) -> None:
        """Assert every queued response was consumed."""
        leftover = {k: v for k, v in self._queues.items() if v}
        if leftover:
            raise AssertionError(f"StubLLM: unused responses remain: {leftover}")
