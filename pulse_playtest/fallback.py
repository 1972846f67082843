"""Generate-with-fallback.

FallbackGenerator is the only place retries and model fallback happen. Each
model in the ordered chain gets a bounded number of attempts with
exponential backoff on LLMError; when a model runs out of attempts the next
one is tried. Exhausting the chain raises GenerationError chained from the
last transport error.

Every successful call records its usage in the session's CostLedger under
the bucket for its stage.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pulse_playtest.errors import GenerationError
from pulse_playtest.llm import LLM, Generation, GenerationRequest, LLMError
from pulse_playtest.session.cost import CostLedger

logger = logging.getLogger(__name__)


def _on_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Generation attempt %d failed (%s), retrying in %.1fs",
        retry_state.attempt_number,
        exc,
        retry_state.next_action.sleep if retry_state.next_action else 0.0,
    )


class FallbackGenerator:
    """Wraps an LLM with per-model retries and an ordered fallback chain.

    Args:
        llm:               The Generation Service client.
        ledger:            Cost ledger to record usage into, or None.
        attempts_per_model: Attempts on one model before moving on. Defaults to 3.
        wait_base:         Backoff multiplier in seconds. 0 disables waiting.
        wait_max:          Upper bound for a single backoff wait.
    """

    def __init__(
        self,
        llm: LLM,
        ledger: CostLedger | None = None,
        attempts_per_model: int = 3,
        wait_base: float = 2.0,
        wait_max: float = 30.0,
    ) -> None:
        self._llm = llm
        self.ledger = ledger
        self._attempts = attempts_per_model
        self._wait_base = wait_base
        self._wait_max = wait_max

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(LLMError),
            wait=wait_exponential(multiplier=self._wait_base, max=self._wait_max),
            stop=stop_after_attempt(self._attempts),
            before_sleep=_on_retry,
            reraise=True,
        )

    async def generate(
        self,
        stage: str,
        models: Sequence[str],
        *,
        system: str = "",
        messages: list[dict[str, str]] | None = None,
        schema: dict[str, Any] | None = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        label: str | None = None,
    ) -> Generation:
        """Generate with the first model in `models` that succeeds."""
        label = label or stage
        last_error: LLMError | None = None

        for index, model in enumerate(models):
            if index:
                logger.warning("Falling back to %s for %s", model, label)
            request = GenerationRequest(
                model=model,
                system=system,
                messages=list(messages or []),
                json_schema=schema,
                temperature=temperature,
                max_tokens=max_tokens,
            )
            try:
                async for attempt in self._retrying():
                    with attempt:
                        generation = await self._llm(stage, request)
            except LLMError as e:
                logger.warning("Model %s exhausted for %s: %s", model, label, e)
                last_error = e
                continue

            if self.ledger is not None:
                self.ledger.record(stage, generation.model or model, generation.usage)
            return generation

        raise GenerationError(label, list(models)) from last_error
