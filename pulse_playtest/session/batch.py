"""Batch runs: many sessions in parallel, for statistics or narrator comparison.

Every config gets its own session through SessionRunner.run(), so sessions
share no ledger, trackers or transcript. At most `max_parallel` sessions are
in flight at once; results come back in input order.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from pydantic import BaseModel, Field

from pulse_playtest.models import SessionConfig, SessionResult
from pulse_playtest.session.runner import SessionRunner

logger = logging.getLogger(__name__)

DEFAULT_MAX_PARALLEL = 3


class BatchSummary(BaseModel):
    total: int = 0
    completed: int = 0
    timeout: int = 0
    failed: int = 0
    avg_turns: float = 0.0
    avg_duration_seconds: float = 0.0
    avg_cost: float = 0.0
    avg_narrator_score: float | None = None  # over sessions that collected feedback


class BatchReport(BaseModel):
    results: list[SessionResult] = Field(default_factory=list)
    summary: BatchSummary = Field(default_factory=BatchSummary)
    by_narrator: dict[str, BatchSummary] = Field(default_factory=dict)


def summarize(results: Sequence[SessionResult]) -> BatchSummary:
    if not results:
        return BatchSummary()
    n = len(results)
    scores = [r.feedback.narrator_score for r in results if r.feedback and r.feedback.players]
    return BatchSummary(
        total=n,
        completed=sum(1 for r in results if r.outcome == "completed"),
        timeout=sum(1 for r in results if r.outcome == "timeout"),
        failed=sum(1 for r in results if r.outcome == "failed"),
        avg_turns=sum(r.final_turn for r in results) / n,
        avg_duration_seconds=sum(r.duration_seconds for r in results) / n,
        avg_cost=sum(r.cost.total.cost for r in results) / n,
        avg_narrator_score=sum(scores) / len(scores) if scores else None,
    )


def build_report(results: Sequence[SessionResult]) -> BatchReport:
    """Overall summary plus one summary per narrator model, in first-seen order."""
    grouped: dict[str, list[SessionResult]] = {}
    for result in results:
        grouped.setdefault(result.config.narrator.model, []).append(result)
    return BatchReport(
        results=list(results),
        summary=summarize(results),
        by_narrator={model: summarize(group) for model, group in grouped.items()},
    )


async def run_batch(
    runner: SessionRunner,
    configs: Sequence[SessionConfig],
    max_parallel: int = DEFAULT_MAX_PARALLEL,
    archetypes: Sequence[str] | None = None,
    group_size: int | None = None,
) -> list[SessionResult]:
    """Run one session per config with at most `max_parallel` running at once."""
    if max_parallel < 1:
        raise ValueError(f"max_parallel must be at least 1, got {max_parallel}")
    semaphore = asyncio.Semaphore(max_parallel)
    total = len(configs)

    async def _one(index: int, config: SessionConfig) -> SessionResult:
        async with semaphore:
            logger.info("[%d/%d] Starting session (narrator %s)", index + 1, total, config.narrator.model)
            result = await runner.run(config, archetypes=archetypes, group_size=group_size)
            logger.info("[%d/%d] Session %s: %s", index + 1, total, result.session_id, result.outcome)
            return result

    return list(await asyncio.gather(*(_one(i, c) for i, c in enumerate(configs))))
