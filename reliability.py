"""Reliability feedback for test cases.

The score is recomputed from the full terminal run history every time a run
finishes, never updated incrementally::

    success_rate    = completed_runs / total_runs
    adaptation_rate = adapted_runs / total_runs
    reliability     = success_rate * (1 - penalty * adaptation_rate)

Cancelled runs say nothing about the test or the application and are left
out of the history. The penalty defaults to 0.3 and is configurable.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from exceptions import RunStateError
from persistence import RunRepository
from test_types import ReliabilityScore, RunStatus, TestRun

DEFAULT_ADAPTATION_PENALTY = 0.3

SCORED_STATUSES = (RunStatus.COMPLETED, RunStatus.FAILED)


def _was_adapted(run: TestRun) -> bool:
    return run.adaptation_count > 0 or run.adapted_steps > 0


def compute_reliability(
    test_case_id: str,
    runs: Iterable[TestRun],
    penalty: float = DEFAULT_ADAPTATION_PENALTY,
) -> ReliabilityScore:
    """Pure reliability computation over a run history; always in [0, 1]."""
    history = [r for r in runs if r.test_case_id == test_case_id and r.status in SCORED_STATUSES]
    total = len(history)
    if total == 0:
        return ReliabilityScore(test_case_id=test_case_id, score=0.0)

    completed = sum(1 for r in history if r.status == RunStatus.COMPLETED)
    adapted = sum(1 for r in history if _was_adapted(r))
    success_rate = completed / total
    adaptation_rate = adapted / total

    if adaptation_rate == 0:
        score = success_rate
    else:
        score = success_rate * (1 - penalty * adaptation_rate)

    return ReliabilityScore(
        test_case_id=test_case_id,
        score=max(0.0, min(1.0, score)),
        success_rate=success_rate,
        adaptation_rate=adaptation_rate,
        total_runs=total,
        completed_runs=completed,
        adapted_runs=adapted,
    )


class ReliabilityAggregator:
    """Recomputes and stores a test case's score when one of its runs ends."""

    def __init__(
        self,
        repository: RunRepository,
        penalty: float = DEFAULT_ADAPTATION_PENALTY,
        logger: Optional[logging.Logger] = None,
    ):
        self.repository = repository
        self.penalty = penalty
        self.logger = logger or logging.getLogger("reliability")

    async def recompute(self, test_case_id: str) -> ReliabilityScore:
        runs = await self.repository.list_runs(test_case_id)
        score = compute_reliability(test_case_id, runs, self.penalty)
        await self.repository.update_reliability(score)
        self.logger.info(
            f"Reliability of {test_case_id}: {score.score:.3f} "
            f"({score.completed_runs}/{score.total_runs} completed, {score.adapted_runs} adapted)"
        )
        return score

    async def on_run_terminal(self, run: TestRun) -> ReliabilityScore:
        if not run.is_terminal:
            raise RunStateError("Reliability is only recomputed for terminal runs", run_id=run.id, status=run.status.value)
        return await self.recompute(run.test_case_id)
