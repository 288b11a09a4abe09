"""Status rules shared by all repository backends."""

from __future__ import annotations

from typing import Iterable

from ..errors import InvalidTransitionError
from .models import RunRecord, StepRecord

RESUMABLE_RUN_STATUSES = ("failed", "cancelled")


def require_step_running(step: StepRecord) -> None:
    if step.status != "running":
        raise InvalidTransitionError(
            f"Step {step.id} ({step.step_name}) is {step.status}, expected running"
        )


def require_run_active(run: RunRecord) -> None:
    if run.status != "running":
        raise InvalidTransitionError(f"Run {run.id} is {run.status}, not running")


def require_run_status(
    run: RunRecord, expected: Iterable[str] | None, target: str
) -> None:
    if expected is None:
        return
    expected = tuple(expected)
    if run.status not in expected:
        raise InvalidTransitionError(
            f"Cannot change run {run.id} to {target}: it is {run.status}"
            f" (expected {' or '.join(expected)})"
        )


def next_waiting_step(steps: Iterable[StepRecord], after_index: int) -> StepRecord | None:
    """Return the lowest-index waiting step after ``after_index``."""
    candidates = [s for s in steps if s.status == "waiting" and s.step_index > after_index]
    return min(candidates, key=lambda s: s.step_index, default=None)


def resume_plan(steps: Iterable[StepRecord]) -> dict[str, str]:
    """Return the new status of every unfinished step of a resumed run.

    The first step that is not completed becomes ``pending``; every later
    unfinished step goes back to ``waiting``. An empty plan means all steps
    are already completed.
    """
    plan: dict[str, str] = {}
    for step in sorted(steps, key=lambda s: s.step_index):
        if step.status == "completed":
            continue
        plan[step.id] = "waiting" if plan else "pending"
    return plan
