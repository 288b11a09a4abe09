"""Repository abstraction for run and step persistence."""

from __future__ import annotations

from typing import Any, Callable, Mapping, Protocol

from .models import ClaimedStep, RunRecord, RunStatus, StepRecord

# Called inside the claim transaction with the freshly claimed step and its
# run; returns the text stored as the step's resolved input.
InputResolver = Callable[[StepRecord, RunRecord], str]


class RunRepository(Protocol):
    """Protocol for run state persistence backends."""

    async def create_run(self, run: RunRecord, steps: list[StepRecord]) -> None:
        """Persist a run and all of its steps atomically."""

    async def get_run(self, run_id: str) -> RunRecord | None:
        """Retrieve a run by id."""

    async def list_runs(self, workflow_id: str | None = None) -> list[RunRecord]:
        """Return persisted runs, newest first."""

    async def get_steps(self, run_id: str) -> list[StepRecord]:
        """Return the steps of a run ordered by index."""

    async def get_step(self, step_id: str) -> StepRecord | None:
        """Retrieve a step by id."""

    async def count_rows(self) -> tuple[int, int]:
        """Return the number of stored runs and steps."""

    async def claim_next_step(
        self, agent_id: str, resolve: InputResolver
    ) -> ClaimedStep | None:
        """Atomically move the earliest pending step for ``agent_id`` to running."""

    async def complete_step(
        self, step_id: str, output: str, context_updates: Mapping[str, Any]
    ) -> StepRecord:
        """Mark a running step completed and advance its run."""

    async def fail_step(self, step_id: str, error: str) -> StepRecord:
        """Mark a running step and its run failed."""

    async def update_context(
        self, run_id: str, updates: Mapping[str, Any]
    ) -> RunRecord:
        """Merge ``updates`` into the run context."""

    async def set_run_status(
        self,
        run_id: str,
        status: RunStatus,
        expected: tuple[str, ...] | None = None,
    ) -> RunRecord:
        """Change a run's status, optionally only from ``expected`` statuses."""

    async def reset_steps_for_resume(self, run_id: str) -> RunRecord:
        """Reopen a failed or cancelled run at its first unfinished step."""
