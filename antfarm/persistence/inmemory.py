"""In-memory implementation of the run repository."""

from __future__ import annotations

import threading
from typing import Any, Dict, Mapping

from ..context import RunContext
from ..errors import RunNotFoundError, StepNotFoundError
from .models import ClaimedStep, RunRecord, RunStatus, StepRecord, utcnow
from .repository import InputResolver, RunRepository
from .transitions import (
    RESUMABLE_RUN_STATUSES,
    next_waiting_step,
    require_run_active,
    require_run_status,
    require_step_running,
    resume_plan,
)


class InMemoryRunRepository(RunRepository):
    """Store runs and steps in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records handed out are copies, so
    callers never share state with the store.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, RunRecord] = {}
        self._steps: Dict[str, StepRecord] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Helper methods
    def _run(self, run_id: str) -> RunRecord:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def _step(self, step_id: str) -> StepRecord:
        step = self._steps.get(step_id)
        if step is None:
            raise StepNotFoundError(step_id)
        return step

    def _run_steps(self, run_id: str) -> list[StepRecord]:
        return sorted(
            (s for s in self._steps.values() if s.run_id == run_id),
            key=lambda s: s.step_index,
        )

    @staticmethod
    def _copy(record):
        return record.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Repository API
    async def create_run(self, run: RunRecord, steps: list[StepRecord]) -> None:
        with self._lock:
            if run.id in self._runs:
                raise ValueError(f"Run {run.id} already exists")
            duplicates = [s.id for s in steps if s.id in self._steps]
            if duplicates:
                raise ValueError(f"Steps already exist: {', '.join(duplicates)}")
            self._runs[run.id] = self._copy(run)
            for step in steps:
                self._steps[step.id] = self._copy(step)

    async def get_run(self, run_id: str) -> RunRecord | None:
        with self._lock:
            run = self._runs.get(run_id)
            return self._copy(run) if run else None

    async def list_runs(self, workflow_id: str | None = None) -> list[RunRecord]:
        with self._lock:
            runs = [
                self._copy(r)
                for r in self._runs.values()
                if workflow_id is None or r.workflow_id == workflow_id
            ]
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    async def get_steps(self, run_id: str) -> list[StepRecord]:
        with self._lock:
            return [self._copy(s) for s in self._run_steps(run_id)]

    async def get_step(self, step_id: str) -> StepRecord | None:
        with self._lock:
            step = self._steps.get(step_id)
            return self._copy(step) if step else None

    async def count_rows(self) -> tuple[int, int]:
        with self._lock:
            return len(self._runs), len(self._steps)

    async def claim_next_step(
        self, agent_id: str, resolve: InputResolver
    ) -> ClaimedStep | None:
        with self._lock:
            candidates = [
                (step, self._runs[step.run_id])
                for step in self._steps.values()
                if step.status == "pending"
                and self._runs[step.run_id].is_active
                and step.agent_id(self._runs[step.run_id].workflow_id) == agent_id
            ]
            if not candidates:
                return None
            step, run = min(
                candidates, key=lambda c: (c[0].step_index, c[1].created_at, c[0].id)
            )
            claimed = self._copy(step)
            claimed.status = "running"
            claimed.updated_at = utcnow()
            claimed.resolved_input = resolve(claimed, self._copy(run))
            self._steps[step.id] = claimed
            return ClaimedStep(step=self._copy(claimed), run=self._copy(run))

    async def complete_step(
        self, step_id: str, output: str, context_updates: Mapping[str, Any]
    ) -> StepRecord:
        with self._lock:
            step = self._step(step_id)
            require_step_running(step)
            run = self._run(step.run_id)
            require_run_active(run)
            now = utcnow()

            step.status = "completed"
            step.output = output
            step.updated_at = now

            context = RunContext(run.context)
            context.merge(context_updates)
            run.context = context.to_dict()

            following = next_waiting_step(self._run_steps(run.id), step.step_index)
            if following is None:
                run.status = "completed"
            else:
                following.status = "pending"
                following.updated_at = now
            run.updated_at = now
            return self._copy(step)

    async def fail_step(self, step_id: str, error: str) -> StepRecord:
        with self._lock:
            step = self._step(step_id)
            require_step_running(step)
            run = self._run(step.run_id)
            require_run_active(run)
            now = utcnow()
            step.status = "failed"
            step.output = error
            step.updated_at = now
            run.status = "failed"
            run.updated_at = now
            return self._copy(step)

    async def update_context(
        self, run_id: str, updates: Mapping[str, Any]
    ) -> RunRecord:
        with self._lock:
            run = self._run(run_id)
            context = RunContext(run.context)
            context.merge(updates)
            run.context = context.to_dict()
            run.updated_at = utcnow()
            return self._copy(run)

    async def set_run_status(
        self,
        run_id: str,
        status: RunStatus,
        expected: tuple[str, ...] | None = None,
    ) -> RunRecord:
        with self._lock:
            run = self._run(run_id)
            require_run_status(run, expected, status)
            run.status = status
            run.updated_at = utcnow()
            return self._copy(run)

    async def reset_steps_for_resume(self, run_id: str) -> RunRecord:
        with self._lock:
            run = self._run(run_id)
            require_run_status(run, RESUMABLE_RUN_STATUSES, "running")
            now = utcnow()
            plan = resume_plan(self._run_steps(run_id))
            for step_id, status in plan.items():
                step = self._steps[step_id]
                step.status = status
                step.resolved_input = None
                step.output = None
                step.updated_at = now
            run.status = "running" if plan else "completed"
            run.updated_at = now
            return self._copy(run)
