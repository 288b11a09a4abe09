"""Creation and lifecycle management of workflow runs."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional

from .config import AntfarmConfig, load_config
from .context import RunContext
from .errors import RunNotFoundError
from .persistence import RunRecord, RunRepository, StepRecord
from .workflows import WorkflowSpec, load_workflow

logger = logging.getLogger(__name__)

WorkflowLoader = Callable[[str, Path], WorkflowSpec]


class RunManager:
    """Starts runs from workflow definitions and drives their status."""

    def __init__(
        self,
        repository: RunRepository,
        config: Optional[AntfarmConfig] = None,
        loader: WorkflowLoader = load_workflow,
    ) -> None:
        self._repository = repository
        self._config = config or load_config()
        self._loader = loader

    async def run_workflow(
        self, workflow_id: str, task_title: str, dry_run: Optional[bool] = None
    ) -> RunRecord:
        """Start a new run of ``workflow_id`` for ``task_title``.

        The workflow definition is loaded before anything is written; the run
        row and all of its step rows are then persisted in a single
        transaction.

        Args:
            workflow_id: Name of an installed workflow.
            task_title: Human readable description of the task, exposed to
                step templates as ``{{task}}``.
            dry_run: Exposed to step templates as ``{{dry_run}}``; defaults
                to ``False``.

        Returns:
            The persisted run record.

        Raises:
            WorkflowNotFoundError: The workflow is not installed.
            WorkflowLoadError: The workflow file could not be parsed.
        """
        if not isinstance(task_title, str) or not task_title.strip():
            raise ValueError("Task title must be a non-empty string")

        spec = self._loader(workflow_id, self._config.workflows_path)

        context = RunContext.seed(spec.context, task_title, bool(dry_run))
        run = RunRecord(
            workflow_id=workflow_id,
            task=task_title,
            status="running",
            context=context.to_dict(),
        )
        run.updated_at = run.created_at
        steps = [
            StepRecord(
                run_id=run.id,
                step_index=index,
                step_name=step.id,
                agent=step.agent,
                status="pending" if index == 0 else "waiting",
                input_template=step.input,
                expects=step.expects,
                created_at=run.created_at,
                updated_at=run.created_at,
            )
            for index, step in enumerate(spec.steps)
        ]
        await self._repository.create_run(run, steps)
        logger.info(
            f"Started run {run.id} for workflow {workflow_id} with {len(steps)} steps"
        )
        return run

    async def get_run(self, run_id: str) -> RunRecord:
        if not run_id:
            raise RunNotFoundError(run_id)
        run = await self._repository.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def get_steps(self, run_id: str) -> list[StepRecord]:
        await self.get_run(run_id)
        return await self._repository.get_steps(run_id)

    async def list_runs(self, workflow_id: Optional[str] = None) -> list[RunRecord]:
        return await self._repository.list_runs(workflow_id)

    async def stop_run(self, run_id: str) -> RunRecord:
        """Cancel a running run. Its steps can no longer be claimed."""
        await self.get_run(run_id)
        run = await self._repository.set_run_status(
            run_id, "cancelled", expected=("running",)
        )
        logger.info(f"Cancelled run {run_id}")
        return run

    async def resume_run(self, run_id: str) -> RunRecord:
        """Reopen a failed or cancelled run at its first unfinished step."""
        await self.get_run(run_id)
        run = await self._repository.reset_steps_for_resume(run_id)
        logger.info(f"Resumed run {run_id} (now {run.status})")
        return run
