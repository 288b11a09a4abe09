"""Handing out steps to worker agents and recording their results."""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import BaseModel

from .context import parse_output_values
from .errors import StepNotFoundError
from .persistence import RunRecord, RunRepository, StepRecord
from .templates import resolve_template

logger = logging.getLogger(__name__)


class ClaimResult(BaseModel):
    """Outcome of a claim attempt.

    ``found`` is ``False`` when the agent currently has no work; all other
    fields are only set for a successful claim.
    """

    found: bool
    resolved_input: Optional[str] = None
    step_id: Optional[str] = None
    step_name: Optional[str] = None
    run_id: Optional[str] = None
    expects: Optional[str] = None


def render_step_input(step: StepRecord, run: RunRecord) -> str:
    """Resolve ``step``'s template against its run's context plus ``run_id``."""
    context = run.run_context().with_run_id(run.id)
    return resolve_template(step.input_template, context)


class StepClaimEngine:
    """Atomically assigns pending steps to the agents that poll for them."""

    def __init__(self, repository: RunRepository) -> None:
        self._repository = repository

    async def claim_step(self, agent_id: str) -> ClaimResult:
        """Claim the earliest pending step for ``agent_id``.

        ``agent_id`` is the qualified ``<workflow_id>_<agent_name>``
        identifier. The status change and template resolution happen in one
        storage transaction, so a step never ends up running without its
        resolved input and two callers can never claim the same step.
        """
        claimed = await self._repository.claim_next_step(agent_id, render_step_input)
        if claimed is None:
            logger.debug(f"No pending step for agent {agent_id}")
            return ClaimResult(found=False)

        step = claimed.step
        logger.info(
            f"Agent {agent_id} claimed step {step.step_name} "
            f"(index {step.step_index}) of run {step.run_id}"
        )
        return ClaimResult(
            found=True,
            resolved_input=step.resolved_input,
            step_id=step.id,
            step_name=step.step_name,
            run_id=step.run_id,
            expects=step.expects,
        )

    async def complete_step(self, step_id: str, output: str = "") -> StepRecord:
        """Record a step's output and unblock the next step of its run.

        ``KEY: value`` lines in ``output`` are merged into the run context as
        ``key`` so later step templates can reference them.
        """
        updates = parse_output_values(output)
        step = await self._repository.complete_step(step_id, output, updates)
        logger.info(
            f"Completed step {step.step_name} of run {step.run_id}"
            + (f" with context keys {sorted(updates)}" if updates else "")
        )
        return step

    async def fail_step(self, step_id: str, error: str) -> StepRecord:
        """Mark a running step and its run as failed."""
        step = await self._repository.fail_step(step_id, error)
        logger.info(f"Step {step.step_name} of run {step.run_id} failed: {error}")
        return step

    async def get_step(self, step_id: str) -> StepRecord:
        step = await self._repository.get_step(step_id)
        if step is None:
            raise StepNotFoundError(step_id)
        return step
