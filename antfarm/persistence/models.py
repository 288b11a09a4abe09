"""Data models for persisted run state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field

from ..context import RunContext

RunStatus = Literal["running", "completed", "failed", "cancelled"]
StepStatus = Literal["waiting", "pending", "running", "completed", "failed"]

ACTIVE_RUN_STATUSES = ("running",)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class RunRecord(BaseModel):
    """One execution of a workflow."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    task: str
    status: RunStatus = "running"
    context: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def run_context(self) -> RunContext:
        return RunContext(self.context)

    def context_json(self) -> str:
        return RunContext(self.context).to_json()

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RUN_STATUSES


class StepRecord(BaseModel):
    """Record of an individual step of a run."""

    id: str = Field(default_factory=new_id)
    run_id: str
    step_index: int
    step_name: str
    agent: str
    status: StepStatus = "waiting"
    input_template: str
    expects: Optional[str] = None
    resolved_input: Optional[str] = None
    output: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def agent_id(self, workflow_id: str) -> str:
        return f"{workflow_id}_{self.agent}"


class ClaimedStep(BaseModel):
    """A step that was just claimed together with its owning run."""

    step: StepRecord
    run: RunRecord
