"""Loading of YAML workflow definitions."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import WorkflowLoadError, WorkflowNotFoundError

logger = logging.getLogger(__name__)

WORKFLOW_FILENAMES = ("workflow.yml", "workflow.yaml")


class AgentSpec(BaseModel):
    """An agent role declared by a workflow."""

    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    workspace: Optional[Dict[str, Any]] = None


class StepSpec(BaseModel):
    """Defines one step in a workflow."""

    id: str
    agent: str
    input: str
    expects: Optional[str] = None

    @field_validator("id", "agent", mode="before")
    @classmethod
    def _coerce_identifier(cls, v: Any) -> Any:
        # YAML turns bare numbers into ints
        return str(v) if isinstance(v, (int, float)) else v


class WorkflowSpec(BaseModel):
    """Parsed ``workflow.yml`` file."""

    id: str
    title: Optional[str] = None
    description: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    notifications: Dict[str, Any] = Field(default_factory=dict)
    agents: List[AgentSpec] = Field(default_factory=list)
    steps: List[StepSpec]

    @field_validator("context", "notifications", mode="before")
    @classmethod
    def _none_as_empty(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("steps")
    @classmethod
    def _ensure_steps(cls, v: List[StepSpec]) -> List[StepSpec]:
        if not v:
            raise ValueError("workflow must declare at least one step")
        return v

    def agent_id(self, agent_name: str) -> str:
        """Qualified identifier workers use to claim this agent's steps."""
        return qualify_agent(self.id, agent_name)


def qualify_agent(workflow_id: str, agent_name: str) -> str:
    return f"{workflow_id}_{agent_name}"


def workflow_file(workflow_id: str, workflows_dir: str | Path) -> Path:
    """Return the definition file for ``workflow_id``.

    The first existing candidate wins; when none exists the preferred
    ``workflow.yml`` path is returned.
    """
    base = Path(workflows_dir).expanduser() / workflow_id
    for name in WORKFLOW_FILENAMES:
        candidate = base / name
        if candidate.is_file():
            return candidate
    return base / WORKFLOW_FILENAMES[0]


def load_workflow(workflow_id: str, workflows_dir: str | Path) -> WorkflowSpec:
    """Load and parse the workflow definition for ``workflow_id``.

    Raises:
        WorkflowNotFoundError: No definition file exists.
        WorkflowLoadError: The file could not be read, is not valid YAML or
            is missing required fields.
    """
    if not workflow_id:
        raise WorkflowLoadError("Workflow id must not be empty")

    path = workflow_file(workflow_id, workflows_dir)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise WorkflowNotFoundError(workflow_id, str(path)) from exc
    except OSError as exc:
        raise WorkflowLoadError(
            f"Could not read workflow {workflow_id} at {path}: {exc}"
        ) from exc

    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise WorkflowLoadError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise WorkflowLoadError(f"Workflow file {path} must contain a mapping")

    data.setdefault("id", workflow_id)
    try:
        spec = WorkflowSpec.model_validate(data)
    except ValidationError as exc:
        raise WorkflowLoadError(f"Invalid workflow {workflow_id}: {exc}") from exc

    logger.debug(f"Loaded workflow {spec.id} with {len(spec.steps)} steps from {path}")
    return spec


def list_workflows(workflows_dir: str | Path) -> list[str]:
    """Return the ids of all workflows installed under ``workflows_dir``."""
    base = Path(workflows_dir).expanduser()
    if not base.is_dir():
        return []
    return sorted(
        entry.name
        for entry in base.iterdir()
        if entry.is_dir() and any((entry / n).is_file() for n in WORKFLOW_FILENAMES)
    )
