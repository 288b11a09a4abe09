"""Exception types raised by antfarm."""

from __future__ import annotations


class AntfarmError(Exception):
    """Base class for all antfarm errors."""


class WorkflowNotFoundError(AntfarmError):
    """No workflow definition file exists for the requested workflow id."""

    def __init__(self, workflow_id: str, path: str) -> None:
        self.workflow_id = workflow_id
        self.path = path
        super().__init__(f"Workflow not found: {workflow_id} (no file at {path})")


class WorkflowLoadError(AntfarmError):
    """The workflow file exists but could not be read or parsed."""


class RunNotFoundError(AntfarmError):
    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class StepNotFoundError(AntfarmError):
    def __init__(self, step_id: str) -> None:
        self.step_id = step_id
        super().__init__(f"Step not found: {step_id}")


class InvalidTransitionError(AntfarmError):
    """A run or step is not in a state that allows the requested change."""


class ContextFormatError(AntfarmError):
    """Persisted run context is not a flat JSON object."""
