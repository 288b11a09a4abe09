"""Antfarm: a lightweight orchestrator for sequential agent workflows."""

from .context import RunContext
from .errors import (
    AntfarmError,
    InvalidTransitionError,
    RunNotFoundError,
    StepNotFoundError,
    WorkflowLoadError,
    WorkflowNotFoundError,
)
from .persistence import get_repository
from .runs import RunManager
from .steps import ClaimResult, StepClaimEngine
from .templates import resolve_template
from .workflows import WorkflowSpec, load_workflow

__version__ = "0.3.0"
__all__ = [
    "AntfarmError",
    "ClaimResult",
    "InvalidTransitionError",
    "RunContext",
    "RunManager",
    "RunNotFoundError",
    "StepClaimEngine",
    "StepNotFoundError",
    "WorkflowLoadError",
    "WorkflowNotFoundError",
    "WorkflowSpec",
    "get_repository",
    "load_workflow",
    "resolve_template",
]
