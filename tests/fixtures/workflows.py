"""Helpers that install workflow definitions for tests."""

from __future__ import annotations

from pathlib import Path

import yaml

THREE_STEP_STEPS = [
    {"id": "plan", "agent": "planner", "input": "Plan: {{task}} (dry run: {{dry_run}})", "expects": "STATUS: done"},
    {"id": "implement", "agent": "developer", "input": "Implement {{task}} on {{branch}}"},
    {"id": "verify", "agent": "verifier", "input": "Verify run {{run_id}}: {{task}}"},
]


def write_workflow(
    workflows_dir: Path,
    workflow_id: str,
    steps: list[dict] | None = None,
    context: dict | None = None,
) -> Path:
    """Write ``<workflows_dir>/<workflow_id>/workflow.yml`` and return its path."""
    workflow_dir = workflows_dir / workflow_id
    workflow_dir.mkdir(parents=True, exist_ok=True)
    steps = steps if steps is not None else THREE_STEP_STEPS
    agents = sorted({s["agent"] for s in steps})
    data = {
        "id": workflow_id,
        "title": "Test Workflow",
        "context": context or {},
        "notifications": {},
        "agents": [{"id": a, "workspace": {"baseDir": "/tmp"}} for a in agents],
        "steps": steps,
    }
    path = workflow_dir / "workflow.yml"
    path.write_text(yaml.safe_dump(data, sort_keys=False))
    return path
