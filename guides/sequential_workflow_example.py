"""Run a small two-agent workflow end to end in a single process."""

import asyncio
import tempfile
from pathlib import Path

from antfarm import RunManager, StepClaimEngine
from antfarm.config import AntfarmConfig
from antfarm.persistence import InMemoryRunRepository

WORKFLOW_YAML = """
id: release
title: Release pipeline
context:
  repo: acme/app
  max_retries: 2
agents:
  - id: writer
  - id: reviewer
steps:
  - id: changelog
    agent: writer
    input: "Write the changelog for {{repo}}: {{task}} (dry run: {{dry_run}})"
    expects: "VERSION: <semver>"
  - id: review
    agent: reviewer
    input: "Review release {{version}} of {{repo}} for run {{run_id}}"
"""


async def main():
    with tempfile.TemporaryDirectory() as tmp:
        workflow_dir = Path(tmp) / "release"
        workflow_dir.mkdir()
        (workflow_dir / "workflow.yml").write_text(WORKFLOW_YAML)

        repository = InMemoryRunRepository()
        manager = RunManager(repository, config=AntfarmConfig(workflows_dir=tmp))
        engine = StepClaimEngine(repository)

        run = await manager.run_workflow("release", "Ship 2.0", dry_run=True)
        print(f"🚀 Started run {run.id}")

        writer = await engine.claim_step("release_writer")
        print(f"✍️  writer got: {writer.resolved_input}")
        await engine.complete_step(writer.step_id, "Changelog written.\nVERSION: 2.0.0")

        reviewer = await engine.claim_step("release_reviewer")
        print(f"🔎 reviewer got: {reviewer.resolved_input}")
        await engine.complete_step(reviewer.step_id, "LGTM")

        final = await manager.get_run(run.id)
        print(f"✅ Run finished with status {final.status}; context: {final.context}")


if __name__ == "__main__":
    asyncio.run(main())
