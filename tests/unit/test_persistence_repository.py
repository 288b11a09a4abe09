"""Repository backend tests, run against the in-memory and SQLite stores."""

import sqlite3

import pytest

from antfarm.errors import InvalidTransitionError, RunNotFoundError, StepNotFoundError
from antfarm.persistence import RunRecord, SQLiteRunRepository, StepRecord


def _make_run(workflow_id="wf", n_steps=2, context=None):
    run = RunRecord(
        workflow_id=workflow_id,
        task="task",
        context=context or {"task": "task", "dry_run": "false"},
    )
    steps = [
        StepRecord(
            run_id=run.id,
            step_index=i,
            step_name=f"step{i}",
            agent="dev",
            status="pending" if i == 0 else "waiting",
            input_template=f"do {{{{task}}}} #{i}",
        )
        for i in range(n_steps)
    ]
    return run, steps


def _echo_template(step, run):
    return step.input_template


@pytest.mark.asyncio
async def test_repository_crud(repository):
    run, steps = _make_run()
    await repository.create_run(run, steps)

    stored = await repository.get_run(run.id)
    assert stored is not None
    assert stored.workflow_id == "wf"
    assert stored.status == "running"
    assert stored.context == {"task": "task", "dry_run": "false"}

    stored_steps = await repository.get_steps(run.id)
    assert [s.step_index for s in stored_steps] == [0, 1]
    assert [s.status for s in stored_steps] == ["pending", "waiting"]
    assert all(s.resolved_input is None for s in stored_steps)

    assert (await repository.get_step(steps[1].id)).step_name == "step1"
    assert await repository.get_run("missing") is None
    assert await repository.get_step("missing") is None
    assert await repository.count_rows() == (1, 2)
    assert [r.id for r in await repository.list_runs()] == [run.id]
    assert await repository.list_runs("other") == []


@pytest.mark.asyncio
async def test_create_run_is_atomic(repository):
    run, steps = _make_run()
    await repository.create_run(run, steps)

    # Reusing a step id violates the primary key after the run row was written
    other_run, other_steps = _make_run()
    other_steps[1].id = steps[0].id
    with pytest.raises((ValueError, sqlite3.IntegrityError)):
        await repository.create_run(other_run, other_steps)

    assert await repository.count_rows() == (1, 2)
    assert await repository.get_run(other_run.id) is None


@pytest.mark.asyncio
async def test_claim_uses_compare_and_swap(repository):
    run, steps = _make_run()
    await repository.create_run(run, steps)

    claimed = await repository.claim_next_step("wf_dev", _echo_template)
    assert claimed is not None
    assert claimed.step.id == steps[0].id
    assert claimed.step.status == "running"
    assert claimed.step.resolved_input == "do {{task}} #0"
    assert claimed.run.id == run.id

    # Step 1 is still waiting, so nothing else is claimable
    assert await repository.claim_next_step("wf_dev", _echo_template) is None
    assert await repository.claim_next_step("other_dev", _echo_template) is None


@pytest.mark.asyncio
async def test_failed_resolution_leaves_step_pending(repository):
    run, steps = _make_run()
    await repository.create_run(run, steps)

    def _explode(step, run):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await repository.claim_next_step("wf_dev", _explode)

    step = await repository.get_step(steps[0].id)
    assert step.status == "pending"
    assert step.resolved_input is None


@pytest.mark.asyncio
async def test_complete_step_advances_and_finishes_run(repository):
    run, steps = _make_run()
    await repository.create_run(run, steps)

    await repository.claim_next_step("wf_dev", _echo_template)
    done = await repository.complete_step(steps[0].id, "ok", {"branch": "main", "task": "x"})
    assert done.status == "completed"
    assert done.output == "ok"

    stored = await repository.get_run(run.id)
    assert stored.status == "running"
    assert stored.context["branch"] == "main"
    assert stored.context["task"] == "task"
    assert [s.status for s in await repository.get_steps(run.id)] == ["completed", "pending"]

    await repository.claim_next_step("wf_dev", _echo_template)
    await repository.complete_step(steps[1].id, "", {})
    assert (await repository.get_run(run.id)).status == "completed"


@pytest.mark.asyncio
async def test_complete_requires_running_step(repository):
    run, steps = _make_run()
    await repository.create_run(run, steps)

    with pytest.raises(InvalidTransitionError):
        await repository.complete_step(steps[0].id, "", {})
    with pytest.raises(StepNotFoundError):
        await repository.complete_step("missing", "", {})


@pytest.mark.asyncio
async def test_fail_step_fails_run(repository):
    run, steps = _make_run()
    await repository.create_run(run, steps)
    await repository.claim_next_step("wf_dev", _echo_template)

    failed = await repository.fail_step(steps[0].id, "compiler exploded")
    assert failed.status == "failed"
    assert failed.output == "compiler exploded"
    assert (await repository.get_run(run.id)).status == "failed"


@pytest.mark.asyncio
async def test_update_context_merges_and_keeps_reserved(repository):
    run, steps = _make_run()
    await repository.create_run(run, steps)

    updated = await repository.update_context(run.id, {"new_field": "new_value", "dry_run": "true"})
    assert updated.context == {"task": "task", "dry_run": "false", "new_field": "new_value"}
    assert updated.updated_at >= run.updated_at

    with pytest.raises(RunNotFoundError):
        await repository.update_context("missing", {})


@pytest.mark.asyncio
async def test_set_run_status_checks_expected(repository):
    run, steps = _make_run()
    await repository.create_run(run, steps)

    cancelled = await repository.set_run_status(run.id, "cancelled", expected=("running",))
    assert cancelled.status == "cancelled"
    assert await repository.claim_next_step("wf_dev", _echo_template) is None

    with pytest.raises(InvalidTransitionError):
        await repository.set_run_status(run.id, "cancelled", expected=("running",))


@pytest.mark.asyncio
async def test_reset_steps_for_resume(repository):
    run, steps = _make_run(n_steps=3)
    await repository.create_run(run, steps)
    await repository.claim_next_step("wf_dev", _echo_template)
    await repository.complete_step(steps[0].id, "", {})
    await repository.claim_next_step("wf_dev", _echo_template)
    await repository.fail_step(steps[1].id, "boom")

    resumed = await repository.reset_steps_for_resume(run.id)
    assert resumed.status == "running"
    stored_steps = await repository.get_steps(run.id)
    assert [s.status for s in stored_steps] == ["completed", "pending", "waiting"]
    assert stored_steps[1].resolved_input is None
    assert stored_steps[1].output is None

    with pytest.raises(InvalidTransitionError):
        await repository.reset_steps_for_resume(run.id)


@pytest.mark.asyncio
async def test_sqlite_state_survives_reopen(tmp_path):
    db_path = tmp_path / "antfarm.db"
    repo = SQLiteRunRepository(db_path)
    run, steps = _make_run()
    await repo.create_run(run, steps)
    repo.close()

    reopened = SQLiteRunRepository(db_path)
    claimed = await reopened.claim_next_step("wf_dev", _echo_template)
    assert claimed is not None
    assert claimed.step.id == steps[0].id
    assert claimed.run.created_at == run.created_at
