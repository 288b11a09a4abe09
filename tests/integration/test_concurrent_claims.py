"""Claims from independent SQLite connections against one database file."""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from antfarm import RunManager, StepClaimEngine
from antfarm.persistence import SQLiteRunRepository
from tests.fixtures.workflows import write_workflow

WORKERS = 8


def _claim_in_own_connection(db_path, agent_id):
    # Each worker opens its own connection, as a separate process would.
    repo = SQLiteRunRepository(db_path)
    try:
        return asyncio.run(StepClaimEngine(repo).claim_step(agent_id))
    finally:
        repo.close()


@pytest.mark.asyncio
async def test_single_winner_across_connections(tmp_path, config, workflows_dir):
    db_path = tmp_path / "shared.db"
    write_workflow(workflows_dir, "race")
    repo = SQLiteRunRepository(db_path)
    run = await RunManager(repo, config=config).run_workflow("race", "Race task")

    loop = asyncio.get_running_loop()
    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        results = await asyncio.gather(
            *(
                loop.run_in_executor(pool, _claim_in_own_connection, db_path, "race_planner")
                for _ in range(WORKERS)
            )
        )

    winners = [r for r in results if r.found]
    assert len(winners) == 1
    assert winners[0].run_id == run.id
    steps = await repo.get_steps(run.id)
    assert [s.status for s in steps] == ["running", "waiting", "waiting"]
    assert steps[0].resolved_input == winners[0].resolved_input


@pytest.mark.asyncio
async def test_each_pending_step_goes_to_exactly_one_worker(tmp_path, config, workflows_dir):
    db_path = tmp_path / "shared.db"
    write_workflow(workflows_dir, "fanout", steps=[{"id": "s", "agent": "bot", "input": "{{task}}"}])
    repo = SQLiteRunRepository(db_path)
    manager = RunManager(repo, config=config)
    run_ids = {(await manager.run_workflow("fanout", f"task {i}")).id for i in range(3)}

    loop = asyncio.get_running_loop()
    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        results = await asyncio.gather(
            *(
                loop.run_in_executor(pool, _claim_in_own_connection, db_path, "fanout_bot")
                for _ in range(WORKERS)
            )
        )

    claimed_runs = [r.run_id for r in results if r.found]
    assert sorted(claimed_runs) == sorted(run_ids)
