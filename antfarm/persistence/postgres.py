"""PostgreSQL implementation of the run repository."""

from __future__ import annotations

from typing import Any, Mapping

import asyncpg

from ..context import RunContext
from ..errors import RunNotFoundError, StepNotFoundError
from .models import ClaimedStep, RunRecord, RunStatus, StepRecord, utcnow
from .repository import InputResolver, RunRepository
from .transitions import (
    RESUMABLE_RUN_STATUSES,
    next_waiting_step,
    require_run_active,
    require_run_status,
    require_step_running,
    resume_plan,
)

_RUN_COLUMNS = "id, workflow_id, task, status, context, created_at, updated_at"
_STEP_COLUMNS = (
    "id, run_id, step_index, step_name, agent, status, input_template, expects, "
    "resolved_input, output, created_at, updated_at"
)


class PostgresRunRepository(RunRepository):
    """Persist runs and steps using PostgreSQL.

    Claims lock the candidate step row with ``FOR UPDATE SKIP LOCKED`` so
    concurrent workers never block on, or double claim, the same step.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                task TEXT NOT NULL,
                status TEXT NOT NULL,
                context TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS steps (
                id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL REFERENCES runs(id),
                step_index INTEGER NOT NULL,
                step_name TEXT NOT NULL,
                agent TEXT NOT NULL,
                status TEXT NOT NULL,
                input_template TEXT NOT NULL,
                expects TEXT,
                resolved_input TEXT,
                output TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                UNIQUE (run_id, step_index)
            )
            """
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _to_run(row: asyncpg.Record) -> RunRecord:
        return RunRecord(
            id=row["id"],
            workflow_id=row["workflow_id"],
            task=row["task"],
            status=row["status"],
            context=RunContext.from_json(row["context"]).to_dict(),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _to_step(row: asyncpg.Record) -> StepRecord:
        return StepRecord(**{key: row[key] for key in _STEP_COLUMNS.split(", ")})

    async def _load_run(
        self, conn: asyncpg.Connection, run_id: str, lock: bool = False
    ) -> RunRecord:
        query = f"SELECT {_RUN_COLUMNS} FROM runs WHERE id = $1"
        if lock:
            query += " FOR UPDATE"
        row = await conn.fetchrow(query, run_id)
        if row is None:
            raise RunNotFoundError(run_id)
        return self._to_run(row)

    async def _load_step(
        self, conn: asyncpg.Connection, step_id: str, lock: bool = False
    ) -> StepRecord:
        query = f"SELECT {_STEP_COLUMNS} FROM steps WHERE id = $1"
        if lock:
            query += " FOR UPDATE"
        row = await conn.fetchrow(query, step_id)
        if row is None:
            raise StepNotFoundError(step_id)
        return self._to_step(row)

    async def _load_steps(self, conn: asyncpg.Connection, run_id: str) -> list[StepRecord]:
        rows = await conn.fetch(
            f"SELECT {_STEP_COLUMNS} FROM steps WHERE run_id = $1 ORDER BY step_index",
            run_id,
        )
        return [self._to_step(r) for r in rows]

    # ------------------------------------------------------------------
    async def create_run(self, run: RunRecord, steps: list[StepRecord]) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    f"INSERT INTO runs ({_RUN_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7)",
                    run.id,
                    run.workflow_id,
                    run.task,
                    run.status,
                    run.context_json(),
                    run.created_at,
                    run.updated_at,
                )
                await conn.executemany(
                    f"INSERT INTO steps ({_STEP_COLUMNS}) "
                    "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)",
                    [
                        (
                            s.id,
                            s.run_id,
                            s.step_index,
                            s.step_name,
                            s.agent,
                            s.status,
                            s.input_template,
                            s.expects,
                            s.resolved_input,
                            s.output,
                            s.created_at,
                            s.updated_at,
                        )
                        for s in steps
                    ],
                )
        finally:
            await conn.close()

    async def get_run(self, run_id: str) -> RunRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_RUN_COLUMNS} FROM runs WHERE id = $1", run_id
            )
        finally:
            await conn.close()
        return self._to_run(row) if row else None

    async def list_runs(self, workflow_id: str | None = None) -> list[RunRecord]:
        conn = await self._connect()
        try:
            if workflow_id is None:
                rows = await conn.fetch(
                    f"SELECT {_RUN_COLUMNS} FROM runs ORDER BY created_at DESC"
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_RUN_COLUMNS} FROM runs WHERE workflow_id = $1 "
                    "ORDER BY created_at DESC",
                    workflow_id,
                )
        finally:
            await conn.close()
        return [self._to_run(r) for r in rows]

    async def get_steps(self, run_id: str) -> list[StepRecord]:
        conn = await self._connect()
        try:
            return await self._load_steps(conn, run_id)
        finally:
            await conn.close()

    async def get_step(self, step_id: str) -> StepRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_STEP_COLUMNS} FROM steps WHERE id = $1", step_id
            )
        finally:
            await conn.close()
        return self._to_step(row) if row else None

    async def count_rows(self) -> tuple[int, int]:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT (SELECT COUNT(*) FROM runs) AS runs, (SELECT COUNT(*) FROM steps) AS steps"
            )
        finally:
            await conn.close()
        return row["runs"], row["steps"]

    async def claim_next_step(
        self, agent_id: str, resolve: InputResolver
    ) -> ClaimedStep | None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE steps SET status = 'running', updated_at = $2
                    WHERE id = (
                        SELECT s.id
                        FROM steps s JOIN runs r ON r.id = s.run_id
                        WHERE s.status = 'pending'
                          AND r.status = 'running'
                          AND r.workflow_id || '_' || s.agent = $1
                        ORDER BY s.step_index, r.created_at, s.id
                        LIMIT 1
                        FOR UPDATE OF s SKIP LOCKED
                    )
                    AND status = 'pending'
                    RETURNING id, run_id
                    """,
                    agent_id,
                    utcnow(),
                )
                if row is None:
                    return None
                step = await self._load_step(conn, row["id"])
                run = await self._load_run(conn, row["run_id"])
                step.resolved_input = resolve(step, run)
                await conn.execute(
                    "UPDATE steps SET resolved_input = $1 WHERE id = $2",
                    step.resolved_input,
                    step.id,
                )
        finally:
            await conn.close()
        return ClaimedStep(step=step, run=run)

    async def complete_step(
        self, step_id: str, output: str, context_updates: Mapping[str, Any]
    ) -> StepRecord:
        conn = await self._connect()
        try:
            async with conn.transaction():
                step = await self._load_step(conn, step_id, lock=True)
                require_step_running(step)
                run = await self._load_run(conn, step.run_id, lock=True)
                require_run_active(run)
                now = utcnow()

                await conn.execute(
                    "UPDATE steps SET status = 'completed', output = $1, updated_at = $2 "
                    "WHERE id = $3",
                    output,
                    now,
                    step_id,
                )
                context = run.run_context()
                context.merge(context_updates)

                following = next_waiting_step(
                    await self._load_steps(conn, run.id), step.step_index
                )
                if following is None:
                    run_status = "completed"
                else:
                    run_status = run.status
                    await conn.execute(
                        "UPDATE steps SET status = 'pending', updated_at = $1 WHERE id = $2",
                        now,
                        following.id,
                    )
                await conn.execute(
                    "UPDATE runs SET context = $1, status = $2, updated_at = $3 WHERE id = $4",
                    context.to_json(),
                    run_status,
                    now,
                    run.id,
                )
                return await self._load_step(conn, step_id)
        finally:
            await conn.close()

    async def fail_step(self, step_id: str, error: str) -> StepRecord:
        conn = await self._connect()
        try:
            async with conn.transaction():
                step = await self._load_step(conn, step_id, lock=True)
                require_step_running(step)
                run = await self._load_run(conn, step.run_id, lock=True)
                require_run_active(run)
                now = utcnow()
                await conn.execute(
                    "UPDATE steps SET status = 'failed', output = $1, updated_at = $2 "
                    "WHERE id = $3",
                    error,
                    now,
                    step_id,
                )
                await conn.execute(
                    "UPDATE runs SET status = 'failed', updated_at = $1 WHERE id = $2",
                    now,
                    step.run_id,
                )
                return await self._load_step(conn, step_id)
        finally:
            await conn.close()

    async def update_context(
        self, run_id: str, updates: Mapping[str, Any]
    ) -> RunRecord:
        conn = await self._connect()
        try:
            async with conn.transaction():
                run = await self._load_run(conn, run_id, lock=True)
                context = run.run_context()
                context.merge(updates)
                await conn.execute(
                    "UPDATE runs SET context = $1, updated_at = $2 WHERE id = $3",
                    context.to_json(),
                    utcnow(),
                    run_id,
                )
                return await self._load_run(conn, run_id)
        finally:
            await conn.close()

    async def set_run_status(
        self,
        run_id: str,
        status: RunStatus,
        expected: tuple[str, ...] | None = None,
    ) -> RunRecord:
        conn = await self._connect()
        try:
            async with conn.transaction():
                run = await self._load_run(conn, run_id, lock=True)
                require_run_status(run, expected, status)
                await conn.execute(
                    "UPDATE runs SET status = $1, updated_at = $2 WHERE id = $3",
                    status,
                    utcnow(),
                    run_id,
                )
                return await self._load_run(conn, run_id)
        finally:
            await conn.close()

    async def reset_steps_for_resume(self, run_id: str) -> RunRecord:
        conn = await self._connect()
        try:
            async with conn.transaction():
                run = await self._load_run(conn, run_id, lock=True)
                require_run_status(run, RESUMABLE_RUN_STATUSES, "running")
                now = utcnow()
                plan = resume_plan(await self._load_steps(conn, run_id))
                await conn.executemany(
                    "UPDATE steps SET status = $1, resolved_input = NULL, output = NULL, "
                    "updated_at = $2 WHERE id = $3",
                    [(status, now, step_id) for step_id, status in plan.items()],
                )
                await conn.execute(
                    "UPDATE runs SET status = $1, updated_at = $2 WHERE id = $3",
                    "running" if plan else "completed",
                    now,
                    run_id,
                )
                return await self._load_run(conn, run_id)
        finally:
            await conn.close()
