"""SQLite implementation of the run repository."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Mapping

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

logger = logging.getLogger(__name__)

_RUN_COLUMNS = "id, workflow_id, task, status, context, created_at, updated_at"
_STEP_COLUMNS = (
    "id, run_id, step_index, step_name, agent, status, input_template, expects, "
    "resolved_input, output, created_at, updated_at"
)


class SQLiteRunRepository(RunRepository):
    """Persist runs and steps using SQLite.

    Every mutation runs inside a ``BEGIN IMMEDIATE`` transaction, which takes
    the database write lock up front. That makes claims safe between
    processes sharing the file; within one process the shared connection is
    additionally guarded by a lock.
    """

    def __init__(self, db_path: str | Path, timeout: float = 30.0):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(Path(self.db_path).expanduser())
        self._conn = sqlite3.connect(
            self.db_path,
            timeout=timeout,
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    task TEXT NOT NULL,
                    status TEXT NOT NULL,
                    context TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
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
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (run_id, step_index)
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_steps_status ON steps (status, agent)"
            )

    # ------------------------------------------------------------------
    # Helper methods
    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
            except BaseException as exc:
                if self._conn.in_transaction:
                    cur.execute("ROLLBACK")
                if isinstance(exc, sqlite3.Error):
                    logger.error(f"SQLite transaction failed and was rolled back: {exc}")
                raise
            else:
                cur.execute("COMMIT")
            finally:
                cur.close()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _to_run(row: sqlite3.Row) -> RunRecord:
        return RunRecord(
            id=row["id"],
            workflow_id=row["workflow_id"],
            task=row["task"],
            status=row["status"],
            context=RunContext.from_json(row["context"]).to_dict(),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _to_step(row: sqlite3.Row) -> StepRecord:
        return StepRecord(
            id=row["id"],
            run_id=row["run_id"],
            step_index=row["step_index"],
            step_name=row["step_name"],
            agent=row["agent"],
            status=row["status"],
            input_template=row["input_template"],
            expects=row["expects"],
            resolved_input=row["resolved_input"],
            output=row["output"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _load_run(self, cur: sqlite3.Cursor, run_id: str) -> RunRecord:
        cur.execute(f"SELECT {_RUN_COLUMNS} FROM runs WHERE id = ?", (run_id,))
        row = cur.fetchone()
        if row is None:
            raise RunNotFoundError(run_id)
        return self._to_run(row)

    def _load_step(self, cur: sqlite3.Cursor, step_id: str) -> StepRecord:
        cur.execute(f"SELECT {_STEP_COLUMNS} FROM steps WHERE id = ?", (step_id,))
        row = cur.fetchone()
        if row is None:
            raise StepNotFoundError(step_id)
        return self._to_step(row)

    def _load_steps(self, cur: sqlite3.Cursor, run_id: str) -> list[StepRecord]:
        cur.execute(
            f"SELECT {_STEP_COLUMNS} FROM steps WHERE run_id = ? ORDER BY step_index",
            (run_id,),
        )
        return [self._to_step(r) for r in cur.fetchall()]

    # ------------------------------------------------------------------
    # Synchronous operations, executed on a worker thread
    def _create_run(self, run: RunRecord, steps: list[StepRecord]) -> None:
        with self._transaction() as cur:
            cur.execute(
                f"INSERT INTO runs ({_RUN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    run.id,
                    run.workflow_id,
                    run.task,
                    run.status,
                    run.context_json(),
                    run.created_at.isoformat(),
                    run.updated_at.isoformat(),
                ),
            )
            cur.executemany(
                f"INSERT INTO steps ({_STEP_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
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
                        s.created_at.isoformat(),
                        s.updated_at.isoformat(),
                    )
                    for s in steps
                ],
            )

    def _claim_next_step(
        self, agent_id: str, resolve: InputResolver
    ) -> ClaimedStep | None:
        with self._transaction() as cur:
            cur.execute(
                """
                SELECT s.id, s.run_id
                FROM steps s JOIN runs r ON r.id = s.run_id
                WHERE s.status = 'pending'
                  AND r.status = 'running'
                  AND r.workflow_id || '_' || s.agent = ?
                ORDER BY s.step_index, r.created_at, s.id
                LIMIT 1
                """,
                (agent_id,),
            )
            candidate = cur.fetchone()
            if candidate is None:
                return None
            cur.execute(
                "UPDATE steps SET status = 'running', updated_at = ? "
                "WHERE id = ? AND status = 'pending'",
                (utcnow().isoformat(), candidate["id"]),
            )
            if cur.rowcount != 1:
                return None
            step = self._load_step(cur, candidate["id"])
            run = self._load_run(cur, candidate["run_id"])
            step.resolved_input = resolve(step, run)
            cur.execute(
                "UPDATE steps SET resolved_input = ? WHERE id = ?",
                (step.resolved_input, step.id),
            )
            return ClaimedStep(step=step, run=run)

    def _complete_step(
        self, step_id: str, output: str, context_updates: Mapping[str, Any]
    ) -> StepRecord:
        with self._transaction() as cur:
            step = self._load_step(cur, step_id)
            require_step_running(step)
            run = self._load_run(cur, step.run_id)
            require_run_active(run)
            now = utcnow().isoformat()

            cur.execute(
                "UPDATE steps SET status = 'completed', output = ?, updated_at = ? "
                "WHERE id = ?",
                (output, now, step_id),
            )
            context = run.run_context()
            context.merge(context_updates)

            following = next_waiting_step(self._load_steps(cur, run.id), step.step_index)
            if following is None:
                run_status = "completed"
            else:
                run_status = run.status
                cur.execute(
                    "UPDATE steps SET status = 'pending', updated_at = ? WHERE id = ?",
                    (now, following.id),
                )
            cur.execute(
                "UPDATE runs SET context = ?, status = ?, updated_at = ? WHERE id = ?",
                (context.to_json(), run_status, now, run.id),
            )
            return self._load_step(cur, step_id)

    def _fail_step(self, step_id: str, error: str) -> StepRecord:
        with self._transaction() as cur:
            step = self._load_step(cur, step_id)
            require_step_running(step)
            require_run_active(self._load_run(cur, step.run_id))
            now = utcnow().isoformat()
            cur.execute(
                "UPDATE steps SET status = 'failed', output = ?, updated_at = ? "
                "WHERE id = ?",
                (error, now, step_id),
            )
            cur.execute(
                "UPDATE runs SET status = 'failed', updated_at = ? WHERE id = ?",
                (now, step.run_id),
            )
            return self._load_step(cur, step_id)

    def _update_context(self, run_id: str, updates: Mapping[str, Any]) -> RunRecord:
        with self._transaction() as cur:
            run = self._load_run(cur, run_id)
            context = run.run_context()
            context.merge(updates)
            cur.execute(
                "UPDATE runs SET context = ?, updated_at = ? WHERE id = ?",
                (context.to_json(), utcnow().isoformat(), run_id),
            )
            return self._load_run(cur, run_id)

    def _set_run_status(
        self, run_id: str, status: str, expected: tuple[str, ...] | None
    ) -> RunRecord:
        with self._transaction() as cur:
            run = self._load_run(cur, run_id)
            require_run_status(run, expected, status)
            cur.execute(
                "UPDATE runs SET status = ?, updated_at = ? WHERE id = ?",
                (status, utcnow().isoformat(), run_id),
            )
            return self._load_run(cur, run_id)

    def _reset_steps_for_resume(self, run_id: str) -> RunRecord:
        with self._transaction() as cur:
            run = self._load_run(cur, run_id)
            require_run_status(run, RESUMABLE_RUN_STATUSES, "running")
            now = utcnow().isoformat()
            plan = resume_plan(self._load_steps(cur, run_id))
            cur.executemany(
                "UPDATE steps SET status = ?, resolved_input = NULL, output = NULL, "
                "updated_at = ? WHERE id = ?",
                [(status, now, step_id) for step_id, status in plan.items()],
            )
            cur.execute(
                "UPDATE runs SET status = ?, updated_at = ? WHERE id = ?",
                ("running" if plan else "completed", now, run_id),
            )
            return self._load_run(cur, run_id)

    # ------------------------------------------------------------------
    # Repository API
    async def create_run(self, run: RunRecord, steps: list[StepRecord]) -> None:
        await asyncio.to_thread(self._create_run, run, steps)

    async def get_run(self, run_id: str) -> RunRecord | None:
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT {_RUN_COLUMNS} FROM runs WHERE id = ?", run_id
        )
        return self._to_run(row) if row else None

    async def list_runs(self, workflow_id: str | None = None) -> list[RunRecord]:
        if workflow_id is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_RUN_COLUMNS} FROM runs ORDER BY created_at DESC",
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_RUN_COLUMNS} FROM runs WHERE workflow_id = ? "
                "ORDER BY created_at DESC",
                workflow_id,
            )
        return [self._to_run(r) for r in rows]

    async def get_steps(self, run_id: str) -> list[StepRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_STEP_COLUMNS} FROM steps WHERE run_id = ? ORDER BY step_index",
            run_id,
        )
        return [self._to_step(r) for r in rows]

    async def get_step(self, step_id: str) -> StepRecord | None:
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT {_STEP_COLUMNS} FROM steps WHERE id = ?", step_id
        )
        return self._to_step(row) if row else None

    async def count_rows(self) -> tuple[int, int]:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT (SELECT COUNT(*) FROM runs) AS runs, (SELECT COUNT(*) FROM steps) AS steps",
        )
        return row["runs"], row["steps"]

    async def claim_next_step(
        self, agent_id: str, resolve: InputResolver
    ) -> ClaimedStep | None:
        return await asyncio.to_thread(self._claim_next_step, agent_id, resolve)

    async def complete_step(
        self, step_id: str, output: str, context_updates: Mapping[str, Any]
    ) -> StepRecord:
        return await asyncio.to_thread(
            self._complete_step, step_id, output, context_updates
        )

    async def fail_step(self, step_id: str, error: str) -> StepRecord:
        return await asyncio.to_thread(self._fail_step, step_id, error)

    async def update_context(
        self, run_id: str, updates: Mapping[str, Any]
    ) -> RunRecord:
        return await asyncio.to_thread(self._update_context, run_id, updates)

    async def set_run_status(
        self,
        run_id: str,
        status: RunStatus,
        expected: tuple[str, ...] | None = None,
    ) -> RunRecord:
        return await asyncio.to_thread(self._set_run_status, run_id, status, expected)

    async def reset_steps_for_resume(self, run_id: str) -> RunRecord:
        return await asyncio.to_thread(self._reset_steps_for_resume, run_id)

    def close(self) -> None:
        self._conn.close()
