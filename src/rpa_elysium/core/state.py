"""Persistent workflow definitions and run history using SQLite."""

import asyncio
import json
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Optional

import aiosqlite
import structlog

from .errors import StateStoreError, WorkflowInUseError, WorkflowNotFoundError
from .models import Run, RunStatus, RunTrigger, StepResult, StepStatus, Workflow


logger = structlog.get_logger()


class StateStore:
    """
    Durable store for workflow definitions and run history.

    Workflows live in a mutable table keyed by id, with every version kept
    in ``workflow_versions``. Runs are append-only: a run and all of its
    step results are written in one transaction once the run is terminal,
    so readers never see a partially recorded run.
    """

    def __init__(self, db_path: str = "./data/state.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the database and create tables."""
        if self.db_path != ":memory:":
            try:
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StateStoreError(f"Cannot create state directory for {self.db_path}: {e}")

        try:
            self._db = await aiosqlite.connect(str(self.db_path))
            self._db.row_factory = aiosqlite.Row

            await self._db.executescript("""
                -- Current workflow definitions
                CREATE TABLE IF NOT EXISTS workflows (
                    workflow_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    enabled INTEGER DEFAULT 1,
                    schedule TEXT,
                    content_hash TEXT NOT NULL,
                    definition_json TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                );

                -- Every version ever saved
                CREATE TABLE IF NOT EXISTS workflow_versions (
                    workflow_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    content_hash TEXT NOT NULL,
                    definition_json TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    PRIMARY KEY (workflow_id, version)
                );

                -- Run log (append-only)
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    workflow_version INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    trigger TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    started_at REAL,
                    ended_at REAL,
                    error_json TEXT,
                    recorded_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS step_results (
                    run_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    step_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL,
                    output_json TEXT,
                    error_json TEXT,
                    started_at REAL,
                    ended_at REAL,
                    PRIMARY KEY (run_id, position)
                );

                CREATE INDEX IF NOT EXISTS idx_runs_workflow ON runs(workflow_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status);
            """)
            await self._db.commit()
        except aiosqlite.Error as e:
            raise StateStoreError(f"Failed to open state store: {e}")

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def is_open(self) -> bool:
        return self._db is not None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StateStoreError("State store is not initialized")
        return self._db

    # ==================== Workflows ====================

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        """
        Insert or update a workflow definition.

        The version is assigned by the store: 1 for a new workflow, bumped
        by one whenever the content changes. Saving identical content is a
        no-op that returns the stored version.
        """
        db = self._conn()
        async with self._lock:
            try:
                cursor = await db.execute(
                    "SELECT version, content_hash FROM workflows WHERE workflow_id = ?",
                    (workflow.id,)
                )
                row = await cursor.fetchone()

                content_hash = workflow.content_hash
                if row and row["content_hash"] == content_hash:
                    return replace(workflow, version=row["version"])

                version = row["version"] + 1 if row else 1
                stored = replace(workflow, version=version)
                definition = json.dumps(stored.to_dict())
                now = time.time()

                if row:
                    await db.execute("""
                        UPDATE workflows
                        SET name = ?, version = ?, enabled = ?, schedule = ?,
                            content_hash = ?, definition_json = ?, updated_at = ?
                        WHERE workflow_id = ?
                    """, (
                        stored.name, version, int(stored.enabled), stored.schedule,
                        content_hash, definition, now, stored.id,
                    ))
                else:
                    await db.execute("""
                        INSERT INTO workflows
                        (workflow_id, name, version, enabled, schedule,
                         content_hash, definition_json, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        stored.id, stored.name, version, int(stored.enabled),
                        stored.schedule, content_hash, definition, now, now,
                    ))

                await db.execute("""
                    INSERT INTO workflow_versions
                    (workflow_id, version, content_hash, definition_json, created_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (stored.id, version, content_hash, definition, now))
                await db.commit()
            except aiosqlite.Error as e:
                await db.rollback()
                raise StateStoreError(f"Failed to save workflow {workflow.id}: {e}")

        logger.info("workflow_saved", workflow_id=stored.id, version=version)
        return stored

    async def get_workflow(self, workflow_id: str, version: Optional[int] = None) -> Workflow:
        """Get the current (or a specific) version of a workflow."""
        db = self._conn()
        async with self._lock:
            if version is None:
                cursor = await db.execute(
                    "SELECT definition_json FROM workflows WHERE workflow_id = ?",
                    (workflow_id,)
                )
            else:
                cursor = await db.execute(
                    "SELECT definition_json FROM workflow_versions WHERE workflow_id = ? AND version = ?",
                    (workflow_id, version)
                )
            row = await cursor.fetchone()
        if not row:
            raise WorkflowNotFoundError(workflow_id)
        return Workflow.from_dict(json.loads(row["definition_json"]))

    async def list_workflows(self, enabled_only: bool = False) -> list[Workflow]:
        """List current workflow definitions ordered by id."""
        db = self._conn()
        query = "SELECT definition_json FROM workflows"
        if enabled_only:
            query += " WHERE enabled = 1"
        query += " ORDER BY workflow_id ASC"
        async with self._lock:
            cursor = await db.execute(query)
            rows = await cursor.fetchall()
        return [Workflow.from_dict(json.loads(row["definition_json"])) for row in rows]

    async def list_workflow_versions(self, workflow_id: str) -> list[int]:
        db = self._conn()
        async with self._lock:
            cursor = await db.execute(
                "SELECT version FROM workflow_versions WHERE workflow_id = ? ORDER BY version ASC",
                (workflow_id,)
            )
            rows = await cursor.fetchall()
        return [row["version"] for row in rows]

    async def delete_workflow(self, workflow_id: str) -> None:
        """Delete a workflow that no run references."""
        db = self._conn()
        async with self._lock:
            cursor = await db.execute(
                "SELECT COUNT(*) AS cnt FROM runs WHERE workflow_id = ?",
                (workflow_id,)
            )
            row = await cursor.fetchone()
            if row["cnt"] > 0:
                raise WorkflowInUseError(workflow_id, run_count=row["cnt"])

            try:
                result = await db.execute(
                    "DELETE FROM workflows WHERE workflow_id = ?",
                    (workflow_id,)
                )
                if result.rowcount == 0:
                    await db.rollback()
                    raise WorkflowNotFoundError(workflow_id)
                await db.execute(
                    "DELETE FROM workflow_versions WHERE workflow_id = ?",
                    (workflow_id,)
                )
                await db.commit()
            except aiosqlite.Error as e:
                await db.rollback()
                raise StateStoreError(f"Failed to delete workflow {workflow_id}: {e}")

        logger.info("workflow_deleted", workflow_id=workflow_id)

    # ==================== Runs ====================

    async def record_run(self, run: Run) -> None:
        """Append a finished run and its step results in one transaction."""
        if not run.is_terminal:
            raise StateStoreError(
                f"Run {run.run_id} is not terminal (status={run.status.value})",
                retryable=False,
            )

        db = self._conn()
        async with self._lock:
            try:
                await db.execute("""
                    INSERT INTO runs
                    (run_id, workflow_id, workflow_version, status, trigger,
                     created_at, started_at, ended_at, error_json, recorded_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    run.run_id,
                    run.workflow_id,
                    run.workflow_version,
                    run.status.value,
                    run.trigger.value,
                    run.created_at,
                    run.started_at,
                    run.ended_at,
                    json.dumps(run.error) if run.error is not None else None,
                    time.time(),
                ))
                await db.executemany("""
                    INSERT INTO step_results
                    (run_id, position, step_id, action, status, attempts,
                     output_json, error_json, started_at, ended_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, [
                    (
                        run.run_id,
                        result.position,
                        result.step_id,
                        result.action,
                        result.status.value,
                        result.attempts,
                        json.dumps(result.output, default=str) if result.output is not None else None,
                        json.dumps(result.error, default=str) if result.error is not None else None,
                        result.started_at,
                        result.ended_at,
                    )
                    for result in run.step_results
                ])
                await db.commit()
            except aiosqlite.Error as e:
                await db.rollback()
                raise StateStoreError(f"Failed to record run {run.run_id}: {e}")

    async def get_run(self, run_id: str) -> Optional[Run]:
        """Get a recorded run by ID."""
        db = self._conn()
        # Same lock as record_run: a run is never read between its two inserts
        async with self._lock:
            cursor = await db.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,))
            row = await cursor.fetchone()
            if not row:
                return None
            return await self._row_to_run(row)

    async def list_runs(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
    ) -> list[Run]:
        """List recorded runs, newest first."""
        db = self._conn()
        where, params = self._run_filters(workflow_id, status)
        async with self._lock:
            cursor = await db.execute(
                f"SELECT * FROM runs {where} ORDER BY created_at DESC, recorded_at DESC LIMIT ?",
                (*params, limit)
            )
            rows = await cursor.fetchall()
            return [await self._row_to_run(row) for row in rows]

    async def count_runs(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
    ) -> int:
        db = self._conn()
        where, params = self._run_filters(workflow_id, status)
        async with self._lock:
            cursor = await db.execute(f"SELECT COUNT(*) AS cnt FROM runs {where}", params)
            row = await cursor.fetchone()
        return row["cnt"] if row else 0

    def _run_filters(
        self,
        workflow_id: Optional[str],
        status: Optional[RunStatus],
    ) -> tuple[str, tuple[Any, ...]]:
        clauses = []
        params: list[Any] = []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, tuple(params)

    async def _row_to_run(self, row) -> Run:
        cursor = await self._conn().execute(
            "SELECT * FROM step_results WHERE run_id = ? ORDER BY position ASC",
            (row["run_id"],)
        )
        step_rows = await cursor.fetchall()
        return Run(
            run_id=row["run_id"],
            workflow_id=row["workflow_id"],
            workflow_version=row["workflow_version"],
            status=RunStatus(row["status"]),
            trigger=RunTrigger(row["trigger"]),
            created_at=row["created_at"],
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            error=json.loads(row["error_json"]) if row["error_json"] else None,
            step_results=[self._row_to_step_result(r) for r in step_rows],
        )

    def _row_to_step_result(self, row) -> StepResult:
        return StepResult(
            step_id=row["step_id"],
            position=row["position"],
            action=row["action"],
            status=StepStatus(row["status"]),
            attempts=row["attempts"],
            output=json.loads(row["output_json"]) if row["output_json"] else None,
            error=json.loads(row["error_json"]) if row["error_json"] else None,
            started_at=row["started_at"],
            ended_at=row["ended_at"],
        )
