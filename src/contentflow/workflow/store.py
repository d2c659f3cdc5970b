"""Execution store: keyed storage of workflow executions.

Key exports:
    ExecutionStore - protocol the orchestrator depends on.
    InMemoryExecutionStore - process-local store holding live objects.
    SqliteExecutionStore - aiosqlite-backed store; executions are persisted
        as JSON documents with indexed status and start time.

Both stores hand out one ``asyncio.Lock`` per execution. Every write to an
execution's state happens while holding it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, runtime_checkable

import aiosqlite

from contentflow.workflow.models import WorkflowExecution

logger = logging.getLogger("contentflow.workflow.store")


@runtime_checkable
class ExecutionStore(Protocol):
    async def insert(self, execution: WorkflowExecution) -> None:
        ...

    async def save(self, execution: WorkflowExecution) -> None:
        ...

    async def get(self, execution_id: str) -> WorkflowExecution | None:
        ...

    async def recent(self, limit: int = 10) -> list[WorkflowExecution]:
        ...

    async def all(self) -> list[WorkflowExecution]:
        ...

    def lock(self, execution_id: str) -> asyncio.Lock:
        ...

    def release(self, execution_id: str) -> None:
        ...


class _LockTable:
    """Lazily created per-execution locks."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, execution_id: str) -> asyncio.Lock:
        lock = self._locks.get(execution_id)
        if lock is None:
            lock = self._locks[execution_id] = asyncio.Lock()
        return lock

    def release(self, execution_id: str) -> None:
        """Forget the lock of a finished execution."""
        self._locks.pop(execution_id, None)


class InMemoryExecutionStore(_LockTable):
    """Stores execution objects by reference; ``save`` is a no-op."""

    def __init__(self) -> None:
        super().__init__()
        self._executions: dict[str, WorkflowExecution] = {}

    async def insert(self, execution: WorkflowExecution) -> None:
        if execution.id in self._executions:
            msg = f"Execution {execution.id} already exists"
            raise ValueError(msg)
        self._executions[execution.id] = execution

    async def save(self, execution: WorkflowExecution) -> None:
        self._executions[execution.id] = execution

    async def get(self, execution_id: str) -> WorkflowExecution | None:
        return self._executions.get(execution_id)

    async def recent(self, limit: int = 10) -> list[WorkflowExecution]:
        ordered = sorted(self._executions.values(), key=lambda e: e.started_at, reverse=True)
        return ordered[:limit]

    async def all(self) -> list[WorkflowExecution]:
        return list(self._executions.values())

    def __len__(self) -> int:
        return len(self._executions)


class SqliteExecutionStore(_LockTable):
    """SQLite-backed execution store.

    Call ``initialize()`` before use and ``close()`` on shutdown.
    """

    def __init__(self, db_path: str):
        super().__init__()
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Execution store initialized at %s", self.db_path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            msg = "SqliteExecutionStore used before initialize()"
            raise RuntimeError(msg)
        return self._db

    async def insert(self, execution: WorkflowExecution) -> None:
        await self.db.execute(
            """
            INSERT INTO executions (id, workflow_id, status, started_at, completed_at, data)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            _row_values(execution),
        )
        await self.db.commit()

    async def save(self, execution: WorkflowExecution) -> None:
        await self.db.execute(
            """
            INSERT OR REPLACE INTO executions
                (id, workflow_id, status, started_at, completed_at, data)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            _row_values(execution),
        )
        await self.db.commit()

    async def get(self, execution_id: str) -> WorkflowExecution | None:
        cursor = await self.db.execute("SELECT data FROM executions WHERE id = ?", (execution_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return WorkflowExecution.model_validate_json(row["data"])

    async def recent(self, limit: int = 10) -> list[WorkflowExecution]:
        cursor = await self.db.execute(
            "SELECT data FROM executions ORDER BY started_at DESC LIMIT ?", (limit,)
        )
        rows = await cursor.fetchall()
        return [WorkflowExecution.model_validate_json(r["data"]) for r in rows]

    async def all(self) -> list[WorkflowExecution]:
        cursor = await self.db.execute("SELECT data FROM executions ORDER BY started_at")
        rows = await cursor.fetchall()
        return [WorkflowExecution.model_validate_json(r["data"]) for r in rows]


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS executions (
    id TEXT PRIMARY KEY,
    workflow_id TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_executions_started
    ON executions(started_at);
CREATE INDEX IF NOT EXISTS idx_executions_workflow
    ON executions(workflow_id, status);
"""


def _row_values(execution: WorkflowExecution) -> tuple:
    return (
        execution.id,
        execution.workflow_id,
        execution.status.value,
        execution.started_at.isoformat(),
        execution.completed_at.isoformat() if execution.completed_at else None,
        execution.model_dump_json(),
    )
