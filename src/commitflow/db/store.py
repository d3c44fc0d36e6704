"""Async SQLite journal of runs and the events they emitted."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from commitflow.db.migrations import apply_migrations
from commitflow.models.events import EventEnvelope
from commitflow.models.workflow import WorkflowRun

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunSummary:
    """Journaled outcome of one run."""

    run_id: str
    repository_path: str
    state: str
    commit_id: str | None
    failed_stage: str | None
    started_at: datetime
    updated_at: datetime


class RunJournal:
    """Data access layer for journaled runs and events."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await aiosqlite.connect(self._db_path)
        conn.row_factory = aiosqlite.Row
        try:
            await apply_migrations(conn)
            yield conn
        finally:
            await conn.close()

    async def record(self, run: WorkflowRun, envelope: EventEnvelope) -> None:
        """Persist one envelope and the run's current state.

        Journal failures are logged and do not interrupt the run.
        """
        try:
            await self._write(run, envelope)
        except aiosqlite.Error:
            logger.exception("failed to journal event %d of run %s", envelope.seq, run.run_id)

    async def _write(self, run: WorkflowRun, envelope: EventEnvelope) -> None:
        now = datetime.now(UTC).isoformat()
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO runs(
                    run_id,
                    repository_path,
                    state,
                    commit_id,
                    failed_stage,
                    started_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    state=excluded.state,
                    commit_id=excluded.commit_id,
                    failed_stage=excluded.failed_stage,
                    updated_at=excluded.updated_at
                """,
                (
                    run.run_id,
                    str(run.request.repository_path),
                    run.state.value,
                    run.commit_id,
                    run.error.stage.value if run.error else None,
                    run.started_at.isoformat(),
                    now,
                ),
            )
            await conn.execute(
                """
                INSERT OR IGNORE INTO run_events(run_id, seq, kind, envelope, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    envelope.run_id,
                    envelope.seq,
                    envelope.event.kind,
                    envelope.model_dump_json(),
                    envelope.timestamp.isoformat(),
                ),
            )
            await conn.commit()

    async def list_runs(self, *, limit: int = 20) -> list[RunSummary]:
        async with self.connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM runs ORDER BY started_at DESC LIMIT ?", (limit,)
            )
            rows = await cursor.fetchall()
        return [self._run_from_row(row) for row in rows]

    async def get_run(self, run_id: str) -> RunSummary | None:
        async with self.connection() as conn:
            cursor = await conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,))
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._run_from_row(row)

    async def list_events(self, run_id: str) -> list[EventEnvelope]:
        async with self.connection() as conn:
            cursor = await conn.execute(
                "SELECT envelope FROM run_events WHERE run_id = ? ORDER BY seq ASC", (run_id,)
            )
            rows = await cursor.fetchall()
        return [EventEnvelope.model_validate_json(str(row["envelope"])) for row in rows]

    @staticmethod
    def _run_from_row(row: aiosqlite.Row) -> RunSummary:
        return RunSummary(
            run_id=str(row["run_id"]),
            repository_path=str(row["repository_path"]),
            state=str(row["state"]),
            commit_id=str(row["commit_id"]) if row["commit_id"] else None,
            failed_stage=str(row["failed_stage"]) if row["failed_stage"] else None,
            started_at=datetime.fromisoformat(str(row["started_at"])),
            updated_at=datetime.fromisoformat(str(row["updated_at"])),
        )
