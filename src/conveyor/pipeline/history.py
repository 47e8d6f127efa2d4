"""Build history — persisted run results for change detection and audit.

Key exports:
    BuildHistoryStore — Protocol the engine records results through.
    SqliteBuildHistory — aiosqlite implementation with per-key retention.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Protocol

import aiosqlite

from conveyor.pipeline.models import (
    HookClass,
    HookResult,
    PipelineKey,
    RunResult,
    StageKind,
    StageResult,
    StageStatus,
)

logger = logging.getLogger("conveyor.pipeline.history")


class BuildHistoryStore(Protocol):
    """What the engine needs from a history backend."""

    async def record_result(self, key: PipelineKey, result: RunResult) -> None:
        """Persist a finished run."""
        ...

    async def get_previous_result(self, key: PipelineKey) -> RunResult | None:
        """Return the most recent finished run for ``key``, if any."""
        ...

    async def next_build_number(self, key: PipelineKey) -> int:
        """Return the build number the next run of ``key`` should use."""
        ...


class SqliteBuildHistory:
    """SQLite-backed build history.

    Takes an already-open aiosqlite connection (``row_factory`` is set to
    ``aiosqlite.Row``). Call :meth:`initialize` to create tables.

    Retention is configuration, not engine logic: when ``num_to_keep`` is
    set, recording a run prunes the oldest runs of the same key.
    """

    def __init__(self, db: aiosqlite.Connection, *, num_to_keep: int | None = None):
        if num_to_keep is not None and num_to_keep < 1:
            msg = "num_to_keep must be at least 1"
            raise ValueError(msg)
        self._db = db
        self._db.row_factory = aiosqlite.Row
        self._num_to_keep = num_to_keep

    async def initialize(self) -> None:
        """Create history tables if they don't exist."""
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Build history tables initialized")

    # ── Recording ────────────────────────────────────────────────────────────

    async def record_result(self, key: PipelineKey, result: RunResult) -> None:
        """Insert a finished run with its stage trail and hook outcomes."""
        await self._db.execute(
            """
            INSERT OR REPLACE INTO pipeline_runs (
                run_id, pipeline, branch, build_number, status,
                started_at, finished_at, duration_ms, parameters, warnings
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.run_id,
                key.pipeline,
                key.branch,
                result.build_number,
                result.status.value,
                _dt_to_str(result.timestamp),
                _dt_to_str(result.finished_at),
                result.duration_ms,
                json.dumps(result.parameters),
                json.dumps(result.warnings),
            ),
        )
        await self._db.execute("DELETE FROM stage_results WHERE run_id = ?", (result.run_id,))
        await self._db.executemany(
            """
            INSERT INTO stage_results (
                run_id, position, stage_id, parent_id, kind, status,
                started_at, finished_at, output, outputs, message
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    result.run_id,
                    position,
                    stage.stage_id,
                    stage.parent_id,
                    stage.kind.value,
                    stage.status.value,
                    _dt_to_str(stage.started_at),
                    _dt_to_str(stage.finished_at),
                    stage.output,
                    json.dumps(stage.outputs),
                    stage.message,
                )
                for position, stage in enumerate(result.stages)
            ],
        )
        await self._db.execute("DELETE FROM hook_results WHERE run_id = ?", (result.run_id,))
        await self._db.executemany(
            """
            INSERT INTO hook_results (run_id, position, hook_class, name, success, error)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    result.run_id,
                    position,
                    hook.hook_class.value,
                    hook.name,
                    1 if hook.success else 0,
                    hook.error,
                )
                for position, hook in enumerate(result.hooks)
            ],
        )
        await self._db.commit()
        logger.info(
            "Recorded run %s (%s #%d): %s",
            result.run_id,
            key,
            result.build_number,
            result.status.value,
        )

        if self._num_to_keep is not None:
            await self.prune(key, self._num_to_keep)

    async def prune(self, key: PipelineKey, num_to_keep: int) -> int:
        """Delete all but the newest ``num_to_keep`` runs of ``key``. Returns rows removed."""
        cursor = await self._db.execute(
            """
            SELECT run_id FROM pipeline_runs
            WHERE pipeline = ? AND branch = ?
            ORDER BY build_number DESC
            LIMIT -1 OFFSET ?
            """,
            (key.pipeline, key.branch, num_to_keep),
        )
        stale = [row["run_id"] for row in await cursor.fetchall()]
        for run_id in stale:
            await self._db.execute("DELETE FROM hook_results WHERE run_id = ?", (run_id,))
            await self._db.execute("DELETE FROM stage_results WHERE run_id = ?", (run_id,))
            await self._db.execute("DELETE FROM pipeline_runs WHERE run_id = ?", (run_id,))
        if stale:
            await self._db.commit()
            logger.info("Pruned %d old run(s) of %s", len(stale), key)
        return len(stale)

    # ── Queries ──────────────────────────────────────────────────────────────

    async def get_previous_result(self, key: PipelineKey) -> RunResult | None:
        cursor = await self._db.execute(
            """
            SELECT * FROM pipeline_runs
            WHERE pipeline = ? AND branch = ?
            ORDER BY build_number DESC LIMIT 1
            """,
            (key.pipeline, key.branch),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return await self._load_run(row)

    async def next_build_number(self, key: PipelineKey) -> int:
        cursor = await self._db.execute(
            "SELECT MAX(build_number) AS latest FROM pipeline_runs WHERE pipeline = ? AND branch = ?",
            (key.pipeline, key.branch),
        )
        row = await cursor.fetchone()
        latest = row["latest"] if row else None
        return (latest or 0) + 1

    async def get_run(self, run_id: str) -> RunResult | None:
        """Fetch a recorded run with its stage trail and hooks."""
        cursor = await self._db.execute("SELECT * FROM pipeline_runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return await self._load_run(row)

    async def list_runs(self, key: PipelineKey, *, limit: int = 20) -> list[RunResult]:
        """Return recent runs of ``key``, newest first, without stage trails."""
        cursor = await self._db.execute(
            """
            SELECT * FROM pipeline_runs
            WHERE pipeline = ? AND branch = ?
            ORDER BY build_number DESC LIMIT ?
            """,
            (key.pipeline, key.branch, limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_run(r) for r in rows]

    async def _load_run(self, row: aiosqlite.Row) -> RunResult:
        result = _row_to_run(row)
        cursor = await self._db.execute(
            "SELECT * FROM stage_results WHERE run_id = ? ORDER BY position",
            (result.run_id,),
        )
        result.stages = [_row_to_stage_result(r) for r in await cursor.fetchall()]
        cursor = await self._db.execute(
            "SELECT * FROM hook_results WHERE run_id = ? ORDER BY position",
            (result.run_id,),
        )
        result.hooks = [_row_to_hook_result(r) for r in await cursor.fetchall()]
        return result


# ── SQL Schema ───────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipeline_runs (
    run_id TEXT PRIMARY KEY,
    pipeline TEXT NOT NULL,
    branch TEXT NOT NULL,
    build_number INTEGER NOT NULL,

    status TEXT NOT NULL,

    started_at TEXT,
    finished_at TEXT,
    duration_ms INTEGER DEFAULT 0,

    parameters TEXT DEFAULT '{}',
    warnings TEXT DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS idx_pipeline_runs_key
    ON pipeline_runs(pipeline, branch, build_number);

CREATE TABLE IF NOT EXISTS stage_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES pipeline_runs(run_id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    stage_id TEXT NOT NULL,
    parent_id TEXT,
    kind TEXT NOT NULL,
    status TEXT NOT NULL,

    started_at TEXT,
    finished_at TEXT,

    output TEXT,
    outputs TEXT DEFAULT '{}',
    message TEXT
);

CREATE INDEX IF NOT EXISTS idx_stage_results_run
    ON stage_results(run_id, position);

CREATE TABLE IF NOT EXISTS hook_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES pipeline_runs(run_id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    hook_class TEXT NOT NULL,
    name TEXT NOT NULL,
    success INTEGER NOT NULL,
    error TEXT
);
"""


# ── Row Converters ───────────────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _row_to_run(row: aiosqlite.Row) -> RunResult:
    started = _str_to_dt(row["started_at"])
    data: dict = dict(
        run_id=row["run_id"],
        key=PipelineKey(pipeline=row["pipeline"], branch=row["branch"]),
        build_number=row["build_number"],
        status=StageStatus(row["status"]),
        finished_at=_str_to_dt(row["finished_at"]),
        duration_ms=row["duration_ms"] or 0,
        parameters=json.loads(row["parameters"] or "{}"),
        warnings=json.loads(row["warnings"] or "[]"),
    )
    if started is not None:
        data["timestamp"] = started
    return RunResult(**data)


def _row_to_stage_result(row: aiosqlite.Row) -> StageResult:
    return StageResult(
        stage_id=row["stage_id"],
        parent_id=row["parent_id"],
        kind=StageKind(row["kind"]),
        status=StageStatus(row["status"]),
        started_at=_str_to_dt(row["started_at"]),
        finished_at=_str_to_dt(row["finished_at"]),
        output=row["output"],
        outputs=json.loads(row["outputs"] or "{}"),
        message=row["message"],
    )


def _row_to_hook_result(row: aiosqlite.Row) -> HookResult:
    return HookResult(
        hook_class=HookClass(row["hook_class"]),
        name=row["name"],
        success=bool(row["success"]),
        error=row["error"],
    )
