"""Close-job records (one per buffer) and scheduler run logs."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from chat_buffer.core.clock import from_db, to_db
from chat_buffer.core.types import JobStatus
from chat_buffer.storage.database import Database
from chat_buffer.storage.models import ScheduledClose, SchedulerRun


class JobRepository:
    """Tracks the scheduler's intent to evaluate each buffer at its deadline."""

    def __init__(self, db: Database):
        self._db = db

    async def get(self, buffer_id: str) -> Optional[ScheduledClose]:
        row = await self._db.fetch_one(
            "SELECT * FROM buffer_processing_jobs WHERE buffer_id = ?", (buffer_id,)
        )
        if row is None:
            return None
        return ScheduledClose(
            buffer_id=row["buffer_id"],
            scheduled_for=from_db(row["scheduled_for"]),
            status=JobStatus(row["status"]),
            attempts=row["attempts"],
            started_at=from_db(row["started_at"]),
            finished_at=from_db(row["finished_at"]),
            last_error=row["last_error"],
        )

    async def schedule(self, buffer_id: str, scheduled_for: datetime, now: datetime) -> None:
        """Create the job or move a still-scheduled one to the new deadline."""
        ts = to_db(now)
        await self._db.conn.execute(
            """INSERT INTO buffer_processing_jobs
               (buffer_id, scheduled_for, status, attempts, created_at, updated_at)
               VALUES (?, ?, 'scheduled', 0, ?, ?)
               ON CONFLICT(buffer_id) DO UPDATE SET
                   scheduled_for = excluded.scheduled_for,
                   updated_at = excluded.updated_at
               WHERE buffer_processing_jobs.status = 'scheduled'""",
            (buffer_id, to_db(scheduled_for), ts, ts),
        )

    async def start(self, buffer_id: str, now: datetime) -> int:
        """Mark the job running for a freshly claimed buffer; returns the attempt number."""
        ts = to_db(now)
        await self._db.conn.execute(
            """INSERT INTO buffer_processing_jobs
               (buffer_id, scheduled_for, status, attempts, started_at, created_at, updated_at)
               VALUES (?, ?, 'running', 1, ?, ?, ?)
               ON CONFLICT(buffer_id) DO UPDATE SET
                   status = 'running',
                   attempts = buffer_processing_jobs.attempts + 1,
                   started_at = excluded.started_at,
                   updated_at = excluded.updated_at""",
            (buffer_id, ts, ts, ts, ts),
        )
        return await self._attempts(buffer_id)

    async def start_retry(self, buffer_id: str, now: datetime) -> Optional[int]:
        """Claim a re-queued job whose retry time has come. None if not eligible."""
        ts = to_db(now)
        cursor = await self._db.conn.execute(
            """UPDATE buffer_processing_jobs
               SET status = 'running', attempts = attempts + 1,
                   started_at = ?, updated_at = ?
               WHERE buffer_id = ? AND status = 'scheduled' AND scheduled_for <= ?""",
            (ts, ts, buffer_id, ts),
        )
        if cursor.rowcount != 1:
            return None
        return await self._attempts(buffer_id)

    async def complete(self, buffer_id: str, now: datetime) -> None:
        ts = to_db(now)
        await self._db.conn.execute(
            """UPDATE buffer_processing_jobs
               SET status = 'completed', finished_at = ?, last_error = NULL, updated_at = ?
               WHERE buffer_id = ?""",
            (ts, ts, buffer_id),
        )

    async def fail(self, buffer_id: str, now: datetime, error: str) -> None:
        ts = to_db(now)
        await self._db.conn.execute(
            """UPDATE buffer_processing_jobs
               SET status = 'failed', finished_at = ?, last_error = ?, updated_at = ?
               WHERE buffer_id = ?""",
            (ts, error, ts, buffer_id),
        )

    async def requeue(
        self, buffer_id: str, scheduled_for: datetime, now: datetime, error: str
    ) -> None:
        await self._db.conn.execute(
            """UPDATE buffer_processing_jobs
               SET status = 'scheduled', scheduled_for = ?, last_error = ?, updated_at = ?
               WHERE buffer_id = ? AND status = 'running'""",
            (to_db(scheduled_for), error, to_db(now), buffer_id),
        )

    async def delete_finished_before(self, cutoff: datetime) -> int:
        cursor = await self._db.conn.execute(
            """DELETE FROM buffer_processing_jobs
               WHERE status IN ('completed', 'failed') AND finished_at < ?""",
            (to_db(cutoff),),
        )
        return cursor.rowcount

    async def _attempts(self, buffer_id: str) -> int:
        row = await self._db.fetch_one(
            "SELECT attempts FROM buffer_processing_jobs WHERE buffer_id = ?", (buffer_id,)
        )
        return int(row["attempts"]) if row else 0

    # -- scheduler run log -----------------------------------------------

    async def log_run(self, run: SchedulerRun) -> int:
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """INSERT INTO scheduler_runs
                   (job_name, status, details_json, error_message, executed_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    run.job_name,
                    run.status,
                    json.dumps(run.details),
                    run.error_message,
                    to_db(run.executed_at),
                ),
            )
        return cursor.lastrowid  # type: ignore[return-value]

    async def last_run(self, job_name: str) -> Optional[SchedulerRun]:
        row = await self._db.fetch_one(
            """SELECT * FROM scheduler_runs WHERE job_name = ?
               ORDER BY executed_at DESC, id DESC LIMIT 1""",
            (job_name,),
        )
        if row is None:
            return None
        return SchedulerRun(
            id=row["id"],
            job_name=row["job_name"],
            status=row["status"],
            executed_at=from_db(row["executed_at"]),
            details=json.loads(row["details_json"]),
            error_message=row["error_message"],
        )

    async def delete_runs_before(self, cutoff: datetime) -> int:
        cursor = await self._db.conn.execute(
            "DELETE FROM scheduler_runs WHERE executed_at < ?", (to_db(cutoff),)
        )
        return cursor.rowcount

    # -- job toggles -----------------------------------------------------

    async def set_job_active(self, job_name: str, active: bool, now: datetime) -> None:
        async with self._db.transaction() as conn:
            await conn.execute(
                """INSERT INTO scheduler_job_settings (job_name, active, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(job_name) DO UPDATE
                   SET active = excluded.active, updated_at = excluded.updated_at""",
                (job_name, int(active), to_db(now)),
            )

    async def is_job_active(self, job_name: str) -> bool:
        """Jobs without a stored toggle are active."""
        row = await self._db.fetch_one(
            "SELECT active FROM scheduler_job_settings WHERE job_name = ?", (job_name,)
        )
        return row is None or bool(row["active"])
