"""APScheduler-based deadline scheduler: discovers elapsed buffers and dispatches them."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from chat_buffer.buffering.closer import BufferCloser, CloseResult
from chat_buffer.config import ProcessingConfig, RetentionConfig, SchedulerConfig
from chat_buffer.core.clock import Clock, utcnow
from chat_buffer.core.types import CloseOutcome
from chat_buffer.log import get_logger
from chat_buffer.services.base import Service
from chat_buffer.storage.buffer_repo import BufferRepository
from chat_buffer.storage.database import Database
from chat_buffer.storage.job_repo import JobRepository
from chat_buffer.storage.models import SchedulerRun

logger = get_logger(__name__)

TICK_JOB_ID = "process-message-buffers"
CLEANUP_JOB_ID = "cleanup-old-buffers"


@dataclass
class TickReport:
    reclaimed: int = 0
    completed: int = 0
    failed: int = 0
    retry_scheduled: int = 0
    not_eligible: int = 0
    superseded: int = 0
    errors: int = 0
    paused: bool = False

    def record(self, result: CloseResult) -> None:
        match result.outcome:
            case CloseOutcome.COMPLETED:
                self.completed += 1
            case CloseOutcome.FAILED:
                self.failed += 1
            case CloseOutcome.RETRY_SCHEDULED:
                self.retry_scheduled += 1
            case CloseOutcome.NOT_ELIGIBLE:
                self.not_eligible += 1
            case CloseOutcome.SUPERSEDED:
                self.superseded += 1

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class DeadlineScheduler(Service):
    """Polls the store on a fixed interval and hands elapsed buffers to the closer.

    Discovery only: eligibility is decided by the closer's compare-and-swap,
    so overlapping ticks (or several scheduler processes) never double-process
    a buffer.
    """

    def __init__(
        self,
        db: Database,
        buffer_repo: BufferRepository,
        job_repo: JobRepository,
        closer: BufferCloser,
        config: SchedulerConfig | None = None,
        processing: ProcessingConfig | None = None,
        retention: RetentionConfig | None = None,
        clock: Clock = utcnow,
    ):
        self._db = db
        self._buffers = buffer_repo
        self._jobs = job_repo
        self._closer = closer
        self._config = config or SchedulerConfig()
        self._processing = processing or ProcessingConfig()
        self._retention = retention or RetentionConfig()
        self._clock = clock
        self._scheduler = AsyncIOScheduler(timezone=self._config.timezone)

    @property
    def service_name(self) -> str:
        return "deadline_scheduler"

    def _trigger(self, job_id: str) -> BaseTrigger:
        if job_id == TICK_JOB_ID:
            return IntervalTrigger(
                seconds=self._config.poll_interval_seconds, timezone=self._config.timezone
            )
        return CronTrigger(
            hour=self._config.cleanup_hour, minute=0, timezone=self._config.timezone
        )

    async def start(self) -> None:
        self._scheduler.add_job(
            self.tick,
            self._trigger(TICK_JOB_ID),
            id=TICK_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self._scheduler.add_job(
            self.cleanup,
            self._trigger(CLEANUP_JOB_ID),
            id=CLEANUP_JOB_ID,
            replace_existing=True,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            "scheduler_started",
            poll_interval_seconds=self._config.poll_interval_seconds,
            timezone=self._config.timezone,
        )
        if not await self._jobs.is_job_active(TICK_JOB_ID):
            logger.warning("buffer_processing_paused", job_id=TICK_JOB_ID)

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")

    @property
    def running(self) -> bool:
        return self._scheduler.running

    async def pause(self) -> None:
        """Stop dispatching buffers; ingestion keeps buffering.

        The toggle is stored, so it reaches ticks in every process sharing
        the database and survives restarts.
        """
        await self._jobs.set_job_active(TICK_JOB_ID, False, self._clock())
        logger.info("buffer_processing_paused", job_id=TICK_JOB_ID)

    async def resume(self) -> None:
        await self._jobs.set_job_active(TICK_JOB_ID, True, self._clock())
        logger.info("buffer_processing_resumed", job_id=TICK_JOB_ID)

    async def tick(self) -> TickReport:
        """One discovery pass: reclaim stuck, close due, retry re-queued."""
        report = TickReport()
        if not await self._jobs.is_job_active(TICK_JOB_ID):
            logger.debug("scheduler_tick_skipped", reason="paused")
            report.paused = True
            return report

        executed_at = self._clock()
        try:
            await self._reclaim_stuck(report)

            now = self._clock()
            due = await self._buffers.list_due_buffer_ids(now, self._config.batch_limit)
            retries = await self._buffers.list_retry_buffer_ids(now, self._config.batch_limit)
            if due or retries:
                logger.info("buffers_due", due=len(due), retries=len(retries))

            calls: list[tuple[str, Callable[[str], Awaitable[CloseResult]]]] = [
                (buffer_id, self._closer.claim_and_close) for buffer_id in due
            ]
            calls += [(buffer_id, self._closer.retry) for buffer_id in retries]
            await self._run_bounded(calls, report)
        except Exception as e:
            logger.error("scheduler_tick_failed", error=str(e), **report.as_dict())
            await self._log_run(TICK_JOB_ID, executed_at, report.as_dict(), error=str(e))
            return report

        await self._log_run(TICK_JOB_ID, executed_at, report.as_dict())
        return report

    async def _reclaim_stuck(self, report: TickReport) -> None:
        cutoff = self._clock() - timedelta(minutes=self._processing.safety_timeout_minutes)
        for buffer_id in await self._buffers.list_stuck_buffer_ids(
            cutoff, self._config.batch_limit
        ):
            result = await self._closer.reclaim_stuck(buffer_id, cutoff)
            if result.claimed:
                report.reclaimed += 1
                report.record(result)

    async def _run_bounded(
        self,
        calls: list[tuple[str, Callable[[str], Awaitable[CloseResult]]]],
        report: TickReport,
    ) -> None:
        semaphore = asyncio.Semaphore(self._config.max_concurrent_dispatches)

        async def _one(buffer_id: str, fn: Callable[[str], Awaitable[CloseResult]]) -> None:
            async with semaphore:
                try:
                    result = await fn(buffer_id)
                except Exception as e:
                    report.errors += 1
                    logger.error("buffer_dispatch_error", buffer_id=buffer_id, error=str(e))
                    return
                report.record(result)

        await asyncio.gather(*(_one(buffer_id, fn) for buffer_id, fn in calls))

    async def cleanup(self) -> dict[str, int]:
        """Delete old completed buffers and stale job/log records."""
        now = self._clock()
        buffer_cutoff = now - timedelta(days=self._retention.completed_buffer_days)
        log_cutoff = now - timedelta(days=self._retention.log_days)
        try:
            async with self._db.transaction():
                deleted = {
                    "buffers": await self._buffers.delete_completed_before(buffer_cutoff),
                    "jobs": await self._jobs.delete_finished_before(log_cutoff),
                    "runs": await self._jobs.delete_runs_before(log_cutoff),
                }
        except Exception as e:
            logger.error("cleanup_failed", error=str(e))
            await self._log_run(CLEANUP_JOB_ID, now, {}, error=str(e))
            raise
        logger.info("cleanup_done", **deleted)
        await self._log_run(CLEANUP_JOB_ID, now, deleted)
        return deleted

    async def status(self) -> dict[str, Any]:
        """Jobs with their stored toggle and last recorded run, plus buffer counts.

        Works without a running scheduler: the trigger then comes from config
        and ``next_run_time`` stays empty.
        """
        jobs = []
        for job_id in (TICK_JOB_ID, CLEANUP_JOB_ID):
            job = self._scheduler.get_job(job_id)
            next_run = getattr(job, "next_run_time", None)
            trigger = job.trigger if job else self._trigger(job_id)
            last = await self._jobs.last_run(job_id)
            jobs.append(
                {
                    "id": job_id,
                    "scheduled": job is not None,
                    "active": await self._jobs.is_job_active(job_id),
                    "next_run_time": str(next_run) if next_run else None,
                    "trigger": str(trigger),
                    "interval_seconds": (
                        self._config.poll_interval_seconds if job_id == TICK_JOB_ID else None
                    ),
                    "last_execution": str(last.executed_at) if last else None,
                    "last_status": last.status if last else None,
                    "last_error": last.error_message if last else None,
                }
            )
        return {
            "service": self.service_name,
            "running": self.running,
            "jobs": jobs,
            "buffers": await self._buffers.count_by_status(),
        }

    async def _log_run(
        self,
        job_name: str,
        executed_at,
        details: dict[str, Any],
        error: str | None = None,
    ) -> None:
        try:
            await self._jobs.log_run(
                SchedulerRun(
                    job_name=job_name,
                    status="error" if error else "ok",
                    executed_at=executed_at,
                    details=details,
                    error_message=error,
                )
            )
        except Exception as e:
            logger.warning("scheduler_run_log_failed", job_name=job_name, error=str(e))
