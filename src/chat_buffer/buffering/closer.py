"""Buffer closer: claims elapsed buffers and hands them off exactly once."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from chat_buffer.buffering.aggregate import AggregatedConversation, build_aggregate
from chat_buffer.buffering.processor import ConversationProcessor
from chat_buffer.config import ProcessingConfig
from chat_buffer.core.clock import Clock, utcnow
from chat_buffer.core.flags import FeatureFlags, Flag
from chat_buffer.core.types import CloseOutcome
from chat_buffer.log import get_logger
from chat_buffer.storage.buffer_repo import BufferRepository
from chat_buffer.storage.database import Database
from chat_buffer.storage.job_repo import JobRepository

logger = get_logger(__name__)


@dataclass
class CloseResult:
    buffer_id: str
    outcome: CloseOutcome
    aggregate: Optional[AggregatedConversation] = None
    attempt: int = 0
    error: Optional[str] = None

    @property
    def claimed(self) -> bool:
        return self.outcome != CloseOutcome.NOT_ELIGIBLE


class BufferCloser:
    """Claim (CAS) -> materialize -> process -> complete/fail.

    The claim commits before messages are read, and messages are read before
    the processor is called, so a worker that dies mid-way leaves the buffer
    in ``processing`` where the scheduler's safety-timeout reclaim finds it.
    """

    def __init__(
        self,
        db: Database,
        buffer_repo: BufferRepository,
        job_repo: JobRepository,
        processor: ConversationProcessor,
        config: ProcessingConfig | None = None,
        flags: FeatureFlags | None = None,
        clock: Clock = utcnow,
    ):
        self._db = db
        self._buffers = buffer_repo
        self._jobs = job_repo
        self._processor = processor
        self._config = config or ProcessingConfig()
        self._flags = flags or FeatureFlags()
        self._clock = clock

    async def claim_and_close(self, buffer_id: str) -> CloseResult:
        """Close an Active buffer whose deadline has passed.

        Returns ``NOT_ELIGIBLE`` without side effects when another worker
        already claimed it or a new message pushed the deadline past now.
        """
        token = uuid.uuid4().hex
        async with self._db.transaction():
            now = self._clock()
            if not await self._buffers.claim_buffer(buffer_id, now, token):
                return CloseResult(buffer_id, CloseOutcome.NOT_ELIGIBLE)
            attempt = await self._jobs.start(buffer_id, now)
            await self._buffers.mark_conversation_processing(buffer_id, now)
        logger.info("buffer_claimed", buffer_id=buffer_id, attempt=attempt)
        return await self._dispatch(buffer_id, token, attempt)

    async def retry(self, buffer_id: str) -> CloseResult:
        """Run another attempt for a buffer whose job was re-queued."""
        token = uuid.uuid4().hex
        try:
            async with self._db.transaction():
                now = self._clock()
                attempt = await self._jobs.start_retry(buffer_id, now)
                if attempt is None:
                    return CloseResult(buffer_id, CloseOutcome.NOT_ELIGIBLE)
                if not await self._buffers.renew_claim(buffer_id, now, token):
                    # buffer already left processing; roll back the job claim
                    raise _RetryNotEligible(buffer_id)
        except _RetryNotEligible:
            return CloseResult(buffer_id, CloseOutcome.NOT_ELIGIBLE)
        logger.info("buffer_retry_claimed", buffer_id=buffer_id, attempt=attempt)
        return await self._dispatch(buffer_id, token, attempt)

    async def reclaim_stuck(self, buffer_id: str, cutoff: datetime) -> CloseResult:
        """Take a buffer away from a worker stuck past the safety timeout."""
        error = (
            f"Processing exceeded safety timeout of "
            f"{self._config.safety_timeout_minutes:g} minutes"
        )
        async with self._db.transaction():
            now = self._clock()
            if not await self._buffers.release_stale_claim(buffer_id, cutoff, now, error):
                return CloseResult(buffer_id, CloseOutcome.NOT_ELIGIBLE)
            job = await self._jobs.get(buffer_id)
            attempts = job.attempts if job else 0
            outcome = await self._settle_failure(buffer_id, None, attempts, now, error)
        logger.warning(
            "stuck_buffer_reclaimed",
            buffer_id=buffer_id,
            attempts=attempts,
            outcome=str(outcome),
        )
        return CloseResult(buffer_id, outcome, attempt=attempts, error=error)

    async def _dispatch(self, buffer_id: str, token: str, attempt: int) -> CloseResult:
        session = await self._buffers.get_buffer(buffer_id)
        if session is None:
            # deleted underneath us; nothing left to hand off
            return CloseResult(buffer_id, CloseOutcome.SUPERSEDED, attempt=attempt)
        messages = await self._buffers.get_messages(buffer_id)

        if not messages:
            logger.info("buffer_empty_completed", buffer_id=buffer_id)
            return await self._finish_success(buffer_id, token, attempt, None)

        aggregate = build_aggregate(
            session,
            messages,
            enhanced=self._flags.is_enabled(Flag.ENHANCED_AI_PROCESSING),
            hints={
                Flag.RESPONSE_QUALITY_ENHANCEMENT.value: self._flags.is_enabled(
                    Flag.RESPONSE_QUALITY_ENHANCEMENT
                ),
            },
        )

        try:
            if self._flags.is_enabled(Flag.TYPING_INDICATORS):
                await self._notify_typing(session.conversation_id)
            await asyncio.wait_for(
                self._processor.process(aggregate),
                timeout=self._config.processor_timeout_seconds,
            )
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                error = (
                    f"Processor timed out after "
                    f"{self._config.processor_timeout_seconds:g}s"
                )
            else:
                error = f"{type(e).__name__}: {e}"
            return await self._finish_failure(buffer_id, token, attempt, error, aggregate)

        return await self._finish_success(buffer_id, token, attempt, aggregate)

    async def _notify_typing(self, conversation_id: str) -> None:
        try:
            await self._processor.notify_typing(conversation_id)
        except Exception as e:
            logger.warning("typing_indicator_failed", conversation_id=conversation_id, error=str(e))

    async def _finish_success(
        self,
        buffer_id: str,
        token: str,
        attempt: int,
        aggregate: Optional[AggregatedConversation],
    ) -> CloseResult:
        async with self._db.transaction():
            now = self._clock()
            completed = await self._buffers.complete_buffer(buffer_id, token, now)
            if completed:
                await self._jobs.complete(buffer_id, now)
                await self._buffers.release_conversation(buffer_id, now)
        if not completed:
            logger.warning("buffer_completion_superseded", buffer_id=buffer_id, attempt=attempt)
            return CloseResult(buffer_id, CloseOutcome.SUPERSEDED, aggregate, attempt)
        logger.info(
            "buffer_completed",
            buffer_id=buffer_id,
            attempt=attempt,
            message_count=len(aggregate.messages) if aggregate else 0,
        )
        return CloseResult(buffer_id, CloseOutcome.COMPLETED, aggregate, attempt)

    async def _finish_failure(
        self,
        buffer_id: str,
        token: str,
        attempt: int,
        error: str,
        aggregate: AggregatedConversation,
    ) -> CloseResult:
        async with self._db.transaction():
            now = self._clock()
            buffer = await self._buffers.get_buffer(buffer_id)
            if buffer is None or buffer.claim_token != token:
                outcome = CloseOutcome.SUPERSEDED
            else:
                outcome = await self._settle_failure(buffer_id, token, attempt, now, error)
        log = logger.error if outcome == CloseOutcome.FAILED else logger.warning
        log(
            "buffer_processing_failed",
            buffer_id=buffer_id,
            attempt=attempt,
            max_attempts=self._config.max_attempts,
            outcome=str(outcome),
            error=error,
        )
        return CloseResult(buffer_id, outcome, aggregate, attempt, error)

    async def _settle_failure(
        self,
        buffer_id: str,
        token: Optional[str],
        attempts: int,
        now: datetime,
        error: str,
    ) -> CloseOutcome:
        """Re-queue while attempts remain, otherwise fail permanently.

        Must run inside a transaction.
        """
        if attempts < self._config.max_attempts:
            await self._buffers.release_claim(buffer_id, token, now, error)
            retry_at = now + timedelta(seconds=self._config.retry_delay_seconds)
            await self._jobs.requeue(buffer_id, retry_at, now, error)
            return CloseOutcome.RETRY_SCHEDULED
        await self._buffers.fail_buffer(buffer_id, token, now, error)
        await self._jobs.fail(buffer_id, now, error)
        await self._buffers.release_conversation(buffer_id, now)
        return CloseOutcome.FAILED


class _RetryNotEligible(Exception):
    pass
