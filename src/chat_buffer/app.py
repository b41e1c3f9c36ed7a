"""Application orchestrator - wires all components and manages lifecycle."""

from __future__ import annotations

from typing import Optional

from chat_buffer.buffering.closer import BufferCloser
from chat_buffer.buffering.manager import BufferSessionManager
from chat_buffer.buffering.processor import ConversationProcessor, create_processor
from chat_buffer.config import AppConfig
from chat_buffer.core.clock import Clock, utcnow
from chat_buffer.core.flags import FeatureFlags
from chat_buffer.log import get_logger
from chat_buffer.messenger.handler import InboundHandler, OwnerResolver
from chat_buffer.services.scheduler import DeadlineScheduler
from chat_buffer.storage.buffer_repo import BufferRepository
from chat_buffer.storage.database import Database
from chat_buffer.storage.job_repo import JobRepository

logger = get_logger(__name__)


class BufferApp:
    """Top-level application orchestrator."""

    def __init__(
        self,
        config: AppConfig,
        processor: Optional[ConversationProcessor] = None,
        owner_resolver: Optional[OwnerResolver] = None,
        clock: Clock = utcnow,
    ):
        self.config = config
        self.flags = FeatureFlags(config.feature_flags)
        self.db = Database(config.storage.db_path, config.storage.busy_timeout_ms)
        self.buffer_repo = BufferRepository(self.db)
        self.job_repo = JobRepository(self.db)
        self.processor = processor or create_processor(config.processor)
        self.manager = BufferSessionManager(
            self.db,
            self.buffer_repo,
            self.job_repo,
            window_seconds=config.buffer.window_seconds,
            clock=clock,
        )
        self.closer = BufferCloser(
            self.db,
            self.buffer_repo,
            self.job_repo,
            self.processor,
            config=config.processing,
            flags=self.flags,
            clock=clock,
        )
        self.scheduler = DeadlineScheduler(
            self.db,
            self.buffer_repo,
            self.job_repo,
            self.closer,
            config=config.scheduler,
            processing=config.processing,
            retention=config.retention,
            clock=clock,
        )
        self.handler = InboundHandler(
            self.manager,
            self.processor,
            flags=self.flags,
            owner_resolver=owner_resolver,
            processing=config.processing,
            clock=clock,
        )

    async def open(self) -> None:
        """Open the store without starting the scheduler (one-shot commands)."""
        await self.db.initialize()

    async def start(self) -> None:
        """Initialize and start all components."""
        await self.open()
        await self.scheduler.start()
        logger.info(
            "chat_buffer_started",
            window_seconds=self.config.buffer.window_seconds,
            processor=self.config.processor.backend,
            flags=self.flags.as_dict(),
        )

    async def stop(self) -> None:
        """Gracefully shut down all components."""
        try:
            await self.scheduler.stop()
        except Exception as e:
            logger.error("scheduler_stop_error", error=str(e))
        await self.processor.aclose()
        await self.db.close()
        logger.info("chat_buffer_stopped")
