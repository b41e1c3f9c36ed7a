from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import pytest
import pytest_asyncio

from chat_buffer.buffering.aggregate import AggregatedConversation
from chat_buffer.buffering.closer import BufferCloser
from chat_buffer.buffering.manager import BufferSessionManager
from chat_buffer.buffering.processor import ConversationProcessor
from chat_buffer.config import ProcessingConfig, RetentionConfig, SchedulerConfig
from chat_buffer.core.flags import FeatureFlags
from chat_buffer.core.types import ContentType
from chat_buffer.messenger.models import InboundMessage
from chat_buffer.services.scheduler import DeadlineScheduler
from chat_buffer.storage.buffer_repo import BufferRepository
from chat_buffer.storage.database import Database
from chat_buffer.storage.job_repo import JobRepository

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock; ``clock.at(32)`` jumps to T0 + 32s."""

    def __init__(self, start: datetime = T0):
        self.start = start
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def at(self, seconds: float) -> datetime:
        self.now = self.start + timedelta(seconds=seconds)
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingProcessor(ConversationProcessor):
    """Records every aggregate; optionally fails or runs a hook first."""

    def __init__(self):
        self.calls: list[AggregatedConversation] = []
        self.typing: list[str] = []
        self.fail_with: Optional[Exception] = None
        self.hook: Optional[Callable[[AggregatedConversation], Awaitable[None]]] = None

    async def process(self, conversation: AggregatedConversation) -> None:
        self.calls.append(conversation)
        if self.hook is not None:
            await self.hook(conversation)
        if self.fail_with is not None:
            raise self.fail_with

    async def notify_typing(self, conversation_id: str) -> None:
        self.typing.append(conversation_id)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def processor() -> RecordingProcessor:
    return RecordingProcessor()


@pytest.fixture
def processing_config() -> ProcessingConfig:
    return ProcessingConfig()


@pytest.fixture
def flags() -> FeatureFlags:
    return FeatureFlags()


@pytest_asyncio.fixture
async def db():
    database = Database(":memory:")
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def buffer_repo(db) -> BufferRepository:
    return BufferRepository(db)


@pytest.fixture
def job_repo(db) -> JobRepository:
    return JobRepository(db)


@pytest.fixture
def manager(db, buffer_repo, job_repo, clock) -> BufferSessionManager:
    return BufferSessionManager(db, buffer_repo, job_repo, window_seconds=30.0, clock=clock)


@pytest.fixture
def closer(db, buffer_repo, job_repo, processor, processing_config, flags, clock) -> BufferCloser:
    return BufferCloser(
        db,
        buffer_repo,
        job_repo,
        processor,
        config=processing_config,
        flags=flags,
        clock=clock,
    )


@pytest.fixture
def scheduler(db, buffer_repo, job_repo, closer, processing_config, clock) -> DeadlineScheduler:
    return DeadlineScheduler(
        db,
        buffer_repo,
        job_repo,
        closer,
        config=SchedulerConfig(),
        processing=processing_config,
        retention=RetentionConfig(),
        clock=clock,
    )


@pytest.fixture
def make_message(clock):
    """Factory for inbound messages; received_at defaults to the clock."""

    def _make(
        external_id: str,
        content: Optional[str] = "hello",
        conversation_id: str = "conv-1",
        received_at: Optional[datetime] = None,
        content_type: ContentType = ContentType.TEXT,
        attachments: Optional[list[dict]] = None,
    ) -> InboundMessage:
        return InboundMessage(
            conversation_id=conversation_id,
            external_message_id=external_id,
            content_type=content_type,
            received_at=received_at or clock(),
            content=content,
            attachments=attachments or [],
            sender_info={"id": 42, "name": "Ana"},
            conversation_info={"id": conversation_id, "status": "open"},
        )

    return _make


@pytest.fixture
def webhook_payload():
    """Factory for a Chatwoot ``message_created`` webhook from WhatsApp."""

    def _make(**overrides) -> dict:
        payload = {
            "id": 1001,
            "event": "message_created",
            "content": "Hola, quiero agendar una cita",
            "message_type": "incoming",
            "content_type": "text",
            "attachments": [],
            "created_at": "2026-03-01T12:00:00Z",
            "conversation": {
                "id": 77,
                "status": "open",
                "channel": "Channel::Whatsapp",
                "messages_count": 3,
            },
            "sender": {
                "id": 42,
                "name": "Ana",
                "phone_number": "+5215555555555",
                "identifier": "5215555555555@s.whatsapp.net",
            },
            "account": {"id": 1, "name": "Clinic"},
        }
        payload.update(overrides)
        return payload

    return _make
