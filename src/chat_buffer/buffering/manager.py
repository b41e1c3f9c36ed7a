"""Buffer session manager: one active buffer per conversation, sliding deadline."""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from chat_buffer.core.clock import Clock, utcnow
from chat_buffer.log import get_logger
from chat_buffer.messenger.models import InboundMessage
from chat_buffer.storage.buffer_repo import BufferRepository
from chat_buffer.storage.database import Database
from chat_buffer.storage.job_repo import JobRepository
from chat_buffer.storage.models import BufferSession

logger = get_logger(__name__)

# find-or-create is retried once when a concurrent claim or create wins
MAX_ATTACH_ATTEMPTS = 2


class BufferRaceError(RuntimeError):
    """Find-or-create lost every attempt to concurrent writers."""


class BufferSessionManager:
    """Attaches inbound messages to the conversation's active buffer."""

    def __init__(
        self,
        db: Database,
        buffer_repo: BufferRepository,
        job_repo: JobRepository,
        window_seconds: float = 30.0,
        clock: Clock = utcnow,
    ):
        self._db = db
        self._buffers = buffer_repo
        self._jobs = job_repo
        self._window = timedelta(seconds=window_seconds)
        self._clock = clock

    async def attach(
        self,
        conversation_id: str,
        message: InboundMessage,
        owner_id: Optional[str] = None,
    ) -> BufferSession:
        """Append a message to the active buffer, opening one if needed.

        Every accepted message pushes the deadline to ``now + window``. A
        replayed ``external_message_id`` is a no-op. If the active buffer is
        claimed for closing while we are attaching, a fresh buffer is opened
        instead of writing into the closing one.
        """
        for attempt in range(1, MAX_ATTACH_ATTEMPTS + 1):
            session = await self._try_attach(conversation_id, message, owner_id)
            if session is not None:
                return session
            logger.info(
                "buffer_attach_retry",
                conversation_id=conversation_id,
                external_message_id=message.external_message_id,
                attempt=attempt,
            )
        raise BufferRaceError(
            f"Could not attach message {message.external_message_id} "
            f"to conversation {conversation_id}"
        )

    async def _try_attach(
        self,
        conversation_id: str,
        message: InboundMessage,
        owner_id: Optional[str],
    ) -> Optional[BufferSession]:
        async with self._db.transaction():
            now = self._clock()
            closes_at = now + self._window

            buffer_id = await self._route(conversation_id)
            if buffer_id is not None:
                if await self._buffers.has_message(buffer_id, message.external_message_id):
                    logger.info(
                        "duplicate_message_ignored",
                        buffer_id=buffer_id,
                        external_message_id=message.external_message_id,
                    )
                    return await self._buffers.get_buffer(buffer_id)
                if not await self._buffers.bump_active_buffer(
                    buffer_id, now, closes_at, owner_id
                ):
                    # claimed between lookup and bump; open a new buffer below
                    logger.info(
                        "active_buffer_claimed_during_attach",
                        buffer_id=buffer_id,
                        conversation_id=conversation_id,
                    )
                    buffer_id = None

            if buffer_id is None:
                buffer_id = await self._buffers.create_buffer(
                    conversation_id, owner_id, now, closes_at
                )
                if buffer_id is None:
                    return None
                await self._buffers.bump_active_buffer(buffer_id, now, closes_at, owner_id)

            await self._buffers.insert_message(buffer_id, message, now)
            await self._jobs.schedule(buffer_id, closes_at, now)
            await self._buffers.mark_conversation_buffering(
                conversation_id, buffer_id, owner_id, now
            )
            session = await self._buffers.get_buffer(buffer_id)

        logger.debug(
            "message_buffered",
            buffer_id=buffer_id,
            conversation_id=conversation_id,
            external_message_id=message.external_message_id,
            message_count=session.message_count if session else None,
            closes_at=str(closes_at),
        )
        return session

    async def _route(self, conversation_id: str) -> Optional[str]:
        """Active buffer id via the conversation pointer, falling back to a lookup."""
        state = await self._buffers.get_state(conversation_id)
        if state is not None and state.active_buffer_id:
            candidate = await self._buffers.get_buffer(state.active_buffer_id)
            if candidate is not None and candidate.is_active:
                return candidate.id
        active = await self._buffers.find_active_buffer(conversation_id)
        return active.id if active else None

    async def get_session(self, buffer_id: str) -> Optional[BufferSession]:
        return await self._buffers.get_buffer(buffer_id)
