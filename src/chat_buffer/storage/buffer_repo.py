"""Buffer session, buffered message and conversation-state persistence.

Mutating methods never commit on their own: callers run them inside
``Database.transaction()`` so that a find-or-create, an append and a claim
each land as one atomic unit. Every status change is a guarded UPDATE whose
row count tells the caller whether it won.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Optional

from chat_buffer.core.clock import from_db, to_db
from chat_buffer.core.types import (
    BufferStatus,
    ContentType,
    ConversationPhase,
)
from chat_buffer.log import get_logger
from chat_buffer.messenger.models import InboundMessage
from chat_buffer.storage.database import Database
from chat_buffer.storage.models import (
    BufferedMessage,
    BufferSession,
    ConversationState,
)

logger = get_logger(__name__)


class BufferRepository:
    """CRUD and compare-and-swap transitions over message buffers."""

    def __init__(self, db: Database):
        self._db = db

    # -- buffer sessions -------------------------------------------------

    async def get_buffer(self, buffer_id: str) -> Optional[BufferSession]:
        row = await self._db.fetch_one(
            "SELECT * FROM message_buffers WHERE id = ?", (buffer_id,)
        )
        return self._row_to_buffer(row) if row else None

    async def find_active_buffer(self, conversation_id: str) -> Optional[BufferSession]:
        row = await self._db.fetch_one(
            "SELECT * FROM message_buffers WHERE conversation_id = ? AND status = 'active'",
            (conversation_id,),
        )
        return self._row_to_buffer(row) if row else None

    async def create_buffer(
        self,
        conversation_id: str,
        owner_id: Optional[str],
        now: datetime,
        closes_at: datetime,
    ) -> Optional[str]:
        """Open an active buffer. Returns None if one already exists."""
        buffer_id = str(uuid.uuid4())
        ts = to_db(now)
        cursor = await self._db.conn.execute(
            """INSERT INTO message_buffers
               (id, conversation_id, owner_id, status, opened_at,
                last_message_at, closes_at, message_count, updated_at)
               VALUES (?, ?, ?, 'active', ?, ?, ?, 0, ?)
               ON CONFLICT DO NOTHING""",
            (buffer_id, conversation_id, owner_id, ts, ts, to_db(closes_at), ts),
        )
        if cursor.rowcount != 1:
            return None
        logger.info("buffer_created", buffer_id=buffer_id, conversation_id=conversation_id)
        return buffer_id

    async def bump_active_buffer(
        self,
        buffer_id: str,
        now: datetime,
        closes_at: datetime,
        owner_id: Optional[str] = None,
    ) -> bool:
        """Advance the sliding deadline; fails if the buffer left 'active'."""
        ts = to_db(now)
        cursor = await self._db.conn.execute(
            """UPDATE message_buffers
               SET last_message_at = ?, closes_at = ?,
                   message_count = message_count + 1,
                   owner_id = COALESCE(owner_id, ?),
                   updated_at = ?
               WHERE id = ? AND status = 'active'""",
            (ts, to_db(closes_at), owner_id, ts, buffer_id),
        )
        return cursor.rowcount == 1

    async def claim_buffer(self, buffer_id: str, now: datetime, claim_token: str) -> bool:
        """Active -> processing, only once the deadline has passed."""
        ts = to_db(now)
        cursor = await self._db.conn.execute(
            """UPDATE message_buffers
               SET status = 'processing', claimed_at = ?, claim_token = ?, updated_at = ?
               WHERE id = ? AND status = 'active' AND closes_at <= ?""",
            (ts, claim_token, ts, buffer_id, ts),
        )
        return cursor.rowcount == 1

    async def renew_claim(self, buffer_id: str, now: datetime, claim_token: str) -> bool:
        """Hand a processing buffer to a new worker (retry path)."""
        ts = to_db(now)
        cursor = await self._db.conn.execute(
            """UPDATE message_buffers
               SET claimed_at = ?, claim_token = ?, updated_at = ?
               WHERE id = ? AND status = 'processing' AND claim_token IS NULL""",
            (ts, claim_token, ts, buffer_id),
        )
        return cursor.rowcount == 1

    async def complete_buffer(self, buffer_id: str, claim_token: str, now: datetime) -> bool:
        ts = to_db(now)
        cursor = await self._db.conn.execute(
            """UPDATE message_buffers
               SET status = 'completed', processed_at = ?, claim_token = NULL,
                   last_error = NULL, updated_at = ?
               WHERE id = ? AND status = 'processing' AND claim_token = ?""",
            (ts, ts, buffer_id, claim_token),
        )
        return cursor.rowcount == 1

    async def fail_buffer(
        self,
        buffer_id: str,
        claim_token: Optional[str],
        now: datetime,
        error: str,
    ) -> bool:
        """Processing -> failed. A None token matches a released claim."""
        ts = to_db(now)
        cursor = await self._db.conn.execute(
            """UPDATE message_buffers
               SET status = 'failed', processed_at = ?, claim_token = NULL,
                   last_error = ?, updated_at = ?
               WHERE id = ? AND status = 'processing' AND claim_token IS ?""",
            (ts, error, ts, buffer_id, claim_token),
        )
        return cursor.rowcount == 1

    async def release_claim(
        self,
        buffer_id: str,
        claim_token: Optional[str],
        now: datetime,
        error: str,
    ) -> bool:
        """Drop the worker's claim but stay in processing, awaiting a retry."""
        ts = to_db(now)
        cursor = await self._db.conn.execute(
            """UPDATE message_buffers
               SET claim_token = NULL, last_error = ?, updated_at = ?
               WHERE id = ? AND status = 'processing' AND claim_token IS ?""",
            (error, ts, buffer_id, claim_token),
        )
        return cursor.rowcount == 1

    async def release_stale_claim(
        self,
        buffer_id: str,
        cutoff: datetime,
        now: datetime,
        error: str,
    ) -> bool:
        """Take a claim away from a worker that has held it since before cutoff."""
        ts = to_db(now)
        cursor = await self._db.conn.execute(
            """UPDATE message_buffers
               SET claim_token = NULL, last_error = ?, updated_at = ?
               WHERE id = ? AND status = 'processing'
                 AND claim_token IS NOT NULL AND claimed_at <= ?""",
            (error, ts, buffer_id, to_db(cutoff)),
        )
        return cursor.rowcount == 1

    async def list_due_buffer_ids(self, now: datetime, limit: int = 50) -> list[str]:
        rows = await self._db.fetch_all(
            """SELECT id FROM message_buffers
               WHERE status = 'active' AND closes_at <= ?
               ORDER BY closes_at ASC
               LIMIT ?""",
            (to_db(now), limit),
        )
        return [row["id"] for row in rows]

    async def list_stuck_buffer_ids(self, cutoff: datetime, limit: int = 50) -> list[str]:
        rows = await self._db.fetch_all(
            """SELECT id FROM message_buffers
               WHERE status = 'processing' AND claim_token IS NOT NULL
                 AND claimed_at <= ?
               ORDER BY claimed_at ASC
               LIMIT ?""",
            (to_db(cutoff), limit),
        )
        return [row["id"] for row in rows]

    async def list_retry_buffer_ids(self, now: datetime, limit: int = 50) -> list[str]:
        rows = await self._db.fetch_all(
            """SELECT b.id FROM message_buffers b
               JOIN buffer_processing_jobs j ON j.buffer_id = b.id
               WHERE b.status = 'processing' AND b.claim_token IS NULL
                 AND j.status = 'scheduled' AND j.scheduled_for <= ?
               ORDER BY j.scheduled_for ASC
               LIMIT ?""",
            (to_db(now), limit),
        )
        return [row["id"] for row in rows]

    async def delete_completed_before(self, cutoff: datetime) -> int:
        """Delete completed buffers (messages and jobs cascade)."""
        cursor = await self._db.conn.execute(
            "DELETE FROM message_buffers WHERE status = 'completed' AND processed_at < ?",
            (to_db(cutoff),),
        )
        return cursor.rowcount

    async def count_by_status(self) -> dict[str, int]:
        rows = await self._db.fetch_all(
            "SELECT status, COUNT(*) AS n FROM message_buffers GROUP BY status"
        )
        counts = {status.value: 0 for status in BufferStatus}
        for row in rows:
            counts[row["status"]] = row["n"]
        return counts

    # -- buffered messages -----------------------------------------------

    async def has_message(self, buffer_id: str, external_message_id: str) -> bool:
        row = await self._db.fetch_one(
            "SELECT 1 FROM buffered_messages WHERE buffer_id = ? AND external_message_id = ?",
            (buffer_id, external_message_id),
        )
        return row is not None

    async def insert_message(self, buffer_id: str, message: InboundMessage, now: datetime) -> bool:
        """Insert a message; a replayed external id is silently ignored."""
        cursor = await self._db.conn.execute(
            """INSERT INTO buffered_messages
               (id, buffer_id, external_message_id, content_type, content,
                attachments_json, sender_json, conversation_json, received_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(buffer_id, external_message_id) DO NOTHING""",
            (
                str(uuid.uuid4()),
                buffer_id,
                message.external_message_id,
                str(message.content_type),
                message.content,
                json.dumps(message.attachments),
                json.dumps(message.sender_info),
                json.dumps(message.conversation_info),
                to_db(message.received_at),
                to_db(now),
            ),
        )
        return cursor.rowcount == 1

    async def get_messages(self, buffer_id: str) -> list[BufferedMessage]:
        """All messages of a buffer in receipt order, ties by insertion order."""
        rows = await self._db.fetch_all(
            """SELECT * FROM buffered_messages
               WHERE buffer_id = ?
               ORDER BY received_at ASC, rowid ASC""",
            (buffer_id,),
        )
        return [self._row_to_message(row) for row in rows]

    # -- conversation state ----------------------------------------------

    async def get_state(self, conversation_id: str) -> Optional[ConversationState]:
        row = await self._db.fetch_one(
            "SELECT * FROM conversation_states WHERE conversation_id = ?",
            (conversation_id,),
        )
        if row is None:
            return None
        return ConversationState(
            conversation_id=row["conversation_id"],
            state=ConversationPhase(row["state"]),
            active_buffer_id=row["active_buffer_id"],
            owner_id=row["owner_id"],
            last_message_at=from_db(row["last_message_at"]),
            message_count=row["message_count"],
        )

    async def mark_conversation_buffering(
        self,
        conversation_id: str,
        buffer_id: str,
        owner_id: Optional[str],
        now: datetime,
    ) -> None:
        ts = to_db(now)
        await self._db.conn.execute(
            """INSERT INTO conversation_states
               (conversation_id, owner_id, active_buffer_id, state,
                last_message_at, message_count, updated_at)
               VALUES (?, ?, ?, 'buffering', ?, 1, ?)
               ON CONFLICT(conversation_id) DO UPDATE SET
                   owner_id = COALESCE(excluded.owner_id, conversation_states.owner_id),
                   active_buffer_id = excluded.active_buffer_id,
                   state = 'buffering',
                   last_message_at = excluded.last_message_at,
                   message_count = conversation_states.message_count + 1,
                   updated_at = excluded.updated_at""",
            (conversation_id, owner_id, buffer_id, ts, ts),
        )

    async def mark_conversation_processing(self, buffer_id: str, now: datetime) -> None:
        await self._db.conn.execute(
            """UPDATE conversation_states SET state = 'processing', updated_at = ?
               WHERE active_buffer_id = ?""",
            (to_db(now), buffer_id),
        )

    async def release_conversation(self, buffer_id: str, now: datetime) -> None:
        """Back to idle, unless a newer buffer already took the pointer."""
        await self._db.conn.execute(
            """UPDATE conversation_states
               SET state = 'idle', active_buffer_id = NULL, updated_at = ?
               WHERE active_buffer_id = ?""",
            (to_db(now), buffer_id),
        )

    # -- row mapping -----------------------------------------------------

    @staticmethod
    def _row_to_buffer(row) -> BufferSession:
        return BufferSession(
            id=row["id"],
            conversation_id=row["conversation_id"],
            owner_id=row["owner_id"],
            status=BufferStatus(row["status"]),
            opened_at=from_db(row["opened_at"]),
            last_message_at=from_db(row["last_message_at"]),
            closes_at=from_db(row["closes_at"]),
            message_count=row["message_count"],
            claimed_at=from_db(row["claimed_at"]),
            claim_token=row["claim_token"],
            processed_at=from_db(row["processed_at"]),
            last_error=row["last_error"],
        )

    @staticmethod
    def _row_to_message(row) -> BufferedMessage:
        return BufferedMessage(
            id=row["id"],
            buffer_id=row["buffer_id"],
            external_message_id=row["external_message_id"],
            content_type=ContentType(row["content_type"]),
            received_at=from_db(row["received_at"]),
            content=row["content"],
            attachments=json.loads(row["attachments_json"]),
            sender_info=json.loads(row["sender_json"]),
            conversation_info=json.loads(row["conversation_json"]),
        )
