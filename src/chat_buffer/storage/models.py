"""Data models for storage layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from chat_buffer.core.types import (
    BufferStatus,
    ContentType,
    ConversationPhase,
    JobStatus,
)


@dataclass
class BufferSession:
    id: str
    conversation_id: str
    owner_id: Optional[str]
    status: BufferStatus
    opened_at: datetime
    last_message_at: datetime
    closes_at: datetime
    message_count: int = 0
    claimed_at: Optional[datetime] = None
    claim_token: Optional[str] = None
    processed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == BufferStatus.ACTIVE


@dataclass
class BufferedMessage:
    id: str
    buffer_id: str
    external_message_id: str
    content_type: ContentType
    received_at: datetime
    content: Optional[str] = None
    attachments: list[dict[str, Any]] = field(default_factory=list)
    sender_info: dict[str, Any] = field(default_factory=dict)
    conversation_info: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConversationState:
    conversation_id: str
    state: ConversationPhase
    active_buffer_id: Optional[str] = None  # lookup only, not ownership
    owner_id: Optional[str] = None
    last_message_at: Optional[datetime] = None
    message_count: int = 0


@dataclass
class ScheduledClose:
    buffer_id: str
    scheduled_for: datetime
    status: JobStatus
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass
class SchedulerRun:
    job_name: str
    status: str  # "ok" | "error"
    executed_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    id: Optional[int] = None
