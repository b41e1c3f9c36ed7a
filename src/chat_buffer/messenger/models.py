"""Normalized inbound message model shared by all webhook sources."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from chat_buffer.core.types import ContentType


@dataclass(frozen=True, slots=True)
class InboundMessage:
    conversation_id: str
    external_message_id: str  # dedupe key from the chat platform
    content_type: ContentType
    received_at: datetime
    content: str | None = None
    attachments: list[dict[str, Any]] = field(default_factory=list)
    sender_info: dict[str, Any] = field(default_factory=dict)
    conversation_info: dict[str, Any] = field(default_factory=dict)
