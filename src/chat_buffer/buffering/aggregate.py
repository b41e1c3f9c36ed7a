"""The aggregated unit of work handed to the conversation processor."""

from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from chat_buffer.core.types import ContentType
from chat_buffer.messenger.models import InboundMessage
from chat_buffer.storage.models import BufferedMessage, BufferSession


@dataclass(frozen=True, slots=True)
class OrderedMessage:
    position: int
    external_message_id: str
    content_type: ContentType
    received_at: datetime
    content: Optional[str] = None
    attachments: list[dict[str, Any]] = field(default_factory=list)
    sender_info: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AggregatedContext:
    """Derived summary of a burst: joined text, per-type counts, time span."""

    message_count: int
    time_span_seconds: float
    combined_text: str
    type_counts: dict[str, int]
    attachment_count: int


@dataclass(frozen=True, slots=True)
class AggregatedConversation:
    buffer_id: Optional[str]  # None when buffering was bypassed
    conversation_id: str
    owner_id: Optional[str]
    messages: list[OrderedMessage]
    sender_info: dict[str, Any] = field(default_factory=dict)
    conversation_info: dict[str, Any] = field(default_factory=dict)
    context: Optional[AggregatedContext] = None
    hints: dict[str, bool] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready dict for HTTP processors."""
        data = asdict(self)
        for message in data["messages"]:
            message["received_at"] = message["received_at"].isoformat()
            message["content_type"] = str(message["content_type"])
        return data


def build_context(messages: list[BufferedMessage] | list[InboundMessage]) -> AggregatedContext:
    if not messages:
        return AggregatedContext(0, 0.0, "", {}, 0)
    span = (messages[-1].received_at - messages[0].received_at).total_seconds()
    combined = "\n".join(
        m.content for m in messages if m.content_type == ContentType.TEXT and m.content
    )
    counts = Counter(str(m.content_type) for m in messages)
    return AggregatedContext(
        message_count=len(messages),
        time_span_seconds=span,
        combined_text=combined,
        type_counts=dict(counts),
        attachment_count=sum(len(m.attachments) for m in messages),
    )


def build_aggregate(
    session: BufferSession,
    messages: list[BufferedMessage],
    enhanced: bool = True,
    hints: dict[str, bool] | None = None,
) -> AggregatedConversation:
    """Materialize a closed buffer. ``messages`` must already be in receipt order."""
    first = messages[0] if messages else None
    return AggregatedConversation(
        buffer_id=session.id,
        conversation_id=session.conversation_id,
        owner_id=session.owner_id,
        messages=[
            OrderedMessage(
                position=index,
                external_message_id=m.external_message_id,
                content_type=m.content_type,
                received_at=m.received_at,
                content=m.content,
                attachments=list(m.attachments),
                sender_info=dict(m.sender_info),
            )
            for index, m in enumerate(messages)
        ],
        sender_info=dict(first.sender_info) if first else {},
        conversation_info=dict(first.conversation_info) if first else {},
        context=build_context(messages) if enhanced else None,
        hints=dict(hints or {}),
    )


def single_message_aggregate(
    message: InboundMessage,
    owner_id: Optional[str] = None,
    enhanced: bool = True,
    hints: dict[str, bool] | None = None,
) -> AggregatedConversation:
    """Aggregate for one message handed over without buffering."""
    return AggregatedConversation(
        buffer_id=None,
        conversation_id=message.conversation_id,
        owner_id=owner_id,
        messages=[
            OrderedMessage(
                position=0,
                external_message_id=message.external_message_id,
                content_type=message.content_type,
                received_at=message.received_at,
                content=message.content,
                attachments=list(message.attachments),
                sender_info=dict(message.sender_info),
            )
        ],
        sender_info=dict(message.sender_info),
        conversation_info=dict(message.conversation_info),
        context=build_context([message]) if enhanced else None,
        hints=dict(hints or {}),
    )
