"""Chatwoot webhook parsing, validation, and normalization to InboundMessage."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from chat_buffer.core.clock import parse_timestamp
from chat_buffer.core.types import ContentType
from chat_buffer.messenger.models import InboundMessage

REQUIRED_EVENT = "message_created"
REQUIRED_CHANNEL = "Channel::Whatsapp"

_MESSAGE_TYPE_ALIASES: dict[str, ContentType] = {
    "text": ContentType.TEXT,
    "incoming": ContentType.TEXT,
    "audio": ContentType.AUDIO,
    "voice": ContentType.AUDIO,
    "image": ContentType.IMAGE,
    "photo": ContentType.IMAGE,
    "picture": ContentType.IMAGE,
    "file": ContentType.FILE,
    "document": ContentType.FILE,
    "attachment": ContentType.FILE,
    "video": ContentType.FILE,
}

Id = Union[int, str]


class ChatwootSender(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[Id] = None
    name: Optional[str] = None
    phone_number: Optional[str] = None
    identifier: Optional[str] = None
    email: Optional[str] = None


class ChatwootConversation(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[Id] = None
    status: Optional[str] = None
    channel: Optional[str] = None
    messages_count: Optional[int] = None


class ChatwootAccount(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[Id] = None
    name: Optional[str] = None


class ChatwootWebhook(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[Id] = None
    event: Optional[str] = None
    content: Optional[str] = None
    message_type: Optional[str] = None
    content_type: Optional[str] = None
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    conversation: Optional[ChatwootConversation] = None
    sender: Optional[ChatwootSender] = None
    account: Optional[ChatwootAccount] = None
    created_at: Optional[Union[int, float, str]] = None


@dataclass(frozen=True, slots=True)
class WebhookDecision:
    valid: bool
    should_process: bool
    reason: Optional[str] = None


def parse_webhook(payload: dict[str, Any]) -> ChatwootWebhook:
    """Raises ``pydantic.ValidationError`` on a structurally broken payload."""
    return ChatwootWebhook.model_validate(payload)


def validate_webhook(webhook: ChatwootWebhook) -> WebhookDecision:
    """Decide whether a webhook carries an incoming WhatsApp message worth buffering.

    Filters run before the identity checks, so e.g. an outgoing message
    without a sender is skipped rather than rejected.
    """
    if webhook.event != REQUIRED_EVENT:
        return WebhookDecision(True, False, f"Event {webhook.event} is not {REQUIRED_EVENT}")

    conversation = webhook.conversation
    channel = conversation.channel if conversation else None
    if channel != REQUIRED_CHANNEL:
        return WebhookDecision(True, False, f"Channel {channel} is not WhatsApp")

    if webhook.message_type == "outgoing":
        return WebhookDecision(True, False, "Outgoing message, not processing")

    if not (webhook.content or "").strip() and not webhook.attachments:
        return WebhookDecision(True, False, "Message has no content or attachments")

    if conversation.status != "open":
        return WebhookDecision(
            True, False, f"Conversation status is {conversation.status}, not open"
        )

    if webhook.sender is None or webhook.sender.id is None or webhook.sender.id == "":
        return WebhookDecision(False, False, "Missing sender information")
    if not conversation.id:
        return WebhookDecision(False, False, "Missing conversation information")
    if webhook.id is None or webhook.id == "":
        return WebhookDecision(False, False, "Missing message id")

    return WebhookDecision(True, True)


def determine_content_type(webhook: ChatwootWebhook) -> ContentType:
    """Classify by the first attachment's MIME/file type, else by message_type."""
    fallback = _MESSAGE_TYPE_ALIASES.get((webhook.message_type or "").lower(), ContentType.TEXT)
    if not webhook.attachments:
        return fallback

    attachment = webhook.attachments[0]
    kind = str(attachment.get("content_type") or attachment.get("file_type") or "")
    if kind.startswith("audio/") or kind == "audio":
        return ContentType.AUDIO
    if kind.startswith("image/") or kind == "image":
        return ContentType.IMAGE
    if (
        kind.startswith("video/")
        or kind == "video"
        or "document" in kind
        or "application/" in kind
        or kind == "file"
    ):
        return ContentType.FILE
    return fallback


def to_inbound_message(webhook: ChatwootWebhook, now: datetime) -> InboundMessage:
    """Normalize a validated webhook. ``now`` stands in for a missing created_at."""
    sender = webhook.sender or ChatwootSender()
    conversation = webhook.conversation or ChatwootConversation()
    return InboundMessage(
        conversation_id=str(conversation.id),
        external_message_id=str(webhook.id),
        content_type=determine_content_type(webhook),
        received_at=parse_timestamp(webhook.created_at, now),
        content=webhook.content or None,
        attachments=list(webhook.attachments),
        sender_info={
            "id": sender.id,
            "name": sender.name,
            "phone_number": sender.phone_number,
            "identifier": sender.identifier,
        },
        conversation_info={
            "id": conversation.id,
            "status": conversation.status,
            "channel": conversation.channel,
            "messages_count": conversation.messages_count,
        },
    )
