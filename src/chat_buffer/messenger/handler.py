"""Inbound handler: webhook payload -> validation -> buffer (or direct hand-off)."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from chat_buffer.buffering.aggregate import single_message_aggregate
from chat_buffer.buffering.manager import BufferRaceError, BufferSessionManager
from chat_buffer.buffering.processor import ConversationProcessor
from chat_buffer.config import ProcessingConfig
from chat_buffer.core.clock import Clock, utcnow
from chat_buffer.core.flags import FeatureFlags, Flag
from chat_buffer.log import bind_conversation, clear_context, get_logger
from chat_buffer.messenger.chatwoot import (
    ChatwootAccount,
    ChatwootSender,
    ChatwootWebhook,
    parse_webhook,
    to_inbound_message,
    validate_webhook,
)
from chat_buffer.messenger.models import InboundMessage

logger = get_logger(__name__)

OwnerResolver = Callable[[ChatwootSender, Optional[ChatwootAccount]], Awaitable[Optional[str]]]


class HandleAction(StrEnum):
    SKIPPED = "skipped"  # malformed or missing identity
    IGNORED = "ignored"  # valid, but not something we buffer
    BUFFERED = "buffered"
    PROCESSED_IMMEDIATELY = "processed_immediately"
    FAILED = "failed"  # direct hand-off raised or timed out


@dataclass(frozen=True, slots=True)
class HandleResult:
    action: HandleAction
    buffer_id: Optional[str] = None
    reason: Optional[str] = None


class InboundHandler:
    """Entry point for every inbound webhook delivery."""

    def __init__(
        self,
        manager: BufferSessionManager,
        processor: ConversationProcessor,
        flags: FeatureFlags | None = None,
        owner_resolver: OwnerResolver | None = None,
        processing: ProcessingConfig | None = None,
        clock: Clock = utcnow,
    ):
        self._manager = manager
        self._processor = processor
        self._flags = flags or FeatureFlags()
        self._processing = processing or ProcessingConfig()
        self._owner_resolver = owner_resolver
        self._clock = clock

    async def handle(self, payload: dict[str, Any]) -> HandleResult:
        try:
            webhook = parse_webhook(payload)
        except ValidationError as e:
            logger.warning("webhook_malformed", error=str(e))
            return HandleResult(HandleAction.SKIPPED, reason="Malformed webhook payload")

        decision = validate_webhook(webhook)
        if not decision.valid:
            logger.warning("webhook_invalid", message_id=webhook.id, reason=decision.reason)
            return HandleResult(HandleAction.SKIPPED, reason=decision.reason)
        if not decision.should_process:
            logger.debug("webhook_ignored", message_id=webhook.id, reason=decision.reason)
            return HandleResult(HandleAction.IGNORED, reason=decision.reason)

        message = to_inbound_message(webhook, self._clock())
        bind_conversation(message.conversation_id)
        try:
            owner_id = await self._resolve_owner(webhook)

            if not self._flags.is_enabled(Flag.MESSAGE_BUFFERING):
                logger.info("message_buffering_disabled", message_id=message.external_message_id)
                return await self._process_immediately(message, owner_id, "Buffering disabled")

            try:
                session = await self._manager.attach(message.conversation_id, message, owner_id)
            except BufferRaceError as e:
                logger.error("buffer_attach_failed", error=str(e))
                return await self._process_immediately(message, owner_id, str(e))

            logger.info(
                "message_accepted",
                buffer_id=session.id,
                message_id=message.external_message_id,
                message_count=session.message_count,
            )
            return HandleResult(HandleAction.BUFFERED, buffer_id=session.id)
        finally:
            clear_context()

    async def _resolve_owner(self, webhook: ChatwootWebhook) -> Optional[str]:
        if self._owner_resolver is None or webhook.sender is None:
            return None
        try:
            owner_id = await self._owner_resolver(webhook.sender, webhook.account)
        except Exception as e:
            logger.warning("owner_resolution_failed", sender_id=webhook.sender.id, error=str(e))
            return None
        return str(owner_id) if owner_id is not None else None

    async def _process_immediately(
        self, message: InboundMessage, owner_id: Optional[str], reason: str
    ) -> HandleResult:
        aggregate = single_message_aggregate(
            message,
            owner_id,
            enhanced=self._flags.is_enabled(Flag.ENHANCED_AI_PROCESSING),
            hints={
                Flag.RESPONSE_QUALITY_ENHANCEMENT.value: self._flags.is_enabled(
                    Flag.RESPONSE_QUALITY_ENHANCEMENT
                ),
            },
        )
        if self._flags.is_enabled(Flag.TYPING_INDICATORS):
            try:
                await self._processor.notify_typing(message.conversation_id)
            except Exception as e:
                logger.warning("typing_indicator_failed", error=str(e))

        timeout = self._processing.processor_timeout_seconds
        try:
            await asyncio.wait_for(self._processor.process(aggregate), timeout=timeout)
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                error = f"Processor timed out after {timeout:g}s"
            else:
                error = f"{type(e).__name__}: {e}"
            logger.error(
                "immediate_processing_failed",
                message_id=message.external_message_id,
                error=error,
            )
            return HandleResult(HandleAction.FAILED, reason=error)
        return HandleResult(HandleAction.PROCESSED_IMMEDIATELY, reason=reason)
