"""Conversation processor abstraction with log-only and HTTP backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from chat_buffer.buffering.aggregate import AggregatedConversation
from chat_buffer.config import ProcessorConfig
from chat_buffer.log import get_logger

logger = get_logger(__name__)


class ProcessorError(RuntimeError):
    """The downstream processor rejected or failed an aggregated conversation."""


class ConversationProcessor(ABC):
    """Consumes one finalized aggregate per closed buffer."""

    @abstractmethod
    async def process(self, conversation: AggregatedConversation) -> None:
        """Process the aggregate. Any exception marks the hand-off as failed."""
        ...

    async def notify_typing(self, conversation_id: str) -> None:
        """Show a typing/processing indicator before processing starts."""
        return None

    async def aclose(self) -> None:
        return None


class LoggingConversationProcessor(ConversationProcessor):
    """Logs each aggregate. Useful when no downstream service is configured."""

    async def process(self, conversation: AggregatedConversation) -> None:
        logger.info(
            "aggregated_conversation",
            buffer_id=conversation.buffer_id,
            conversation_id=conversation.conversation_id,
            owner_id=conversation.owner_id,
            message_count=len(conversation.messages),
        )


class HttpConversationProcessor(ConversationProcessor):
    """POSTs the aggregate as JSON to a processing endpoint."""

    def __init__(self, config: ProcessorConfig, client: Optional[httpx.AsyncClient] = None):
        if not config.url:
            raise ValueError("processor.url is required for the 'http' backend")
        self._url = config.url
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.timeout)
        self._headers = headers

    async def process(self, conversation: AggregatedConversation) -> None:
        payload: dict[str, Any] = conversation.to_payload()
        try:
            response = await self._client.post(self._url, json=payload, headers=self._headers)
        except httpx.HTTPError as e:
            raise ProcessorError(f"Processor request failed: {e}") from e
        if response.status_code >= 400:
            raise ProcessorError(
                f"Processor responded with {response.status_code}: {response.text[:500]}"
            )
        logger.info(
            "processor_accepted",
            buffer_id=conversation.buffer_id,
            status_code=response.status_code,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def create_processor(config: ProcessorConfig) -> ConversationProcessor:
    match config.backend:
        case "log":
            return LoggingConversationProcessor()
        case "http":
            return HttpConversationProcessor(config)
        case _:
            raise ValueError(f"Unknown processor backend: {config.backend}")
