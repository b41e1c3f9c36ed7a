import json
from datetime import datetime, timezone

import httpx
import pytest

from chat_buffer.buffering.aggregate import (
    AggregatedConversation,
    OrderedMessage,
    build_context,
)
from chat_buffer.buffering.processor import (
    HttpConversationProcessor,
    LoggingConversationProcessor,
    ProcessorError,
    create_processor,
)
from chat_buffer.config import ProcessorConfig
from chat_buffer.core.types import ContentType

AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _aggregate() -> AggregatedConversation:
    return AggregatedConversation(
        buffer_id="b-1",
        conversation_id="77",
        owner_id="u-1",
        messages=[
            OrderedMessage(
                position=0,
                external_message_id="1001",
                content_type=ContentType.TEXT,
                received_at=AT,
                content="hola",
            )
        ],
    )


def _processor(handler) -> HttpConversationProcessor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    config = ProcessorConfig(backend="http", url="http://processor.test/conversations", api_key="k")
    return HttpConversationProcessor(config, client=client)


@pytest.mark.asyncio
async def test_http_processor_posts_aggregate():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(202, json={"accepted": True})

    await _processor(handler).process(_aggregate())

    assert seen["auth"] == "Bearer k"
    assert seen["body"]["buffer_id"] == "b-1"
    assert seen["body"]["messages"][0]["received_at"] == AT.isoformat()
    assert seen["body"]["messages"][0]["content_type"] == "text"


@pytest.mark.asyncio
async def test_http_processor_raises_on_error_status():
    processor = _processor(lambda request: httpx.Response(503, text="busy"))

    with pytest.raises(ProcessorError, match="503"):
        await processor.process(_aggregate())


@pytest.mark.asyncio
async def test_http_processor_wraps_transport_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProcessorError, match="request failed"):
        await _processor(handler).process(_aggregate())


def test_create_processor_backends():
    assert isinstance(create_processor(ProcessorConfig()), LoggingConversationProcessor)
    with pytest.raises(ValueError):
        create_processor(ProcessorConfig(backend="http"))
    with pytest.raises(ValueError, match="Unknown processor backend"):
        create_processor(ProcessorConfig(backend="carrier-pigeon"))


def test_build_context_of_empty_burst():
    context = build_context([])

    assert context.message_count == 0
    assert context.combined_text == ""
