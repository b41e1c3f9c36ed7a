import asyncio
from datetime import timedelta

import pytest

from chat_buffer.buffering.closer import BufferCloser
from chat_buffer.config import ProcessingConfig
from chat_buffer.core.flags import FeatureFlags
from chat_buffer.core.types import (
    BufferStatus,
    CloseOutcome,
    ContentType,
    ConversationPhase,
    JobStatus,
)

from conftest import T0


def _closer(db, buffer_repo, job_repo, processor, clock, flags=None, **processing):
    return BufferCloser(
        db,
        buffer_repo,
        job_repo,
        processor,
        config=ProcessingConfig(**processing),
        flags=flags,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_not_eligible_before_deadline(manager, closer, processor, buffer_repo, make_message, clock):
    session = await manager.attach("conv-1", make_message("m1"))
    clock.at(29.999)

    result = await closer.claim_and_close(session.id)

    assert result.outcome == CloseOutcome.NOT_ELIGIBLE
    assert processor.calls == []
    assert (await buffer_repo.get_buffer(session.id)).status == BufferStatus.ACTIVE


@pytest.mark.asyncio
async def test_close_hands_off_and_completes(
    manager, closer, processor, buffer_repo, job_repo, make_message, clock
):
    clock.at(0)
    session = await manager.attach("conv-1", make_message("m1", content="hola"), owner_id="u1")
    clock.at(3)
    await manager.attach("conv-1", make_message("m2", content="necesito ayuda"))
    clock.at(33)

    result = await closer.claim_and_close(session.id)

    assert result.outcome == CloseOutcome.COMPLETED
    assert result.attempt == 1
    assert len(processor.calls) == 1
    aggregate = processor.calls[0]
    assert aggregate.buffer_id == session.id
    assert aggregate.conversation_id == "conv-1"
    assert aggregate.owner_id == "u1"
    assert [m.external_message_id for m in aggregate.messages] == ["m1", "m2"]
    assert [m.position for m in aggregate.messages] == [0, 1]
    assert aggregate.context.combined_text == "hola\nnecesito ayuda"
    assert aggregate.context.time_span_seconds == 3.0

    stored = await buffer_repo.get_buffer(session.id)
    assert stored.status == BufferStatus.COMPLETED
    assert stored.processed_at == T0 + timedelta(seconds=33)
    assert stored.claim_token is None
    assert (await job_repo.get(session.id)).status == JobStatus.COMPLETED

    state = await buffer_repo.get_state("conv-1")
    assert state.state == ConversationPhase.IDLE
    assert state.active_buffer_id is None


@pytest.mark.asyncio
async def test_concurrent_claims_dispatch_once(manager, closer, processor, make_message, clock):
    session = await manager.attach("conv-1", make_message("m1"))
    clock.at(31)

    results = await asyncio.gather(*(closer.claim_and_close(session.id) for _ in range(5)))

    outcomes = sorted(str(r.outcome) for r in results)
    assert outcomes.count(str(CloseOutcome.COMPLETED)) == 1
    assert outcomes.count(str(CloseOutcome.NOT_ELIGIBLE)) == 4
    assert len(processor.calls) == 1


@pytest.mark.asyncio
async def test_messages_are_ordered_by_receipt_time(manager, closer, processor, make_message, clock):
    late = make_message("m-late", content="second", received_at=T0 + timedelta(seconds=2))
    early = make_message("m-early", content="first", received_at=T0 + timedelta(seconds=1))
    session = await manager.attach("conv-1", late)
    await manager.attach("conv-1", early)
    clock.at(60)

    await closer.claim_and_close(session.id)

    assert [m.external_message_id for m in processor.calls[0].messages] == ["m-early", "m-late"]


@pytest.mark.asyncio
async def test_empty_buffer_completes_without_processor(
    db, closer, processor, buffer_repo, clock
):
    async with db.transaction():
        buffer_id = await buffer_repo.create_buffer("conv-1", None, clock(), clock())

    result = await closer.claim_and_close(buffer_id)

    assert result.outcome == CloseOutcome.COMPLETED
    assert result.aggregate is None
    assert processor.calls == []
    assert (await buffer_repo.get_buffer(buffer_id)).status == BufferStatus.COMPLETED


@pytest.mark.asyncio
async def test_processor_failure_is_final_by_default(
    manager, closer, processor, buffer_repo, job_repo, make_message, clock
):
    session = await manager.attach("conv-1", make_message("m1"))
    clock.at(30)
    processor.fail_with = RuntimeError("downstream exploded")

    result = await closer.claim_and_close(session.id)

    assert result.outcome == CloseOutcome.FAILED
    assert result.error == "RuntimeError: downstream exploded"
    stored = await buffer_repo.get_buffer(session.id)
    assert stored.status == BufferStatus.FAILED
    assert stored.last_error == "RuntimeError: downstream exploded"
    job = await job_repo.get(session.id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert (await buffer_repo.get_state("conv-1")).state == ConversationPhase.IDLE

    # terminal: never claimable again
    clock.at(3600)
    assert (await closer.claim_and_close(session.id)).outcome == CloseOutcome.NOT_ELIGIBLE


@pytest.mark.asyncio
async def test_processor_timeout_is_a_failure(
    db, manager, buffer_repo, job_repo, processor, make_message, clock
):
    closer = _closer(
        db, buffer_repo, job_repo, processor, clock, processor_timeout_seconds=0.05
    )

    async def _hang(_):
        await asyncio.sleep(1)

    processor.hook = _hang
    session = await manager.attach("conv-1", make_message("m1"))
    clock.at(30)

    result = await closer.claim_and_close(session.id)

    assert result.outcome == CloseOutcome.FAILED
    assert "timed out" in result.error


@pytest.mark.asyncio
async def test_failed_attempt_is_requeued_then_retried(
    db, manager, buffer_repo, job_repo, processor, make_message, clock
):
    closer = _closer(
        db, buffer_repo, job_repo, processor, clock, max_attempts=3, retry_delay_seconds=10
    )
    session = await manager.attach("conv-1", make_message("m1"))
    clock.at(30)
    processor.fail_with = ConnectionError("refused")

    first = await closer.claim_and_close(session.id)

    assert first.outcome == CloseOutcome.RETRY_SCHEDULED
    stored = await buffer_repo.get_buffer(session.id)
    assert stored.status == BufferStatus.PROCESSING
    assert stored.claim_token is None
    job = await job_repo.get(session.id)
    assert job.status == JobStatus.SCHEDULED
    assert job.attempts == 1
    assert job.scheduled_for == T0 + timedelta(seconds=40)

    # not due yet
    clock.at(35)
    assert (await closer.retry(session.id)).outcome == CloseOutcome.NOT_ELIGIBLE

    clock.at(40)
    processor.fail_with = None
    second = await closer.retry(session.id)

    assert second.outcome == CloseOutcome.COMPLETED
    assert second.attempt == 2
    assert len(processor.calls) == 2
    assert (await buffer_repo.get_buffer(session.id)).status == BufferStatus.COMPLETED
    job = await job_repo.get(session.id)
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 2


@pytest.mark.asyncio
async def test_retries_stop_at_max_attempts(
    db, manager, buffer_repo, job_repo, processor, make_message, clock
):
    closer = _closer(
        db, buffer_repo, job_repo, processor, clock, max_attempts=2, retry_delay_seconds=0
    )
    session = await manager.attach("conv-1", make_message("m1"))
    clock.at(30)
    processor.fail_with = ConnectionError("refused")

    assert (await closer.claim_and_close(session.id)).outcome == CloseOutcome.RETRY_SCHEDULED
    assert (await closer.retry(session.id)).outcome == CloseOutcome.FAILED

    assert (await buffer_repo.get_buffer(session.id)).status == BufferStatus.FAILED
    assert (await job_repo.get(session.id)).attempts == 2


@pytest.mark.asyncio
async def test_late_result_from_reclaimed_worker_is_superseded(
    manager, closer, processor, buffer_repo, make_message, clock
):
    session = await manager.attach("conv-1", make_message("m1"))
    clock.at(30)

    async def _stall_past_safety_timeout(_):
        clock.at(30 + 301)
        await closer.reclaim_stuck(session.id, clock() - timedelta(minutes=5))

    processor.hook = _stall_past_safety_timeout
    result = await closer.claim_and_close(session.id)

    assert result.outcome == CloseOutcome.SUPERSEDED
    stored = await buffer_repo.get_buffer(session.id)
    assert stored.status == BufferStatus.FAILED
    assert "safety timeout" in stored.last_error


@pytest.mark.asyncio
async def test_typing_indicator_sent_before_processing(
    manager, closer, processor, make_message, clock
):
    session = await manager.attach("conv-1", make_message("m1"))
    clock.at(30)

    await closer.claim_and_close(session.id)

    assert processor.typing == ["conv-1"]


@pytest.mark.asyncio
async def test_flags_control_typing_and_context(
    db, manager, buffer_repo, job_repo, processor, make_message, clock
):
    flags = FeatureFlags(
        {
            "typing_indicators": False,
            "enhanced_ai_processing": False,
            "response_quality_enhancement": True,
        }
    )
    closer = _closer(db, buffer_repo, job_repo, processor, clock, flags=flags)
    session = await manager.attach(
        "conv-1",
        make_message("m1", content=None, content_type=ContentType.AUDIO, attachments=[{"id": 1}]),
    )
    clock.at(30)

    await closer.claim_and_close(session.id)

    assert processor.typing == []
    aggregate = processor.calls[0]
    assert aggregate.context is None
    assert aggregate.hints == {"response_quality_enhancement": True}
    assert aggregate.messages[0].content_type == ContentType.AUDIO
    assert aggregate.messages[0].attachments == [{"id": 1}]
