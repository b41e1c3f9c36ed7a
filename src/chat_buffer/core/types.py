"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class BufferStatus(StrEnum):
    ACTIVE = "active"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(StrEnum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ConversationPhase(StrEnum):
    IDLE = "idle"
    BUFFERING = "buffering"
    PROCESSING = "processing"


class ContentType(StrEnum):
    TEXT = "text"
    AUDIO = "audio"
    IMAGE = "image"
    FILE = "file"


class CloseOutcome(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry_scheduled"
    NOT_ELIGIBLE = "not_eligible"
    SUPERSEDED = "superseded"
