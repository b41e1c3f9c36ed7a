"""Read-only feature flags injected into the buffering components."""

from __future__ import annotations

from enum import StrEnum
from types import MappingProxyType
from typing import Mapping

from chat_buffer.log import get_logger

logger = get_logger(__name__)


class Flag(StrEnum):
    MESSAGE_BUFFERING = "message_buffering"
    TYPING_INDICATORS = "typing_indicators"
    ENHANCED_AI_PROCESSING = "enhanced_ai_processing"
    RESPONSE_QUALITY_ENHANCEMENT = "response_quality_enhancement"


DEFAULT_FLAGS: Mapping[str, bool] = MappingProxyType(
    {
        Flag.MESSAGE_BUFFERING: True,
        Flag.TYPING_INDICATORS: True,
        Flag.ENHANCED_AI_PROCESSING: True,
        Flag.RESPONSE_QUALITY_ENHANCEMENT: False,
    }
)


class FeatureFlags:
    """Boolean toggles. Unknown flag names are always disabled."""

    def __init__(self, overrides: Mapping[str, bool] | None = None):
        values = dict(DEFAULT_FLAGS)
        for name, enabled in (overrides or {}).items():
            if name not in DEFAULT_FLAGS:
                logger.warning("unknown_feature_flag_ignored", flag=name)
                continue
            values[name] = bool(enabled)
        self._values: Mapping[str, bool] = MappingProxyType(values)

    def is_enabled(self, flag_name: str) -> bool:
        return self._values.get(flag_name, False)

    def as_dict(self) -> dict[str, bool]:
        return {str(k): v for k, v in self._values.items()}
