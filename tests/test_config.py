from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from chat_buffer.config import AppConfig, load_config
from chat_buffer.core.clock import from_db, parse_timestamp, to_db
from chat_buffer.core.flags import FeatureFlags, Flag


def test_load_config_interpolates_env(tmp_path, monkeypatch):
    monkeypatch.setenv("CB_PROCESSOR_URL", "http://processor.test/in")
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        """
data_dir: /var/lib/chat-buffer
storage:
  db_path: ${data_dir}/buffers.db
buffer:
  window_seconds: 45
processor:
  backend: http
  url: ${CB_PROCESSOR_URL}
feature_flags:
  typing_indicators: false
""",
        encoding="utf-8",
    )

    config = load_config(config_file, tmp_path / "missing.env")

    assert config.storage.db_path == "/var/lib/chat-buffer/buffers.db"
    assert config.buffer.window_seconds == 45
    assert config.processor.url == "http://processor.test/in"
    assert config.feature_flags == {"typing_indicators": False}
    assert config.processing.max_attempts == 1
    assert config.scheduler.poll_interval_seconds == 10


def test_load_config_reads_dotenv(tmp_path, monkeypatch):
    monkeypatch.delenv("CB_API_KEY", raising=False)
    (tmp_path / ".env").write_text("CB_API_KEY=from-dotenv\n", encoding="utf-8")
    config_file = tmp_path / "config.yaml"
    config_file.write_text("processor:\n  api_key: ${CB_API_KEY}\n", encoding="utf-8")

    config = load_config(config_file, tmp_path / ".env")

    assert config.processor.api_key == "from-dotenv"


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml", tmp_path / ".env")


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        AppConfig(buffer={"window_seconds": 0})
    with pytest.raises(ValidationError):
        AppConfig(processing={"max_attempts": 0})


def test_flag_defaults_and_overrides():
    flags = FeatureFlags()
    assert flags.is_enabled(Flag.MESSAGE_BUFFERING)
    assert flags.is_enabled(Flag.TYPING_INDICATORS)
    assert flags.is_enabled(Flag.ENHANCED_AI_PROCESSING)
    assert not flags.is_enabled(Flag.RESPONSE_QUALITY_ENHANCEMENT)
    assert not flags.is_enabled("no_such_flag")

    overridden = FeatureFlags({"message_buffering": False, "no_such_flag": True})
    assert not overridden.is_enabled("message_buffering")
    assert not overridden.is_enabled("no_such_flag")
    assert "no_such_flag" not in overridden.as_dict()


def test_db_timestamps_sort_chronologically():
    a = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
    b = datetime(2026, 3, 1, 12, 0, 0, 1, tzinfo=timezone.utc)

    assert to_db(a) < to_db(b)
    assert from_db(to_db(b)) == b


def test_parse_timestamp_formats():
    default = datetime(2000, 1, 1, tzinfo=timezone.utc)

    assert parse_timestamp("2026-03-01T12:00:00Z", default) == datetime(
        2026, 3, 1, 12, 0, tzinfo=timezone.utc
    )
    assert parse_timestamp("1772366400", default) == parse_timestamp(1772366400, default)
    assert parse_timestamp("not a date", default) == default
    assert parse_timestamp(None, default) == default


def test_placeholder_fallbacks(tmp_path, monkeypatch):
    monkeypatch.delenv("CB_UNSET_URL", raising=False)
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        "processor:\n  url: ${CB_UNSET_URL:-}\n  api_key: ${CB_UNSET_URL:-dev-key}\n",
        encoding="utf-8",
    )

    config = load_config(config_file, tmp_path / ".env")

    assert config.processor.url is None
    assert config.processor.api_key == "dev-key"
