import sys

import pytest

from chat_buffer import __main__ as cli
from chat_buffer.services.scheduler import TICK_JOB_ID


@pytest.fixture
def run_cli(tmp_path, monkeypatch):
    """Runs ``chat-buffer <command>`` against a file-backed store; returns printed JSON."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        f"storage:\n  db_path: {tmp_path / 'buffers.db'}\n",
        encoding="utf-8",
    )
    printed = []
    monkeypatch.setattr(cli, "_print_json", printed.append)
    monkeypatch.setattr(cli, "setup_logging", lambda *args, **kwargs: None)

    def _run(*command: str):
        argv = ["chat-buffer", *command, "-c", str(config_file), "-e", str(tmp_path / ".env")]
        monkeypatch.setattr(sys, "argv", argv)
        cli.main()
        return printed[-1]

    return _run


def test_status_without_scheduler_shows_configured_jobs(run_cli):
    status = run_cli("status")

    tick, cleanup = status["jobs"]
    assert status["running"] is False
    assert tick["id"] == TICK_JOB_ID
    assert tick["active"] is True
    assert tick["trigger"].startswith("interval[0:00:10")
    assert "hour='3'" in cleanup["trigger"]


def test_pause_and_resume_persist_across_invocations(run_cli):
    assert run_cli("pause") == {"job": TICK_JOB_ID, "active": False}
    assert run_cli("status")["jobs"][0]["active"] is False
    assert run_cli("trigger")["paused"] is True

    assert run_cli("resume") == {"job": TICK_JOB_ID, "active": True}
    assert run_cli("status")["jobs"][0]["active"] is True
    assert run_cli("trigger")["paused"] is False
