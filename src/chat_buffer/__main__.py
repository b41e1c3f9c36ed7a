"""CLI entry point for chat-buffer."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable

from chat_buffer.app import BufferApp
from chat_buffer.config import AppConfig, load_config
from chat_buffer.log import setup_logging
from chat_buffer.services.scheduler import TICK_JOB_ID


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="chat-buffer",
        description="Inbound WhatsApp message buffering and conversation-state coordinator",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
    common.add_argument("-e", "--env", default=".env", help="Path to .env file")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    subparsers.add_parser("start", parents=[common], help="Run the deadline scheduler")
    subparsers.add_parser("config-check", parents=[common], help="Validate configuration")

    ingest_parser = subparsers.add_parser(
        "ingest", parents=[common], help="Feed one Chatwoot webhook payload"
    )
    ingest_parser.add_argument("payload", help="Path to a JSON webhook payload")

    subparsers.add_parser("trigger", parents=[common], help="Run one scheduler tick now")
    subparsers.add_parser("cleanup", parents=[common], help="Delete old buffers and logs")
    subparsers.add_parser("pause", parents=[common], help="Stop dispatching closed buffers")
    subparsers.add_parser("resume", parents=[common], help="Resume dispatching closed buffers")

    status_parser = subparsers.add_parser(
        "status", parents=[common], help="Show scheduler and buffer status"
    )
    status_parser.add_argument("--buffer-id", help="Show a single buffer with its messages")

    args = parser.parse_args()

    if args.command is None:
        # Default to start
        args.command = "start"
        args.config = "config.yaml"
        args.env = ".env"

    if args.command == "config-check":
        _check_config(args.config, args.env)
    elif args.command == "start":
        _run(args.config, args.env)
    elif args.command == "ingest":
        _one_shot(args.config, args.env, lambda app: _ingest(app, args.payload))
    elif args.command == "trigger":
        _one_shot(args.config, args.env, _trigger)
    elif args.command == "cleanup":
        _one_shot(args.config, args.env, _cleanup)
    elif args.command == "pause":
        _one_shot(args.config, args.env, lambda app: _set_processing(app, active=False))
    elif args.command == "resume":
        _one_shot(args.config, args.env, lambda app: _set_processing(app, active=True))
    elif args.command == "status":
        _one_shot(args.config, args.env, lambda app: _status(app, args.buffer_id))


def _load(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Run 'python install.py' first or copy config.example.yaml to config.yaml")
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    config = _load(config_path, env_path)
    print(f"Configuration valid: {config_path}")
    print(f"  Storage: {config.storage.db_path}")
    print(f"  Buffer window: {config.buffer.window_seconds:g}s")
    print(
        f"  Scheduler: every {config.scheduler.poll_interval_seconds:g}s "
        f"({config.scheduler.timezone}), cleanup at {config.scheduler.cleanup_hour:02d}:00"
    )
    print(
        f"  Processing: safety timeout {config.processing.safety_timeout_minutes:g}m, "
        f"max attempts {config.processing.max_attempts}"
    )
    print(f"  Processor: {config.processor.backend}")
    print(
        f"  Retention: {config.retention.completed_buffer_days}d buffers, "
        f"{config.retention.log_days}d logs"
    )
    if config.feature_flags:
        flags = ", ".join(f"{k}={v}" for k, v in sorted(config.feature_flags.items()))
        print(f"  Feature flags: {flags}")


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _ingest(app: BufferApp, payload_path: str) -> None:
    payload = json.loads(Path(payload_path).read_text(encoding="utf-8"))
    result = await app.handler.handle(payload)
    _print_json({"action": result.action, "buffer_id": result.buffer_id, "reason": result.reason})


async def _trigger(app: BufferApp) -> None:
    report = await app.scheduler.tick()
    _print_json(report.as_dict())


async def _cleanup(app: BufferApp) -> None:
    _print_json(await app.scheduler.cleanup())


async def _set_processing(app: BufferApp, active: bool) -> None:
    """Flip the stored toggle; running schedulers pick it up on their next tick."""
    if active:
        await app.scheduler.resume()
    else:
        await app.scheduler.pause()
    _print_json({"job": TICK_JOB_ID, "active": active})


async def _status(app: BufferApp, buffer_id: str | None) -> None:
    if buffer_id is None:
        _print_json(await app.scheduler.status())
        return
    session = await app.manager.get_session(buffer_id)
    if session is None:
        print(f"Buffer not found: {buffer_id}", file=sys.stderr)
        sys.exit(1)
    job = await app.job_repo.get(buffer_id)
    messages = await app.buffer_repo.get_messages(buffer_id)
    _print_json(
        {
            "buffer": vars(session),
            "job": vars(job) if job else None,
            "messages": [
                {
                    "external_message_id": m.external_message_id,
                    "content_type": m.content_type,
                    "received_at": m.received_at,
                    "content": m.content,
                }
                for m in messages
            ],
        }
    )


def _one_shot(
    config_path: str,
    env_path: str,
    command: Callable[[BufferApp], Awaitable[None]],
) -> None:
    """Open the store, run one command, close. The scheduler is not started."""
    config = _load(config_path, env_path)
    setup_logging(config.log_level, config.log_json)

    async def _async_main() -> None:
        app = BufferApp(config)
        await app.open()
        try:
            await command(app)
        finally:
            await app.stop()

    asyncio.run(_async_main())


def _run(config_path: str, env_path: str) -> None:
    """Load config and run the scheduler until SIGINT/SIGTERM."""
    config = _load(config_path, env_path)
    setup_logging(config.log_level, config.log_json)

    async def _async_main() -> None:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _signal_handler() -> None:
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _signal_handler)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, lambda s, f: _signal_handler())

        app = BufferApp(config)
        await app.start()
        try:
            await stop_event.wait()
        finally:
            await app.stop()

    asyncio.run(_async_main())


if __name__ == "__main__":
    main()
