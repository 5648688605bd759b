"""opencode-bridge command line entry point."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import yaml

from opencode_bridge.adapters.events import (
    BridgeEvent,
    PermissionAsked,
    QuestionAsked,
    SessionErrored,
    SessionIdle,
    TextDelta,
    event_to_dict,
)
from opencode_bridge.engine.config import BridgeConfig
from opencode_bridge.engine.errors import BridgeError
from opencode_bridge.engine.server import OpenCodeServer
from opencode_bridge.engine.yaml_config import discover_config, load_yaml_config

logger = logging.getLogger(__name__)

LOG_DIR = Path.home() / ".opencode-bridge" / "logs"
STREAM_CHECK_SECONDS = 1.0


def _configure_logging(level: str, log_dir: Path | None = None) -> Path:
    """Send logs to a rotating file and to stderr. Returns the log file path."""
    log_dir = log_dir or LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "bridge.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _load_config(cwd: Path, config_path: str | None, log_level: str | None) -> BridgeConfig:
    base = BridgeConfig.from_env(project_root=str(cwd))
    if config_path:
        explicit = Path(config_path)
        logger.info("Using explicit config path: %s (exists=%s)", explicit, explicit.exists())
        path: Path | None = explicit
    else:
        path = discover_config(cwd)
    config = load_yaml_config(path, base=base) if path is not None else base
    if log_level:
        config.log_level = log_level.upper()
    return config


# ── Actions ──


async def _list_models(config: BridgeConfig) -> None:
    server = OpenCodeServer(config)
    try:
        models = await server.list_models()
    finally:
        await server.aclose()
    if not models:
        print("No models reported.")
    for model in models:
        print(model)


async def _list_sessions(config: BridgeConfig) -> None:
    async with OpenCodeServer(config) as server:
        sessions = await server.list_sessions()
    if not sessions:
        print("No sessions.")
        return
    for session in sessions:
        title = session.title or "(untitled)"
        print(f"  {session.id}  {title}")


async def _run_prompt(config: BridgeConfig, text: str) -> int:
    """Send one prompt and stream the reply to stdout until the session settles."""
    async with OpenCodeServer(config) as server:
        session = await server.create_session()
        finished = asyncio.Event()
        outcome = {"code": 0}

        def on_delta(event: BridgeEvent) -> None:
            if isinstance(event, TextDelta) and event.session_id == session.id:
                sys.stdout.write(event.delta)
                sys.stdout.flush()

        def on_idle(event: BridgeEvent) -> None:
            if isinstance(event, SessionIdle) and event.session_id == session.id:
                finished.set()

        def on_error(event: BridgeEvent) -> None:
            if not isinstance(event, SessionErrored):
                return
            if event.session_id not in (None, session.id):
                return
            print(f"\nError: {event.message}", file=sys.stderr)
            outcome["code"] = 1
            finished.set()

        def on_interaction(event: BridgeEvent) -> None:
            if isinstance(event, (PermissionAsked, QuestionAsked)) and event.request is not None:
                logger.warning(
                    "Backend is waiting on %s %s; answer it from an interactive client",
                    event.event_type, event.request.id,
                )

        subs = [
            server.subscribe("text.delta", on_delta),
            server.subscribe("session.idle", on_idle),
            server.subscribe("session.error", on_error),
            server.subscribe("permission.asked", on_interaction),
            server.subscribe("question.asked", on_interaction),
        ]
        try:
            await server.send_message(session.id, text)
            if not await _wait_for_reply(server, finished):
                print("\nError: event stream lost before the reply finished", file=sys.stderr)
                outcome["code"] = 1
        finally:
            for sub in subs:
                sub.close()
        print()
        return outcome["code"]


async def _wait_for_reply(server: OpenCodeServer, finished: asyncio.Event) -> bool:
    """Wait for *finished*; False once the stream is down for good."""
    while not finished.is_set():
        try:
            await asyncio.wait_for(finished.wait(), timeout=STREAM_CHECK_SECONDS)
        except asyncio.TimeoutError:
            if server.stream_lost:
                logger.error("Event stream lost and reconnects exhausted")
                return False
    return True


async def _watch(config: BridgeConfig) -> None:
    async with OpenCodeServer(config) as server:
        print(f"Watching backend on port {server.port} (Ctrl+C to stop)", file=sys.stderr)
        async with server.channel() as channel:
            async for event in channel:
                print(json.dumps(event_to_dict(event), default=str), flush=True)


def main(argv: list[str] | None = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="opencode-bridge",
        description="Supervise a local OpenCode backend and stream its events",
    )
    parser.add_argument(
        "--cwd", metavar="PATH",
        help="Project root the backend runs in (default: current directory)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: .opencode/bridge.yaml or opencode-bridge.yaml)",
    )
    parser.add_argument(
        "--log-level", metavar="LEVEL",
        help="Log level (default: OPENCODE_BRIDGE_LOG_LEVEL or INFO)",
    )
    actions = parser.add_mutually_exclusive_group(required=True)
    actions.add_argument(
        "--list-models", action="store_true",
        help="Print the models the backend knows and exit",
    )
    actions.add_argument(
        "--list-sessions", action="store_true",
        help="Start the backend, print its sessions and exit",
    )
    actions.add_argument(
        "--prompt", metavar="TEXT",
        help="Send TEXT to a new session and stream the reply",
    )
    actions.add_argument(
        "--watch", action="store_true",
        help="Print every backend event as one JSON line until interrupted",
    )
    args = parser.parse_args(argv)

    cwd = Path(args.cwd).expanduser() if args.cwd else Path.cwd()
    if not cwd.is_dir():
        parser.error(f"--cwd {cwd} is not a directory")

    log_level = args.log_level or os.getenv("OPENCODE_BRIDGE_LOG_LEVEL", "INFO")
    log_file = _configure_logging(log_level)
    logger.info(
        "Starting opencode-bridge cwd=%s config=%s log=%s",
        cwd, args.config or "<auto>", log_file,
    )

    try:
        config = _load_config(cwd, args.config, args.log_level)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"Error: invalid config: {exc}", file=sys.stderr)
        sys.exit(2)

    try:
        if args.list_models:
            asyncio.run(_list_models(config))
        elif args.list_sessions:
            asyncio.run(_list_sessions(config))
        elif args.prompt is not None:
            sys.exit(asyncio.run(_run_prompt(config, args.prompt)))
        else:
            asyncio.run(_watch(config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except BridgeError as exc:
        logger.error("%s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
