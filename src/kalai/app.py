"""Command-line entry point: a line-oriented chat REPL over the assistant session."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO

from .ai.orchestration.coordinator import ChatReply
from .chat.messages import MessageError
from .chat.session import AssistantSession, SessionPaths
from .services.settings import Settings, SettingsStore, parse_override, redact_secret
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
_PROMPT = "you> "
_HELP = """Commands:
  /new       archive this conversation and start a new one
  /clear     clear the conversation without archiving
  /cancel    cancel every outstanding request
  /history   list archived conversations
  /state     print the session state as JSON
  /quit      leave
Lines starting with '{' are parsed as JSON surface messages.
Anything else is sent to the assistant."""


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure logging for the CLI; ``KALAI_DEBUG`` also turns on debug output."""

    log_path = logging_utils.setup_logging(debug, force=force)
    _LOGGER.info("kalai starting; log file %s", log_path)


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``kalai`` console script."""

    args = _parse_cli_args(argv)
    debug = args.debug or logging_utils.debug_requested()
    configure_logging(debug)

    settings_path = args.settings or os.environ.get("KALAI_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return 0

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    try:
        session = AssistantSession.from_settings(
            settings,
            paths=SessionPaths(
                conversation=Path(args.conversation).expanduser() if args.conversation else None,
            ),
        )
    except ValueError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    try:
        asyncio.run(run_repl(session))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")
    finally:
        logging_utils.shutdown_logging()
    return 0


async def run_repl(
    session: AssistantSession,
    *,
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
) -> None:
    """Read lines from ``stdin`` until EOF or ``/quit`` and answer them."""

    source = stdin or sys.stdin
    sink = stdout or sys.stdout
    loop = asyncio.get_running_loop()
    async with session:
        _write(sink, "Type /help for commands.")
        while True:
            if source.isatty():
                sink.write(_PROMPT)
                sink.flush()
            line = await loop.run_in_executor(None, source.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            if not await _dispatch_line(session, line, sink):
                break


async def _dispatch_line(session: AssistantSession, line: str, sink: TextIO) -> bool:
    if line.startswith("/"):
        return _run_command(session, line[1:].strip().lower(), sink)
    if line.startswith("{"):
        try:
            result = await session.handle_payload(line)
        except MessageError as exc:
            _write(sink, f"! {exc}")
            return True
        _write(sink, _render_result(result))
        return True
    reply = await session.ask(line)
    _write(sink, _render_reply(reply))
    return True


def _run_command(session: AssistantSession, command: str, sink: TextIO) -> bool:
    if command in {"quit", "exit", "q"}:
        return False
    if command == "help":
        _write(sink, _HELP)
    elif command == "new":
        archived = session.new_chat()
        _write(sink, f"Archived {archived.session_id}." if archived else "Started a new conversation.")
    elif command == "clear":
        session.clear_conversation()
        _write(sink, "Conversation cleared.")
    elif command == "cancel":
        _write(sink, f"Cancelled {session.cancel()} request(s).")
    elif command == "history":
        sessions = session.archive.sessions()
        if not sessions:
            _write(sink, "No archived conversations.")
        for archived in sessions:
            _write(sink, f"{archived.session_id}  {archived.preview}")
    elif command == "state":
        _write(sink, json.dumps(session.state(), indent=2))
    else:
        _write(sink, f"Unknown command /{command}. Type /help for commands.")
    return True


def _render_reply(reply: ChatReply) -> str:
    prefix = "assistant" if not reply.is_fallback else f"assistant ({reply.state.value})"
    return f"{prefix}> {reply.text}"


def _render_result(result: Any) -> str:
    if isinstance(result, ChatReply):
        return _render_reply(result)
    to_dict = getattr(result, "to_dict", None)
    if callable(to_dict):
        result = to_dict()
    return json.dumps(result, indent=2, default=str)


def _write(sink: TextIO, text: str) -> None:
    sink.write(text + "\n")
    sink.flush()


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="kalai",
        description="Chat with the Kalai assistant or inspect its configuration.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings",
        metavar="PATH",
        help="Override the default ~/.kalai/settings.json path.",
    )
    parser.add_argument(
        "--conversation",
        metavar="PATH",
        help="Override the default ~/.kalai/conversation.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings before launch (repeatable).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging on the console.",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for entry in items:
        key, value = parse_override(entry)
        overrides[key] = value
    return overrides


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    metadata = {
        "path": str(store.path),
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("KALAI_"))


__all__ = ["configure_logging", "load_settings", "main", "run_repl"]
