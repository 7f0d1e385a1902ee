"""Structured logging helpers."""
from __future__ import annotations

import json
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Iterator

_LOG_FORMAT = "%(message)s"
_RUN_ID: ContextVar[str | None] = ContextVar("run_id", default=None)
_COMMAND: ContextVar[str | None] = ContextVar("command", default=None)


def _timestamp() -> str:
    """Return an ISO-8601 timestamp with millisecond precision."""

    return datetime.now(tz=timezone.utc).isoformat(timespec="milliseconds")


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def set_run_id(run_id: str | None) -> Token[str | None]:
    """Bind the invocation identifier into the logging context."""

    return _RUN_ID.set(run_id)


def reset_run_id(token: Token[str | None]) -> None:
    """Reset the invocation identifier context to a previous token."""

    _RUN_ID.reset(token)


def get_run_id() -> str | None:
    """Return the current invocation identifier, if any."""

    return _RUN_ID.get()


def get_command() -> str | None:
    """Return the CLI subcommand bound to the current invocation, if any."""

    return _COMMAND.get()


def redact_secret(value: str | None) -> str:
    """Mask a secret so only a short prefix and suffix remain visible."""

    if not value:
        return ""
    if len(value) <= 8:
        if len(value) <= 2:
            return "*" * len(value)
        return f"{value[0]}{'*' * (len(value) - 2)}{value[-1]}"
    return f"{value[:4]}...{value[-4:]}"


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload = {
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
            "timestamp": getattr(record, "timestamp", _timestamp()),
        }
        run_id = getattr(record, "run_id", None) or get_run_id()
        if run_id:
            payload["run_id"] = run_id
        command = get_command()
        if command:
            payload["command"] = command
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key.startswith("_json_"):
                payload[key[6:]] = value
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: int | str = logging.INFO) -> None:
    """Configure application-wide JSON logging."""

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter(_LOG_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(handler)


def json_log(logger: logging.Logger, level: int, message: str, **fields: Any) -> None:
    """Emit a structured JSON log entry with optional payload fields."""

    extras = {f"_json_{key}": value for key, value in fields.items()}
    extras.setdefault("timestamp", _timestamp())
    run_id = get_run_id()
    if run_id:
        extras.setdefault("run_id", run_id)
    logger.log(level, message, extra=extras)


@contextmanager
def scoped_run_id(run_id: str | None = None, *, command: str | None = None) -> Iterator[str]:
    """Bind an invocation identifier, and optionally the subcommand, for every log entry."""

    run_id = run_id or new_run_id()
    token = set_run_id(run_id)
    command_token = _COMMAND.set(command)
    try:
        yield run_id
    finally:
        _COMMAND.reset(command_token)
        reset_run_id(token)


__all__ = [
    "JsonLogFormatter",
    "configure_logging",
    "get_command",
    "get_run_id",
    "json_log",
    "new_run_id",
    "redact_secret",
    "reset_run_id",
    "scoped_run_id",
    "set_run_id",
]
