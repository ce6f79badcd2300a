"""Shared logging configuration and logger factory."""

from __future__ import annotations

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict


_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_LOG_FILE_NAME = "gem_insight.log"
_STANDARD_KEYS = frozenset(logging.makeLogRecord({}).__dict__.keys()) | {"stack_info", "asctime", "message"}


def _log_root() -> Path:
    override = os.getenv("GEM_INSIGHT_LOG_DIR")
    if override:
        return Path(override).expanduser()
    return _PROJECT_ROOT / "log"


def _log_level() -> int:
    raw = os.getenv("GEM_INSIGHT_LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.INFO


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: value for key, value in record.__dict__.items() if key not in _STANDARD_KEYS}


class _StructuredFormatter(logging.Formatter):
    """Formatter that renders records as single-line JSON objects (JSONL-friendly)."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        payload.update(_record_extras(record))

        # default=str keeps enums, paths and exceptions passed through ``extra=`` printable.
        return json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)


class _ConsoleFormatter(logging.Formatter):
    """Formatter for console output that renders ``extra`` fields as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = _record_extras(record)
        if not extras:
            return base

        parts = [f"{key}={value!r}" for key, value in sorted(extras.items())]
        return f"{base} | " + " ".join(parts)


def _configure_root_logger() -> None:
    """Configure the root logger with console and file handlers if needed."""

    root = logging.getLogger()
    if root.handlers:
        return

    root.setLevel(_log_level())

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(_ConsoleFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(console_handler)

    try:
        log_root = _log_root()
        log_root.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_root / _LOG_FILE_NAME,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(_StructuredFormatter())
        root.addHandler(file_handler)
    except OSError:
        # Read-only checkouts and sandboxed workers run with console logging only.
        root.debug("file_logging_unavailable")


def get_logger(name: str, extra: Dict[str, Any] | None = None) -> logging.LoggerAdapter:
    """Return a structured logger adapter for the given name.

    The first call configures the root handlers. Callers can pass a base
    ``extra`` mapping that is attached to every record emitted through the
    returned adapter; per-call ``extra=`` values are merged on top of it.
    """

    _configure_root_logger()
    return _MergingAdapter(logging.getLogger(name), extra or {})


class _MergingAdapter(logging.LoggerAdapter):
    """Adapter that merges per-call ``extra`` with the adapter's base context."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        call_extra = kwargs.get("extra") or {}
        kwargs["extra"] = {**(self.extra or {}), **call_extra}
        return msg, kwargs


__all__ = ["get_logger"]
