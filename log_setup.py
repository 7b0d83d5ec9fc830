"""Logging setup: logfmt/JSON formatters and secret redaction."""

from __future__ import annotations

import json
import logging
import re
import sys
import time
from datetime import datetime, timezone
from enum import Enum
from typing import IO, Optional, Sequence

REDACTED = "[REDACTED]"

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def record_fields(record: logging.LogRecord) -> dict:
    """Return the ``extra`` fields attached to a record."""
    return {k: v for k, v in vars(record).items() if k not in _RESERVED and not k.startswith("_")}


def compile_patterns(patterns: Sequence[str]) -> list[re.Pattern]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            logging.getLogger(__name__).warning("Dropping invalid redact pattern %r: %s", pattern, e)
    return compiled


def redact_string(text: str, patterns: Sequence[re.Pattern]) -> str:
    """Replace all matches of the compiled patterns with [REDACTED]."""
    for pattern in patterns:
        text = pattern.sub(REDACTED, text)
    return text


class RedactingFilter(logging.Filter):
    """Logging filter that redacts sensitive patterns from messages and string args."""

    def __init__(self, patterns: Sequence[str], name: str = "") -> None:
        super().__init__(name)
        self._patterns = compile_patterns(patterns)

    def filter(self, record: logging.LogRecord) -> bool:
        if self._patterns:
            record.msg = redact_string(str(record.msg), self._patterns)
            if isinstance(record.args, tuple):
                record.args = tuple(
                    redact_string(a, self._patterns) if isinstance(a, str) else a
                    for a in record.args
                )
        return True


def _logfmt_value(value: object) -> str:
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, float):
        text = f"{value:.3f}"
    elif isinstance(value, Enum):
        text = str(value.value)
    else:
        text = str(value)
    if not text or any(c in text for c in ' ="'):
        return json.dumps(text)
    return text


class LogfmtFormatter(logging.Formatter):
    """``<timestamp> LEVEL message key=value ...`` lines."""

    def __init__(self, timestamp_format: str = "time", start_time: Optional[float] = None) -> None:
        super().__init__()
        self.timestamp_format = timestamp_format
        self.start_time = time.time() if start_time is None else start_time

    def _timestamp(self, record: logging.LogRecord) -> str:
        fmt = self.timestamp_format
        if fmt == "none":
            return ""
        if fmt == "relative":
            return f"[+{record.created - self.start_time:.3f}s]"
        if fmt == "iso":
            return datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        stamp = time.strftime("%H:%M:%S", time.localtime(record.created))
        return f"[{stamp}.{int(record.msecs):03d}]"

    def format(self, record: logging.LogRecord) -> str:
        parts = []
        ts = self._timestamp(record)
        if ts:
            parts.append(ts)
        parts.append("WARN" if record.levelno == logging.WARNING else record.levelname)
        parts.append(record.getMessage())
        fields = record_fields(record)
        if fields:
            parts.append(" ".join(f"{k}={_logfmt_value(v)}" for k, v in fields.items()))
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class JsonFormatter(logging.Formatter):
    """Structured JSON log formatter for machine-readable output."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        }
        payload.update(record_fields(record))
        return json.dumps(payload, default=str)


def setup_logging(
    level: str = "info",
    timestamp_format: str = "time",
    json_log: bool = False,
    redact_patterns: Sequence[str] = (),
    stream: Optional[IO[str]] = None,
) -> logging.Handler:
    """Configure the root logger with one stderr handler and return it."""
    handler = logging.StreamHandler(stream or sys.stderr)
    if json_log:
        handler.setFormatter(JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
    else:
        handler.setFormatter(LogfmtFormatter(timestamp_format))
    if redact_patterns:
        handler.addFilter(RedactingFilter(redact_patterns))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(LEVELS.get(level, logging.INFO))
    return handler
