"""JSON logging to standard output, configured from LOG_LEVEL."""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime

ROOT_NAME = "adnormalizer"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}

_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "taskName",
}

_handler: logging.Handler | None = None


def _level_name(levelno: int) -> str:
    if levelno >= logging.ERROR:
        return "ERROR"
    if levelno >= logging.WARNING:
        return "WARN"
    if levelno >= logging.INFO:
        return "INFO"
    return "DEBUG"


class JsonFormatter(logging.Formatter):
    """Formats records as one JSON object per line; errors carry their source."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "time": datetime.fromtimestamp(record.created).astimezone().isoformat(),
            "level": _level_name(record.levelno),
        }
        if record.levelno >= logging.ERROR:
            entry["source"] = {
                "function": record.funcName,
                "file": record.pathname,
                "line": record.lineno,
            }
        entry["msg"] = record.getMessage()
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                entry[key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level_name: str | None = None) -> logging.Logger:
    """Set up the package logger; the level comes from LOG_LEVEL when not given."""
    global _handler
    if level_name is None:
        level_name = os.environ.get("LOG_LEVEL", "")
    level = _LEVELS.get(level_name.upper(), logging.INFO)
    logger = logging.getLogger(ROOT_NAME)
    if _handler is not None:
        logger.removeHandler(_handler)
    _handler = logging.StreamHandler(sys.stdout)
    _handler.setFormatter(JsonFormatter())
    logger.addHandler(_handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    """Return the package logger or one of its children."""
    if not name or name == ROOT_NAME:
        return logging.getLogger(ROOT_NAME)
    if name.startswith(ROOT_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_NAME}.{name}")