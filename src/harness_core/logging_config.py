"""Structured logging configuration."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, MutableMapping

from harness_core._compat import utc_now

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class StructuredFormatter(logging.Formatter):
    """Formatter that outputs JSON-structured log records."""

    def format(self, record: logging.LogRecord) -> str:
        log_dict: dict[str, Any] = {
            "timestamp": utc_now().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            log_dict.update(extra_fields)

        if record.exc_info:
            log_dict["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_dict, sort_keys=True, default=str)


class TextFormatter(logging.Formatter):
    """Plain formatter that appends structured fields as ``key=value`` pairs."""

    def __init__(self) -> None:
        super().__init__(TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict) and extra_fields:
            pairs = " ".join(f"{k}={extra_fields[k]}" for k in sorted(extra_fields))
            line = f"{line} [{pairs}]"
        return line


class StructuredLogger(logging.LoggerAdapter):
    """Logger adapter that supports structured fields."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = {"extra_fields": extra}
        return msg, kwargs


_HANDLER_NAME = "harness"


def configure_logging(level: int = logging.WARNING, structured: bool = False) -> None:
    """Install (or replace) the harness stderr handler on the ``harness_core`` logger."""
    logger = logging.getLogger("harness_core")
    logger.setLevel(level)
    for existing in list(logger.handlers):
        if existing.get_name() == _HANDLER_NAME:
            logger.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(StructuredFormatter() if structured else TextFormatter())
    logger.addHandler(handler)


def level_from_flags(verbose: int, quiet: bool) -> int:
    if quiet:
        return logging.ERROR
    if verbose >= 2:
        return logging.DEBUG
    if verbose == 1:
        return logging.INFO
    return logging.WARNING


def get_logger(name: str, **extra: Any) -> StructuredLogger:
    """Get a structured logger with optional default extra fields."""
    return StructuredLogger(logging.getLogger(name), extra)
