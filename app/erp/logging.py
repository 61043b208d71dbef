"""
Logging configuration for the application.

Structured fields travel on each record as ``record.fields`` (see FieldsLogger),
so the same records render as text for humans or as JSON lines for collectors.
"""
from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class FieldsLogger(logging.LoggerAdapter):
    """
    Logger bound to a set of structured fields.

    Binding never mutates: with_fields() returns a new adapter, so a logger
    handed to one request cannot leak fields into another.
    """

    def __init__(self, logger: logging.Logger, fields: Mapping[str, Any] | None = None) -> None:
        super().__init__(logger, dict(fields or {}))

    @property
    def fields(self) -> dict[str, Any]:
        return dict(self.extra)

    def with_fields(self, **fields: Any) -> "FieldsLogger":
        return FieldsLogger(self.logger, {**self.extra, **fields})

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        extra = dict(kwargs.get("extra") or {})
        extra["fields"] = {**self.extra, **(extra.get("fields") or {})}
        kwargs["extra"] = extra
        return msg, kwargs


def record_fields(record: logging.LogRecord) -> dict[str, Any]:
    return dict(getattr(record, "fields", None) or {})


class FieldsFormatter(logging.Formatter):
    """Text formatter that appends bound fields as key=value pairs."""

    def __init__(self) -> None:
        super().__init__(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = record_fields(record)
        if not fields:
            return line
        pairs = " ".join(f"{k}={_compact(v)}" for k, v in fields.items())
        return f"{line} | {pairs}"


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(record_fields(record))
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, separators=(",", ":"))


def _compact(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str, separators=(",", ":"))
    return str(value)


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure root logging for the application.

    Args:
        level: The log level string (DEBUG, INFO, WARNING, ERROR).
        json_logs: Emit JSON lines instead of the text format.
    """
    root = logging.getLogger()
    # Replace only our own handler; handlers installed by the host (gunicorn, pytest) stay.
    for existing in [h for h in root.handlers if getattr(h, "_erp_handler", False)]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_logs else FieldsFormatter())
    handler._erp_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Suppress noisy third-party loggers
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("gunicorn.access").setLevel(logging.WARNING)
