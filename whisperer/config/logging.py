"""Process logging for the whisperer daemon and embedding applications."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from logging import Handler
from logging.config import dictConfig
from logging.handlers import SysLogHandler
from pathlib import Path
from typing import Any

import msgspec

from .model import EngineConfig

SYSLOG_SOCKETS: tuple[Path, ...] = (Path("/dev/log"), Path("/var/run/log"))
STREAM_ENV = "WHISPERER_LOG_STREAM"

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def render_value(value: Any) -> Any:
    """Make *value* JSON-safe. Bytes are shown as uppercase hex, never decoded."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"[{' '.join(f'{b:02X}' for b in bytes(value))}]"
    return str(value)


class StructuredLogFormatter(logging.Formatter):
    """One JSON object per record, logger names relative to ``whisperer``."""

    PREFIX = "whisperer."

    def format(self, record: logging.LogRecord) -> str:
        name = record.name.removeprefix(self.PREFIX)
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": name,
            "message": record.getMessage(),
        }
        uuid = getattr(record, "uuid", None)
        if uuid is not None:
            payload["uuid"] = uuid

        extras = {
            key: render_value(value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key != "uuid" and not key.startswith("_")
        }
        if extras:
            payload["extra"] = extras
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return msgspec.json.encode(payload).decode("utf-8")


def build_handler() -> Handler:
    """Syslog when a local socket exists, stderr otherwise."""
    if os.environ.get(STREAM_ENV):
        return logging.StreamHandler()
    for candidate in SYSLOG_SOCKETS:
        if candidate.exists():
            handler = SysLogHandler(address=str(candidate), facility=SysLogHandler.LOG_DAEMON)
            handler.ident = "whisperer "
            return handler
    return logging.StreamHandler()


def configure_logging(config: EngineConfig | None = None) -> None:
    """Configure root logging from *config* (INFO unless ``debug_logging``)."""
    debug_logging = bool(config.debug_logging) if config is not None else False
    level_name = "DEBUG" if debug_logging else "INFO"

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structured": {
                    "()": "whisperer.config.logging.StructuredLogFormatter",
                }
            },
            "handlers": {
                "whisperer": {
                    "()": build_handler,
                    "level": level_name,
                    "formatter": "structured",
                }
            },
            "loggers": {
                # aiomqtt's client logger is chatty at DEBUG.
                "whisperer.transport.mqtt.client": {"level": "INFO"},
            },
            "root": {
                "level": level_name,
                "handlers": ["whisperer"],
            },
        }
    )
    logging.getLogger("whisperer").info("Logging configured at level %s", level_name)


__all__ = ["StructuredLogFormatter", "build_handler", "configure_logging", "render_value"]
