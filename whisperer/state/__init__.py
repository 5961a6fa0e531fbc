"""Connection state containers."""

from .registry import Connection, ConnectionRegistry, append_log_line, synthesize_uuid
from .stats import LinkStats

__all__ = [
    "Connection",
    "ConnectionRegistry",
    "LinkStats",
    "append_log_line",
    "synthesize_uuid",
]
