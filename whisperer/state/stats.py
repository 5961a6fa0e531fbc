"""Per-connection traffic counters consumed by the metrics collector."""

from __future__ import annotations

import time
from typing import Any

import msgspec


class LinkStats(msgspec.Struct):
    """Mutable counters for one connection's receive path."""

    bytes_received: int = 0
    bytes_sent: int = 0
    messages_decoded: int = 0
    text_lines: int = 0
    slip_frames: int = 0
    decode_errors: int = 0
    garbage_bytes: int = 0
    handler_errors: int = 0
    unknown_topics: int = 0
    reconnects: int = 0
    last_event_unix: float = 0.0

    def mark(self) -> None:
        self.last_event_unix = time.time()

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


__all__ = ["LinkStats"]
