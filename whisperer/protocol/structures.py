"""Data structures shared by the framing, dispatch and liveness layers."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import IntEnum, StrEnum
from typing import Any, Protocol

import msgspec


class LogLevel(IntEnum):
    """Connection log levels as exposed to the application layer."""

    ERROR = 0
    WARNING = 1
    INFO = 2
    OUTBOUND_TEXT = 3
    OUTBOUND_RAW = 5


class Health(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"


class LogLine(msgspec.Struct, frozen=True):
    """One entry of a connection's log ring."""

    level: LogLevel
    message: Any
    timestamp: datetime = msgspec.field(default_factory=lambda: datetime.now(timezone.utc))


class SlipState(msgspec.Struct):
    """SLIP receive state, scoped to one connection's decoder."""

    in_frame: bool = False
    escape_next: bool = False
    partial: bytearray = msgspec.field(default_factory=bytearray)

    def clear(self) -> None:
        self.in_frame = False
        self.escape_next = False
        self.partial.clear()


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class WatchdogTimers(msgspec.Struct, frozen=True):
    """The three escalating liveness timers of one connection."""

    ping: TimerHandle | None = None
    warn: TimerHandle | None = None
    fail: TimerHandle | None = None

    def cancel(self) -> None:
        for handle in (self.ping, self.warn, self.fail):
            if handle is not None:
                handle.cancel()

    @property
    def armed(self) -> bool:
        return any(handle is not None for handle in (self.ping, self.warn, self.fail))


# --- Decoder output -------------------------------------------------------


class TextLine(msgspec.Struct, frozen=True, tag="text"):
    text: str


class SlipFrame(msgspec.Struct, frozen=True, tag="slip"):
    payload: bytes


class DecodedMessage(msgspec.Struct, frozen=True, tag="message"):
    message: Any
    payload: bytes = b""


DecodedEvent = TextLine | SlipFrame | DecodedMessage


__all__ = [
    "DecodedEvent",
    "DecodedMessage",
    "Health",
    "LogLevel",
    "LogLine",
    "SlipFrame",
    "SlipState",
    "TextLine",
    "TimerHandle",
    "WatchdogTimers",
]
