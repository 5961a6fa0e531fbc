"""Exception taxonomy for the Device Whisperer engine.

Every failure is scoped to one connection: transports raise
:class:`TransportError`, the decoder handles :class:`FrameDecodeError`
internally and handler crashes are wrapped in :class:`HandlerError` for
logging. None of these are allowed to escape a connection task.
"""

from __future__ import annotations


class WhispererError(Exception):
    """Base class for engine errors."""


class ConfigError(WhispererError, ValueError):
    """Raised when engine configuration fails validation."""


class TransportError(WhispererError, OSError):
    """Raised on connect/write failures or an unexpected transport close."""

    def __init__(self, uuid: str, reason: str) -> None:
        super().__init__(f"{uuid}: {reason}")
        self.uuid = uuid
        self.reason = reason


class FrameDecodeError(WhispererError, ValueError):
    """Raised for malformed frames (codec failure or SLIP violation)."""


class HandlerError(WhispererError):
    """Wraps an exception raised by an application topic handler."""

    def __init__(self, topic: object, cause: BaseException) -> None:
        super().__init__(f"handler for topic {topic!r} failed: {cause}")
        self.topic = topic
        self.cause = cause


class UnknownConnectionError(WhispererError, KeyError):
    """Raised when an operation names a uuid the registry does not hold."""


__all__ = [
    "ConfigError",
    "FrameDecodeError",
    "HandlerError",
    "TransportError",
    "UnknownConnectionError",
    "WhispererError",
]
