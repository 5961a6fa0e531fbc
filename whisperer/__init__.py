"""Device Whisperer: multi-connection framing, dispatch and liveness engine."""

__version__ = "0.4.0"

from .codec import JsonCodec, MessageCodec, MsgpackCodec, RawCodec  # noqa: E402
from .config.model import DeviceConfig, EngineConfig  # noqa: E402
from .config.settings import load_config, resolve_config  # noqa: E402
from .decoder import FrameDecoder  # noqa: E402
from .dispatcher import HandlerContext, TopicDispatcher  # noqa: E402
from .engine import DeviceWhisperer  # noqa: E402
from .errors import (  # noqa: E402
    ConfigError,
    FrameDecodeError,
    HandlerError,
    TransportError,
    UnknownConnectionError,
    WhispererError,
)
from .protocol.structures import (  # noqa: E402
    DecodedMessage,
    Health,
    LogLevel,
    LogLine,
    SlipFrame,
    TextLine,
)
from .reconnect import ReconnectionCoordinator  # noqa: E402
from .state.registry import Connection, ConnectionRegistry  # noqa: E402
from .watchdog import LivenessMonitor  # noqa: E402

__all__ = [
    "ConfigError",
    "Connection",
    "ConnectionRegistry",
    "DecodedMessage",
    "DeviceConfig",
    "DeviceWhisperer",
    "EngineConfig",
    "FrameDecodeError",
    "FrameDecoder",
    "HandlerContext",
    "HandlerError",
    "Health",
    "JsonCodec",
    "LivenessMonitor",
    "LogLevel",
    "LogLine",
    "MessageCodec",
    "MsgpackCodec",
    "RawCodec",
    "ReconnectionCoordinator",
    "SlipFrame",
    "TextLine",
    "TopicDispatcher",
    "TransportError",
    "UnknownConnectionError",
    "WhispererError",
    "load_config",
    "resolve_config",
]
