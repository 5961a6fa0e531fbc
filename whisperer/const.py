"""Default values and wire constants for the Device Whisperer engine."""

from __future__ import annotations

from typing import Final

# SLIP framing (RFC 1055 byte values)
SLIP_END: Final[int] = 0xC0
SLIP_ESC: Final[int] = 0xDB
SLIP_ESC_END: Final[int] = 0xDC
SLIP_ESC_ESC: Final[int] = 0xDD

# Length-prefixed framing
LENGTH_PREFIX_SIZE: Final[int] = 2
MAX_FRAME_PAYLOAD: Final[int] = 0xFFFF
LINE_TERMINATOR: Final[int] = 0x0A
GARBAGE_PREVIEW_BYTES: Final[int] = 16

# Connection log ring
DEFAULT_LOG_CAPACITY: Final[int] = 200

# Decoding
DEFAULT_TOPIC_FIELD: Final[str] = "topic"
DEFAULT_TEXT_ENCODING: Final[str] = "utf-8"
DEFAULT_HEADER: Final[bytes] = b""

# Liveness watchdog (seconds)
DEFAULT_PING_INTERVAL: Final[float] = 25.0
DEFAULT_WARN_INTERVAL: Final[float] = 30.0
DEFAULT_FAIL_INTERVAL: Final[float] = 60.0

# Reconnection policy
DEFAULT_MAX_RETRIES: Final[int] = 5
DEFAULT_RETRY_DELAY: Final[float] = 2.0
DEFAULT_QUIESCENCE_DELAY: Final[float] = 0.25
DEFAULT_IDLE_POLL_INTERVAL: Final[float] = 0.01

# Daemon
DEFAULT_DEBUG_LOGGING: Final[bool] = False
DEFAULT_MQTT_HOST: Final[str] = "localhost"
DEFAULT_MQTT_PORT: Final[int] = 8883
DEFAULT_MQTT_KEEPALIVE: Final[int] = 30
DEFAULT_MQTT_TLS: Final[bool] = True
DEFAULT_MQTT_QOS: Final[int] = 1
DEFAULT_SUB_TOPIC: Final[str] = "{uuid}"
DEFAULT_PUB_TOPIC: Final[str] = "{uuid}"
DEFAULT_METRICS_ENABLED: Final[bool] = False
DEFAULT_METRICS_HOST: Final[str] = "127.0.0.1"
DEFAULT_METRICS_PORT: Final[int] = 9131
DEFAULT_STATUS_INTERVAL: Final[float] = 60.0
DEFAULT_SERIAL_BAUDRATE: Final[int] = 115200
DEFAULT_SERIAL_READ_SIZE: Final[int] = 64
DEFAULT_WEBSOCKET_PORT: Final[int] = 443

SUPERVISOR_MIN_BACKOFF: Final[float] = 1.0
SUPERVISOR_MAX_BACKOFF: Final[float] = 30.0

CONFIG_SECTION: Final[str] = "whisperer"
