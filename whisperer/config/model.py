"""Data model for engine configuration."""

from __future__ import annotations

import msgspec

from ..const import (
    DEFAULT_DEBUG_LOGGING,
    DEFAULT_FAIL_INTERVAL,
    DEFAULT_HEADER,
    DEFAULT_IDLE_POLL_INTERVAL,
    DEFAULT_LOG_CAPACITY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_METRICS_ENABLED,
    DEFAULT_METRICS_HOST,
    DEFAULT_METRICS_PORT,
    DEFAULT_MQTT_HOST,
    DEFAULT_MQTT_KEEPALIVE,
    DEFAULT_MQTT_PORT,
    DEFAULT_MQTT_QOS,
    DEFAULT_MQTT_TLS,
    DEFAULT_PING_INTERVAL,
    DEFAULT_PUB_TOPIC,
    DEFAULT_QUIESCENCE_DELAY,
    DEFAULT_RETRY_DELAY,
    DEFAULT_SERIAL_BAUDRATE,
    DEFAULT_STATUS_INTERVAL,
    DEFAULT_SUB_TOPIC,
    DEFAULT_TEXT_ENCODING,
    DEFAULT_TOPIC_FIELD,
    DEFAULT_WARN_INTERVAL,
    DEFAULT_WEBSOCKET_PORT,
)


class DeviceConfig(msgspec.Struct, frozen=True):
    """A device connection created at daemon start."""

    kind: str
    uuid: str | None = None
    name: str | None = None
    port: str | None = None
    baudrate: int = DEFAULT_SERIAL_BAUDRATE
    reset_on_connect: bool = False
    host: str | None = None
    ws_port: int = DEFAULT_WEBSOCKET_PORT
    slip: bool = False
    ping_payload: bytes | None = None


class EngineConfig(msgspec.Struct, frozen=True, kw_only=True):
    """Strongly typed configuration for the engine and the daemon."""

    topic_field: str = DEFAULT_TOPIC_FIELD
    header: bytes = DEFAULT_HEADER
    text_encoding: str = DEFAULT_TEXT_ENCODING
    log_capacity: int = DEFAULT_LOG_CAPACITY

    ping_interval: float = DEFAULT_PING_INTERVAL
    warn_interval: float = DEFAULT_WARN_INTERVAL
    fail_interval: float = DEFAULT_FAIL_INTERVAL

    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY
    quiescence_delay: float = DEFAULT_QUIESCENCE_DELAY
    idle_poll_interval: float = DEFAULT_IDLE_POLL_INTERVAL

    mqtt_host: str = DEFAULT_MQTT_HOST
    mqtt_port: int = DEFAULT_MQTT_PORT
    mqtt_user: str | None = None
    mqtt_pass: str | None = None
    mqtt_client_id: str | None = None
    mqtt_tls: bool = DEFAULT_MQTT_TLS
    mqtt_tls_insecure: bool = False
    mqtt_cafile: str | None = None
    mqtt_certfile: str | None = None
    mqtt_keyfile: str | None = None
    mqtt_keepalive: int = DEFAULT_MQTT_KEEPALIVE
    mqtt_qos: int = DEFAULT_MQTT_QOS
    sub_topic: str = DEFAULT_SUB_TOPIC
    pub_topic: str = DEFAULT_PUB_TOPIC

    devices: tuple[DeviceConfig, ...] = ()

    debug_logging: bool = DEFAULT_DEBUG_LOGGING
    status_interval: float = DEFAULT_STATUS_INTERVAL
    metrics_enabled: bool = DEFAULT_METRICS_ENABLED
    metrics_host: str = DEFAULT_METRICS_HOST
    metrics_port: int = DEFAULT_METRICS_PORT


__all__ = ["DeviceConfig", "EngineConfig"]
