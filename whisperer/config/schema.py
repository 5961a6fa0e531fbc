"""Marshmallow schema for EngineConfig validation."""

from __future__ import annotations

import codecs
from typing import Any, Dict

from marshmallow import Schema, ValidationError, fields, post_load, pre_load, validate, validates_schema

from ..const import (
    DEFAULT_DEBUG_LOGGING,
    DEFAULT_FAIL_INTERVAL,
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
from .model import DeviceConfig, EngineConfig

DEVICE_KINDS = ("serial", "websocket", "mqtt")
_NULLABLE = frozenset(
    {"mqtt_user", "mqtt_pass", "mqtt_client_id", "mqtt_cafile", "mqtt_certfile", "mqtt_keyfile"}
)


class HexBytes(fields.Field):
    """Bytes given as a hex string (``"AA 55"``, ``"aa55"``) or raw bytes."""

    default_error_messages = {"invalid": "Not a valid hex byte string."}

    def _deserialize(self, value: Any, attr: str | None, data: Any, **kwargs: Any) -> bytes:
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        if not isinstance(value, str):
            raise self.make_error("invalid")
        try:
            return bytes.fromhex(value.replace(":", " "))
        except ValueError as exc:
            raise self.make_error("invalid") from exc

    def _serialize(self, value: Any, attr: str | None, obj: Any, **kwargs: Any) -> str | None:
        return None if value is None else bytes(value).hex().upper()


class DeviceSchema(Schema):
    """One statically configured device connection."""

    kind = fields.Str(required=True, validate=validate.OneOf(DEVICE_KINDS))
    uuid = fields.Str(load_default=None, allow_none=True, validate=validate.Length(min=1))
    name = fields.Str(load_default=None, allow_none=True)
    port = fields.Str(load_default=None, allow_none=True)
    baudrate = fields.Int(load_default=DEFAULT_SERIAL_BAUDRATE, validate=validate.Range(min=300))
    reset_on_connect = fields.Bool(load_default=False)
    host = fields.Str(load_default=None, allow_none=True)
    ws_port = fields.Int(load_default=DEFAULT_WEBSOCKET_PORT, validate=validate.Range(min=1, max=65535))
    slip = fields.Bool(load_default=False)
    ping_payload = HexBytes(load_default=None, allow_none=True)

    @validates_schema
    def validate_endpoint(self, data: Dict[str, Any], **kwargs: Any) -> None:
        kind = data["kind"]
        if kind == "serial" and not data.get("port"):
            raise ValidationError("serial devices need a port", field_name="port")
        if kind == "websocket" and not data.get("host"):
            raise ValidationError("websocket devices need a host", field_name="host")
        if kind in ("websocket", "mqtt") and not data.get("uuid"):
            raise ValidationError(f"{kind} devices need a uuid", field_name="uuid")

    @post_load
    def make_device(self, data: Dict[str, Any], **kwargs: Any) -> DeviceConfig:
        return DeviceConfig(**data)


class EngineConfigSchema(Schema):
    """Declarative validation schema for engine and daemon configuration."""

    # Decoding
    topic_field = fields.Str(load_default=DEFAULT_TOPIC_FIELD, validate=validate.Length(min=1))
    header = HexBytes(load_default=b"")
    text_encoding = fields.Str(load_default=DEFAULT_TEXT_ENCODING, validate=validate.Length(min=1))
    log_capacity = fields.Int(load_default=DEFAULT_LOG_CAPACITY, validate=validate.Range(min=1))

    # Liveness
    ping_interval = fields.Float(load_default=DEFAULT_PING_INTERVAL, validate=validate.Range(min=0, min_inclusive=False))
    warn_interval = fields.Float(load_default=DEFAULT_WARN_INTERVAL, validate=validate.Range(min=0, min_inclusive=False))
    fail_interval = fields.Float(load_default=DEFAULT_FAIL_INTERVAL, validate=validate.Range(min=0, min_inclusive=False))

    # Reconnection
    max_retries = fields.Int(load_default=DEFAULT_MAX_RETRIES, validate=validate.Range(min=0))
    retry_delay = fields.Float(load_default=DEFAULT_RETRY_DELAY, validate=validate.Range(min=0.0))
    quiescence_delay = fields.Float(load_default=DEFAULT_QUIESCENCE_DELAY, validate=validate.Range(min=0.0))
    idle_poll_interval = fields.Float(load_default=DEFAULT_IDLE_POLL_INTERVAL, validate=validate.Range(min=0.0))

    # MQTT
    mqtt_host = fields.Str(load_default=DEFAULT_MQTT_HOST, validate=validate.Length(min=1))
    mqtt_port = fields.Int(load_default=DEFAULT_MQTT_PORT, validate=validate.Range(min=1, max=65535))
    mqtt_user = fields.Str(load_default=None, allow_none=True)
    mqtt_pass = fields.Str(load_default=None, allow_none=True)
    mqtt_client_id = fields.Str(load_default=None, allow_none=True)
    mqtt_tls = fields.Bool(load_default=DEFAULT_MQTT_TLS)
    mqtt_tls_insecure = fields.Bool(load_default=False)
    mqtt_cafile = fields.Str(load_default=None, allow_none=True)
    mqtt_certfile = fields.Str(load_default=None, allow_none=True)
    mqtt_keyfile = fields.Str(load_default=None, allow_none=True)
    mqtt_keepalive = fields.Int(load_default=DEFAULT_MQTT_KEEPALIVE, validate=validate.Range(min=1))
    mqtt_qos = fields.Int(load_default=DEFAULT_MQTT_QOS, validate=validate.OneOf((0, 1, 2)))
    sub_topic = fields.Str(load_default=DEFAULT_SUB_TOPIC, validate=validate.Regexp(r".*\{uuid\}.*"))
    pub_topic = fields.Str(load_default=DEFAULT_PUB_TOPIC, validate=validate.Regexp(r".*\{uuid\}.*"))

    # Devices
    devices = fields.List(fields.Nested(DeviceSchema), load_default=list)

    # System
    debug_logging = fields.Bool(load_default=DEFAULT_DEBUG_LOGGING)
    status_interval = fields.Float(load_default=DEFAULT_STATUS_INTERVAL, validate=validate.Range(min=0.0))
    metrics_enabled = fields.Bool(load_default=DEFAULT_METRICS_ENABLED)
    metrics_host = fields.Str(load_default=DEFAULT_METRICS_HOST)
    metrics_port = fields.Int(load_default=DEFAULT_METRICS_PORT, validate=validate.Range(min=0, max=65535))

    @pre_load
    def drop_nulls(self, data: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        return {key: value for key, value in data.items() if value is not None or key in _NULLABLE}

    @validates_schema
    def validate_interval_order(self, data: Dict[str, Any], **kwargs: Any) -> None:
        if not data["ping_interval"] <= data["warn_interval"] <= data["fail_interval"]:
            raise ValidationError(
                "liveness intervals must satisfy ping_interval <= warn_interval <= fail_interval",
                field_name="warn_interval",
            )

    @validates_schema
    def validate_encoding(self, data: Dict[str, Any], **kwargs: Any) -> None:
        try:
            codecs.lookup(data["text_encoding"])
        except LookupError as exc:
            raise ValidationError(f"unknown text encoding {data['text_encoding']!r}", field_name="text_encoding") from exc

    @validates_schema
    def validate_unique_devices(self, data: Dict[str, Any], **kwargs: Any) -> None:
        seen: set[str] = set()
        for device in data.get("devices", ()):
            if device.uuid is None:
                continue
            if device.uuid in seen:
                raise ValidationError(f"duplicate device uuid {device.uuid!r}", field_name="devices")
            seen.add(device.uuid)

    @post_load
    def make_config(self, data: Dict[str, Any], **kwargs: Any) -> EngineConfig:
        data["devices"] = tuple(data.get("devices", ()))
        return EngineConfig(**data)


__all__ = ["DEVICE_KINDS", "DeviceSchema", "EngineConfigSchema", "HexBytes"]
