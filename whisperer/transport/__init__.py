"""Transport adapters for the Device Whisperer engine."""

from .base import Transport
from .mqtt import MqttDeviceTransport, MqttHub, build_tls_context, uuid_from_topic
from .queue import QueueTransport
from .serial import SerialTransport
from .websocket import WebSocketTransport

__all__ = [
    "MqttDeviceTransport",
    "MqttHub",
    "QueueTransport",
    "SerialTransport",
    "Transport",
    "WebSocketTransport",
    "build_tls_context",
    "uuid_from_topic",
]
