"""MQTT transport: one broker session shared by many device connections.

Each device is addressed through a subscribe topic and a publish topic
derived from its uuid. The broker never reports that a device went away, so
device transports stay "open" across broker reconnects and health is left to
the liveness monitor.
"""

from __future__ import annotations

import asyncio
import logging
import re
import ssl
from collections.abc import Callable
from pathlib import Path
from typing import Any

import aiomqtt
import tenacity
from transitions import Machine

from ..const import (
    DEFAULT_MQTT_HOST,
    DEFAULT_MQTT_KEEPALIVE,
    DEFAULT_MQTT_PORT,
    DEFAULT_MQTT_QOS,
    DEFAULT_PUB_TOPIC,
    DEFAULT_SUB_TOPIC,
    SUPERVISOR_MAX_BACKOFF,
    SUPERVISOR_MIN_BACKOFF,
)
from ..errors import ConfigError

logger = logging.getLogger("whisperer.transport.mqtt")

_CLOSE = object()

UuidResolver = Callable[[str, bytes], str | None]


def _log_retry_attempt(retry_state: tenacity.RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.info(
        "Reconnecting MQTT after %s (attempt %d, next wait %.2fs)...",
        exc,
        retry_state.attempt_number,
        retry_state.next_action.sleep if retry_state.next_action else 0,
    )


def topic_for(template: str, uuid: str) -> str:
    return template.format(uuid=uuid)


def uuid_from_topic(template: str) -> UuidResolver:
    """Build a resolver that inverts a ``{uuid}`` topic template."""
    if "{uuid}" not in template:
        raise ConfigError(f"topic template {template!r} must contain '{{uuid}}'")
    head, _, tail = template.partition("{uuid}")
    pattern = re.compile(f"^{re.escape(head)}(?P<uuid>[^/]+){re.escape(tail)}$")

    def _resolve(topic: str, payload: bytes) -> str | None:
        match = pattern.match(topic)
        return match.group("uuid") if match else None

    return _resolve


def build_tls_context(
    *,
    cafile: str | None = None,
    certfile: str | None = None,
    keyfile: str | None = None,
    insecure: bool = False,
) -> ssl.SSLContext:
    """Create a client TLS context for the broker session."""
    try:
        if cafile:
            if not Path(cafile).exists():
                raise ConfigError(f"MQTT TLS CA file missing: {cafile}")
            context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cafile=cafile)
        else:
            context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        if insecure:
            context.check_hostname = False
        if certfile or keyfile:
            if not (certfile and keyfile):
                raise ConfigError("Both certfile and keyfile must be provided for mTLS.")
            context.load_cert_chain(certfile, keyfile)
        return context
    except (OSError, ssl.SSLError) as exc:
        raise ConfigError(f"TLS setup failed: {exc}") from exc


class MqttDeviceTransport:
    """Per-device view of an :class:`MqttHub`."""

    def __init__(self, hub: MqttHub, uuid: str, *, ping_payload: bytes | None = None) -> None:
        self.hub = hub
        self.uuid = uuid
        self.ping_payload = ping_payload
        self.subscribed = False
        self._inbox: asyncio.Queue[object] = asyncio.Queue()

    @property
    def sub_topic(self) -> str:
        return topic_for(self.hub.sub_topic, self.uuid)

    @property
    def pub_topic(self) -> str:
        return topic_for(self.hub.pub_topic, self.uuid)

    async def connect(self) -> bool:
        stale = self._drain()
        if stale:
            logger.debug("%s: discarded %d queued items from the previous session", self.uuid, stale)
        self.subscribed = await self.hub.subscribe(self)
        return self.subscribed

    async def disconnect(self) -> bool:
        was_subscribed, self.subscribed = self.subscribed, False
        await self.hub.unsubscribe(self)
        self._inbox.put_nowait(_CLOSE)
        return was_subscribed

    async def send(self, data: bytes) -> bool:
        return await self.hub.publish(self.pub_topic, data)

    async def receive(self) -> bytes | None:
        item = await self._inbox.get()
        if item is _CLOSE:
            return None
        return item  # type: ignore[return-value]

    async def probe(self) -> None:
        if self.ping_payload is not None:
            await self.send(self.ping_payload)

    def deliver(self, payload: bytes) -> None:
        self._inbox.put_nowait(payload)

    def _drain(self) -> int:
        dropped = 0
        while not self._inbox.empty():
            self._inbox.get_nowait()
            dropped += 1
        return dropped


class MqttHub:
    """Shared broker session with FSM-based state management."""

    STATE_DISCONNECTED = "disconnected"
    STATE_CONNECTING = "connecting"
    STATE_READY = "ready"

    def __init__(
        self,
        *,
        host: str = DEFAULT_MQTT_HOST,
        port: int = DEFAULT_MQTT_PORT,
        username: str | None = None,
        password: str | None = None,
        client_id: str | None = None,
        tls_context: ssl.SSLContext | None = None,
        keepalive: int = DEFAULT_MQTT_KEEPALIVE,
        qos: int = DEFAULT_MQTT_QOS,
        sub_topic: str = DEFAULT_SUB_TOPIC,
        pub_topic: str = DEFAULT_PUB_TOPIC,
        resolve_uuid: UuidResolver | None = None,
        on_ready_change: Callable[[bool], None] | None = None,
        on_traffic: Callable[[str], object] | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.client_id = client_id
        self.tls_context = tls_context
        self.keepalive = keepalive
        self.qos = qos
        self.sub_topic = sub_topic
        self.pub_topic = pub_topic
        self.resolve_uuid = resolve_uuid or uuid_from_topic(sub_topic)
        self._on_ready_change = on_ready_change
        self._on_traffic = on_traffic
        self._client: aiomqtt.Client | None = None
        self._devices: dict[str, MqttDeviceTransport] = {}
        self.fsm_state = self.STATE_DISCONNECTED

        self.machine = Machine(
            model=self,
            states=[self.STATE_DISCONNECTED, self.STATE_CONNECTING, self.STATE_READY],
            initial=self.STATE_DISCONNECTED,
            model_attribute="fsm_state",
            ignore_invalid_triggers=True,
            after_state_change="_report_ready",
        )
        self.machine.add_transition("connect", "*", self.STATE_CONNECTING)
        self.machine.add_transition("connected", self.STATE_CONNECTING, self.STATE_READY)
        self.machine.add_transition("disconnect", "*", self.STATE_DISCONNECTED)

    @property
    def ready(self) -> bool:
        return self.fsm_state == self.STATE_READY and self._client is not None

    def device(self, uuid: str, *, ping_payload: bytes | None = None) -> MqttDeviceTransport:
        """Return the transport for *uuid*, creating it on first use."""
        transport = self._devices.get(uuid)
        if transport is None:
            transport = self._devices[uuid] = MqttDeviceTransport(self, uuid, ping_payload=ping_payload)
        return transport

    def release(self, uuid: str) -> None:
        self._devices.pop(uuid, None)

    async def subscribe(self, transport: MqttDeviceTransport) -> bool:
        self._devices[transport.uuid] = transport
        client = self._client
        if client is None or not self.ready:
            logger.warning("Skipped subscribe for %s - broker session not ready", transport.uuid)
            return False
        try:
            await client.subscribe(transport.sub_topic, qos=self.qos)
        except aiomqtt.MqttError as exc:
            logger.error("Subscribe to %s failed: %s", transport.sub_topic, exc)
            return False
        logger.info("MQTT subscribed: %s", transport.sub_topic)
        return True

    async def unsubscribe(self, transport: MqttDeviceTransport) -> None:
        client = self._client
        if client is None or not self.ready:
            return
        try:
            await client.unsubscribe(transport.sub_topic)
        except aiomqtt.MqttError as exc:
            logger.warning("Unsubscribe from %s failed: %s", transport.sub_topic, exc)
            return
        logger.info("MQTT unsubscribed: %s", transport.sub_topic)

    async def publish(self, topic: str, payload: bytes) -> bool:
        client = self._client
        if client is None or not self.ready:
            logger.warning("Dropped publish to %s - broker session not ready", topic)
            return False
        try:
            await client.publish(topic, payload, qos=self.qos)
        except aiomqtt.MqttError as exc:
            logger.warning("Publish to %s failed: %s", topic, exc)
            return False
        return True

    async def run(self) -> None:
        """Main run loop with reconnection logic."""
        retryer = tenacity.AsyncRetrying(
            wait=tenacity.wait_exponential(multiplier=SUPERVISOR_MIN_BACKOFF, max=SUPERVISOR_MAX_BACKOFF),
            retry=tenacity.retry_if_exception_type((aiomqtt.MqttError, OSError, asyncio.TimeoutError)),
            before_sleep=_log_retry_attempt,
            reraise=True,
        )
        try:
            async for attempt in retryer:
                with attempt:
                    try:
                        await self._session()
                    finally:
                        self._client = None
                        self.trigger("disconnect")
        except asyncio.CancelledError:
            logger.info("MQTT hub stopping.")
            raise

    async def _session(self) -> None:
        if not self.username:
            logger.warning("MQTT connecting without authentication (anonymous)")
        self.trigger("connect")
        async with aiomqtt.Client(
            hostname=self.host,
            port=self.port,
            username=self.username or None,
            password=self.password or None,
            identifier=self.client_id,
            tls_context=self.tls_context,
            keepalive=self.keepalive,
            logger=logging.getLogger("whisperer.transport.mqtt.client"),
        ) as client:
            self._client = client
            self.trigger("connected")
            logger.info("Connected to MQTT broker %s:%d", self.host, self.port)
            await self._resubscribe()
            async for message in client.messages:
                self._route(str(message.topic), message.payload)

    async def _resubscribe(self) -> None:
        for transport in list(self._devices.values()):
            if transport.subscribed:
                await self.subscribe(transport)

    def _route(self, topic: str, payload: Any) -> None:
        if isinstance(payload, str):
            data = payload.encode("utf-8")
        elif isinstance(payload, (bytes, bytearray)):
            data = bytes(payload)
        elif payload is None:
            data = b""
        else:
            data = str(payload).encode("utf-8")
        uuid = self.resolve_uuid(topic, data)
        if not uuid:
            logger.debug("No uuid in topic %s", topic)
            return
        transport = self._devices.get(uuid)
        if transport is None or not transport.subscribed:
            logger.warning("Received message for unknown connection: %s", uuid)
            return
        if self._on_traffic is not None:
            self._on_traffic(uuid)
        if data:
            transport.deliver(data)

    def _report_ready(self) -> None:
        if self._on_ready_change is not None:
            self._on_ready_change(self.fsm_state == self.STATE_READY)


__all__ = [
    "MqttDeviceTransport",
    "MqttHub",
    "UuidResolver",
    "build_tls_context",
    "topic_for",
    "uuid_from_topic",
]
