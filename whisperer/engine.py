"""The Device Whisperer engine facade.

:class:`DeviceWhisperer` wires one registry, one decoder per connection, the
topic dispatcher, the liveness monitor and the reconnection coordinator
together. Transports only ever see ``connect``/``receive``/``send``; the
application only ever sees decoded messages, text lines and the
connection log.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import msgspec

from .codec import MessageCodec
from .config.model import EngineConfig
from .decoder import FrameDecoder, hex_preview
from .dispatcher import HandlerContext, Topic, TopicDispatcher, TopicHandler
from .errors import FrameDecodeError, TransportError, UnknownConnectionError, WhispererError
from .protocol.framing import wrap_length_prefixed
from .protocol.slip import slip_encode
from .protocol.structures import DecodedEvent, DecodedMessage, Health, LogLevel, SlipFrame, TextLine
from .reconnect import ReconnectionCoordinator
from .state.registry import Connection, ConnectionRegistry
from .state.stats import LinkStats
from .watchdog import LivenessMonitor, Scheduler

logger = logging.getLogger("whisperer.engine")

FrameHandler = Callable[[bytes, HandlerContext], Awaitable[None] | None]
LineHandler = Callable[[str, HandlerContext], Awaitable[None] | None]


class DeviceWhisperer:
    """Multi-connection engine: framing, dispatch, liveness and reconnect."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        handlers: Mapping[Topic, TopicHandler] | None = None,
        codec: MessageCodec | None = None,
        on_frame: FrameHandler | None = None,
        on_line: LineHandler | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.codec = codec
        self._on_frame = on_frame
        self._on_line = on_line
        self._decoders: dict[str, FrameDecoder] = {}
        self._ready = False

        self.registry = ConnectionRegistry(log_capacity=self.config.log_capacity)
        self.dispatcher = TopicDispatcher(
            handlers or {},
            topic_field=self.config.topic_field,
            on_log=self._dispatcher_log,
        )
        self.monitor = LivenessMonitor(
            self.registry,
            ping_interval=self.config.ping_interval,
            warn_interval=self.config.warn_interval,
            fail_interval=self.config.fail_interval,
            scheduler=scheduler,
        )
        self.coordinator = ReconnectionCoordinator(
            self.registry,
            self.feed,
            monitor=self.monitor,
            on_reset=self._reset_decoder,
            on_reconnect=self._count_reconnect,
            max_retries=self.config.max_retries,
            retry_delay=self.config.retry_delay,
            quiescence_delay=self.config.quiescence_delay,
            idle_poll_interval=self.config.idle_poll_interval,
        )

    # --- readiness ------------------------------------------------------------

    @property
    def ready(self) -> bool:
        """Whether the shared session (e.g. the MQTT broker) is usable."""
        return self._ready

    def set_ready(self, ready: bool) -> None:
        if ready != self._ready:
            logger.info("Engine %s", "ready" if ready else "not ready")
        self._ready = ready

    # --- connection management ----------------------------------------------

    def add_connection(
        self,
        uuid: str | None = None,
        *,
        transport: Any = None,
        name: str | None = None,
        slip: bool = False,
        extra: Mapping[str, Any] | None = None,
    ) -> str:
        """Register a connection and its decoder; returns the uuid.

        Adding an existing uuid changes nothing and returns it.
        """
        if uuid is not None and uuid in self.registry:
            return uuid
        seed: dict[str, Any] = {"transport": transport, "slip_enabled": slip}
        if name:
            seed["name"] = name
        if extra:
            seed["extra"] = dict(extra)
        uuid = self.registry.add(uuid, seed)
        self._decoders[uuid] = self._build_decoder(uuid, slip)
        logger.info("Connection %s registered (%s)", uuid, type(transport).__name__)
        return uuid

    async def remove_connection(self, uuid: str) -> bool:
        """Halt the connection's task and timers, then forget it."""
        if uuid not in self.registry:
            return False
        await self.coordinator.forget(uuid)
        self.monitor.stop(uuid)
        conn = self.registry.remove(uuid)
        self._decoders.pop(uuid, None)
        if conn is not None and conn.transport is not None:
            try:
                await conn.transport.disconnect()
            except Exception as exc:
                logger.warning("%s: transport disconnect on removal failed: %s", uuid, exc)
        logger.info("Connection %s removed", uuid)
        return True

    def connection(self, uuid: str) -> Connection | None:
        return self.registry.get(uuid)

    def connections(self) -> list[Connection]:
        return self.registry.list()

    def health_counts(self) -> dict[Health, int]:
        counts = {health: 0 for health in Health}
        for conn in self.registry.list():
            counts[conn.health] += 1
        return counts

    def decoder(self, uuid: str) -> FrameDecoder:
        try:
            return self._decoders[uuid]
        except KeyError:
            raise UnknownConnectionError(uuid) from None

    def stats(self, uuid: str) -> LinkStats:
        return self.decoder(uuid).stats

    def rename(self, uuid: str, name: str) -> Connection | None:
        return self.registry.rename(uuid, name)

    def set_slip(self, uuid: str, enabled: bool) -> None:
        """Switch SLIP framing for *uuid* in both directions."""
        if self.registry.update(uuid, lambda c: msgspec.structs.replace(c, slip_enabled=enabled)) is None:
            raise UnknownConnectionError(uuid)
        self.decoder(uuid).slip_enabled = enabled

    def append_log(self, uuid: str, level: LogLevel | int, message: Any) -> Connection | None:
        return self.registry.append_log(uuid, level, message)

    def touch(self, uuid: str) -> bool:
        return self.monitor.touch(uuid)

    # --- lifecycle ------------------------------------------------------------

    async def connect(self, uuid: str) -> None:
        await self.coordinator.connect(uuid)

    async def disconnect(self, uuid: str) -> bool:
        return await self.coordinator.disconnect(uuid)

    async def reconnect_all(self) -> None:
        await self.coordinator.reconnect_all()

    def notify_closed(self, uuid: str) -> None:
        self.coordinator.notify_closed(uuid)

    async def close(self) -> None:
        """Disconnect everything and cancel all timers."""
        for uuid in self.registry.uuids():
            await self.coordinator.disconnect(uuid)
        await self.coordinator.close()
        self.monitor.stop_all()

    # --- outbound -------------------------------------------------------------

    async def send(self, uuid: str, data: bytes | bytearray | str) -> bool:
        """Write *data* to the device, SLIP-wrapped when the link uses SLIP."""
        conn = self.registry.get(uuid)
        if conn is None:
            raise UnknownConnectionError(uuid)
        if conn.transport is None:
            logger.warning("%s: send with no transport attached", uuid)
            return False

        if isinstance(data, str):
            self.registry.append_log(uuid, LogLevel.OUTBOUND_TEXT, data)
            payload = data.encode(self.config.text_encoding)
        else:
            payload = bytes(data)
            self.registry.append_log(uuid, LogLevel.OUTBOUND_RAW, payload)
        if conn.slip_enabled:
            payload = slip_encode(payload)

        try:
            sent = bool(await conn.transport.send(payload))
        except (TransportError, OSError) as exc:
            self._write_failed(uuid, str(exc))
            return False
        if not sent:
            self._write_failed(uuid, "transport refused the write")
            return False
        decoder = self._decoders.get(uuid)
        if decoder is not None:
            decoder.stats.bytes_sent += len(payload)
        return True

    def _write_failed(self, uuid: str, reason: str) -> None:
        """Treat a failed write like a close: drop the link and let the retry policy run."""
        logger.error("%s: send failed: %s", uuid, reason)
        self.registry.append_log(uuid, LogLevel.ERROR, f"[!] Send failed: {reason}")
        self.monitor.stop(uuid)
        self.registry.set_health(uuid, Health.DISCONNECTED)
        self.coordinator.notify_closed(uuid)

    async def send_message(self, uuid: str, message: Any) -> bool:
        """Encode *message* with the codec and send it as one framed payload."""
        if self.codec is None:
            raise WhispererError("send_message requires a message codec")
        frame = wrap_length_prefixed(self.codec.encode(message), self.config.header)
        return await self.send(uuid, frame)

    # --- inbound --------------------------------------------------------------

    async def feed(self, uuid: str, chunk: bytes | str) -> list[DecodedEvent]:
        """Decode *chunk* for *uuid* and deliver every completed event in order."""
        decoder = self._decoders.get(uuid)
        if decoder is None:
            logger.debug("Dropping %d bytes for unknown connection %s", len(chunk), uuid)
            return []
        events = decoder.feed(chunk)
        context = HandlerContext(uuid, self)
        for event in events:
            # A handler may have removed or replaced this connection.
            if self._decoders.get(uuid) is not decoder:
                logger.debug("%s: removed mid-batch, dropping remaining events", uuid)
                break
            await self._deliver(event, context, decoder.stats)
        return events

    async def _deliver(self, event: DecodedEvent, context: HandlerContext, stats: LinkStats) -> None:
        uuid = context.uuid
        if isinstance(event, TextLine):
            self.registry.append_log(uuid, LogLevel.INFO, event.text)
            if self._on_line is not None:
                await self._call_hook(self._on_line, event.text, context, "line handler")
        elif isinstance(event, DecodedMessage):
            await self.dispatcher.dispatch(event.message, context)
        elif isinstance(event, SlipFrame):
            await self._deliver_frame(event.payload, context, stats)

    async def _deliver_frame(self, payload: bytes, context: HandlerContext, stats: LinkStats) -> None:
        if self._on_frame is not None:
            await self._call_hook(self._on_frame, payload, context, "frame handler")
            return
        if self.codec is None:
            self.registry.append_log(context.uuid, LogLevel.INFO, payload)
            return
        try:
            message = self.decoder(context.uuid).decode_payload(payload)
        except FrameDecodeError as exc:
            stats.decode_errors += 1
            logger.warning("%s: undecodable SLIP frame: %s", context.uuid, exc)
            self.registry.append_log(
                context.uuid,
                LogLevel.WARNING,
                f"[!] Undecodable SLIP frame ({exc.__cause__ or exc}): {hex_preview(payload)}",
            )
            return
        stats.messages_decoded += 1
        await self.dispatcher.dispatch(message, context)

    async def _call_hook(self, hook: Callable[..., Any], value: Any, context: HandlerContext, label: str) -> None:
        try:
            result = hook(value, context)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error("%s: %s failed: %s", context.uuid, label, exc, exc_info=exc)
            self.registry.append_log(context.uuid, LogLevel.ERROR, f"[!] Error in {label}: {exc}")

    # --- internals ------------------------------------------------------------

    def _build_decoder(self, uuid: str, slip: bool) -> FrameDecoder:
        def _diagnostic(level: LogLevel, message: str) -> None:
            self.registry.append_log(uuid, level, message)

        return FrameDecoder(
            uuid,
            codec=self.codec,
            header=self.config.header,
            slip=slip,
            encoding=self.config.text_encoding,
            on_diagnostic=_diagnostic,
        )

    def _reset_decoder(self, uuid: str) -> None:
        decoder = self._decoders.get(uuid)
        if decoder is not None:
            decoder.reset()

    def _count_reconnect(self, uuid: str, attempts: int) -> None:
        decoder = self._decoders.get(uuid)
        if decoder is not None:
            decoder.stats.reconnects += 1

    def _dispatcher_log(self, uuid: str, level: LogLevel, message: str) -> None:
        decoder = self._decoders.get(uuid)
        if decoder is not None:
            if level == LogLevel.ERROR:
                decoder.stats.handler_errors += 1
            else:
                decoder.stats.unknown_topics += 1
        self.registry.append_log(uuid, level, message)


__all__ = ["DeviceWhisperer", "FrameHandler", "LineHandler"]
