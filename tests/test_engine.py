"""Tests for the DeviceWhisperer facade."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from whisperer.codec import JsonCodec
from whisperer.config.model import EngineConfig
from whisperer.dispatcher import HandlerContext
from whisperer.engine import DeviceWhisperer
from whisperer.errors import TransportError, UnknownConnectionError, WhispererError
from whisperer.protocol.framing import wrap_length_prefixed
from whisperer.protocol.slip import slip_encode
from whisperer.protocol.structures import DecodedMessage, Health, LogLevel, SlipFrame, TextLine
from whisperer.transport.queue import QueueTransport

from .conftest import ManualScheduler

HEADER = b"\xaa\x55"


@pytest.fixture()
def framed_config() -> EngineConfig:
    return EngineConfig(header=HEADER, retry_delay=0.0, quiescence_delay=0.0, idle_poll_interval=0.0)


@pytest.fixture()
def online(transport: QueueTransport) -> QueueTransport:
    transport.connected = True
    return transport


def _logs(engine: DeviceWhisperer, uuid: str = "dev-1") -> list[tuple[LogLevel, Any]]:
    conn = engine.connection(uuid)
    assert conn is not None
    return [(line.level, line.message) for line in conn.logs]


def test_add_connection_is_idempotent(make_engine: Callable[..., DeviceWhisperer]) -> None:
    engine = make_engine()
    first = QueueTransport()

    assert engine.add_connection("dev-1", transport=first, name="bench") == "dev-1"
    assert engine.add_connection("dev-1", transport=QueueTransport(), name="other") == "dev-1"

    conn = engine.connection("dev-1")
    assert conn is not None
    assert conn.transport is first
    assert conn.name == "bench"
    assert len(engine.connections()) == 1


def test_add_connection_synthesizes_uuid(make_engine: Callable[..., DeviceWhisperer]) -> None:
    engine = make_engine()

    uuid = engine.add_connection(transport=QueueTransport())

    assert engine.connection(uuid) is not None
    assert engine.decoder(uuid).uuid == uuid


def test_health_counts_and_rename(make_engine: Callable[..., DeviceWhisperer]) -> None:
    engine = make_engine()
    engine.add_connection("a")
    engine.add_connection("b")
    engine.registry.set_health("b", Health.DEGRADED)

    counts = engine.health_counts()
    engine.rename("a", "porch")

    assert counts[Health.DISCONNECTED] == 1
    assert counts[Health.DEGRADED] == 1
    assert counts[Health.CONNECTED] == 0
    conn = engine.connection("a")
    assert conn is not None and conn.name == "porch"


def test_set_slip_unknown_connection(make_engine: Callable[..., DeviceWhisperer]) -> None:
    engine = make_engine()

    with pytest.raises(UnknownConnectionError):
        engine.set_slip("ghost", True)
    with pytest.raises(UnknownConnectionError):
        engine.decoder("ghost")


@pytest.mark.asyncio
async def test_send_text_logs_and_writes(make_engine: Callable[..., DeviceWhisperer], online: QueueTransport) -> None:
    engine = make_engine()
    engine.add_connection("dev-1", transport=online)

    assert await engine.send("dev-1", "led on") is True

    assert online.sent == [b"led on"]
    assert _logs(engine)[-1] == (LogLevel.OUTBOUND_TEXT, "led on")
    assert engine.stats("dev-1").bytes_sent == 6


@pytest.mark.asyncio
async def test_send_bytes_wraps_in_slip(make_engine: Callable[..., DeviceWhisperer], online: QueueTransport) -> None:
    engine = make_engine()
    engine.add_connection("dev-1", transport=online)
    engine.set_slip("dev-1", True)

    assert await engine.send("dev-1", b"\x01\xc0") is True

    assert online.sent == [slip_encode(b"\x01\xc0")]
    assert _logs(engine)[-1] == (LogLevel.OUTBOUND_RAW, b"\x01\xc0")
    conn = engine.connection("dev-1")
    assert conn is not None and conn.slip_enabled
    assert engine.decoder("dev-1").slip_enabled


@pytest.mark.asyncio
async def test_send_unknown_connection_raises(make_engine: Callable[..., DeviceWhisperer]) -> None:
    engine = make_engine()

    with pytest.raises(UnknownConnectionError):
        await engine.send("ghost", b"x")


@pytest.mark.asyncio
async def test_send_on_closed_transport_fails(
    make_engine: Callable[..., DeviceWhisperer], transport: QueueTransport
) -> None:
    engine = make_engine()
    engine.add_connection("dev-1", transport=transport)

    assert await engine.send("dev-1", b"x") is False
    assert engine.stats("dev-1").bytes_sent == 0


@pytest.mark.asyncio
async def test_send_message_requires_codec(make_engine: Callable[..., DeviceWhisperer], online: QueueTransport) -> None:
    engine = make_engine()
    engine.add_connection("dev-1", transport=online)

    with pytest.raises(WhispererError):
        await engine.send_message("dev-1", {"topic": "x"})


@pytest.mark.asyncio
async def test_send_message_frames_with_header(
    make_engine: Callable[..., DeviceWhisperer],
    framed_config: EngineConfig,
    json_codec: JsonCodec[Any],
    online: QueueTransport,
) -> None:
    engine = make_engine(config=framed_config, codec=json_codec)
    engine.add_connection("dev-1", transport=online)

    assert await engine.send_message("dev-1", {"topic": "led", "on": True}) is True

    body = json_codec.encode({"topic": "led", "on": True})
    assert online.sent == [HEADER + len(body).to_bytes(2, "big") + body]


@pytest.mark.asyncio
async def test_feed_dispatches_and_handlers_reply(
    make_engine: Callable[..., DeviceWhisperer],
    framed_config: EngineConfig,
    json_codec: JsonCodec[Any],
    online: QueueTransport,
) -> None:
    async def on_ping(message: Any, ctx: HandlerContext) -> None:
        await ctx.reply({"topic": "pong", "seq": message["seq"]})

    def on_broken(message: Any, ctx: HandlerContext) -> None:
        raise KeyError("calibration")

    engine = make_engine(config=framed_config, codec=json_codec, handlers={"ping": on_ping, "broken": on_broken})
    engine.add_connection("dev-1", transport=online)
    stream = b"".join(
        wrap_length_prefixed(json_codec.encode(message), HEADER)
        for message in ({"topic": "broken"}, {"topic": "nobody"}, {"topic": "ping", "seq": 4})
    )

    events = await engine.feed("dev-1", stream)

    assert [type(event) for event in events] == [DecodedMessage] * 3
    assert online.sent == [wrap_length_prefixed(json_codec.encode({"topic": "pong", "seq": 4}), HEADER)]
    stats = engine.stats("dev-1")
    assert stats.handler_errors == 1
    assert stats.unknown_topics == 1
    assert stats.messages_decoded == 3
    logged = [message for _, message in _logs(engine)]
    assert '[!] Unknown topic: "nobody"' in logged
    assert any(str(message).startswith('[!] Error in handler for topic "broken"') for message in logged)


@pytest.mark.asyncio
async def test_feed_text_lines_reach_log_and_hook(make_engine: Callable[..., DeviceWhisperer]) -> None:
    seen: list[tuple[str, str]] = []

    async def on_line(text: str, ctx: HandlerContext) -> None:
        seen.append((ctx.uuid, text))

    engine = make_engine(on_line=on_line)
    engine.add_connection("dev-1")

    events = await engine.feed("dev-1", b"temp=21\r\nhum=40\n")

    assert events == [TextLine("temp=21"), TextLine("hum=40")]
    assert seen == [("dev-1", "temp=21"), ("dev-1", "hum=40")]
    assert _logs(engine)[-2:] == [(LogLevel.INFO, "temp=21"), (LogLevel.INFO, "hum=40")]


@pytest.mark.asyncio
async def test_slip_frames_prefer_frame_hook(make_engine: Callable[..., DeviceWhisperer]) -> None:
    frames: list[bytes] = []
    engine = make_engine(on_frame=lambda payload, ctx: frames.append(payload))
    engine.add_connection("dev-1", slip=True)

    events = await engine.feed("dev-1", slip_encode(b"\x01\x02"))

    assert events == [SlipFrame(b"\x01\x02")]
    assert frames == [b"\x01\x02"]


@pytest.mark.asyncio
async def test_slip_frames_decoded_with_codec(
    make_engine: Callable[..., DeviceWhisperer], json_codec: JsonCodec[Any]
) -> None:
    seen: list[Any] = []
    engine = make_engine(codec=json_codec, handlers={"t": lambda message, ctx: seen.append(message)})
    engine.add_connection("dev-1", slip=True)

    await engine.feed("dev-1", slip_encode(b'{"topic":"t","v":1}') + slip_encode(b"garbage"))

    assert seen == [{"topic": "t", "v": 1}]
    assert engine.stats("dev-1").decode_errors == 1
    assert _logs(engine)[-1][0] == LogLevel.WARNING


@pytest.mark.asyncio
async def test_slip_frames_logged_without_codec_or_hook(make_engine: Callable[..., DeviceWhisperer]) -> None:
    engine = make_engine()
    engine.add_connection("dev-1", slip=True)

    await engine.feed("dev-1", slip_encode(b"\xde\xad"))

    assert _logs(engine)[-1] == (LogLevel.INFO, b"\xde\xad")


@pytest.mark.asyncio
async def test_feed_unknown_connection_is_dropped(make_engine: Callable[..., DeviceWhisperer]) -> None:
    engine = make_engine()

    assert await engine.feed("ghost", b"hello\n") == []


def test_ready_flag(make_engine: Callable[..., DeviceWhisperer]) -> None:
    engine = make_engine()

    assert engine.ready is False
    engine.set_ready(True)
    assert engine.ready is True


class _BrokenWriteTransport(QueueTransport):
    async def send(self, data: bytes) -> bool:
        raise TransportError("dev-1", "write failed: EIO")


@pytest.mark.asyncio
async def test_write_failure_drops_link_and_retries(
    make_engine: Callable[..., DeviceWhisperer], eventually: Callable[..., Any]
) -> None:
    engine = make_engine()
    transport = _BrokenWriteTransport()
    engine.add_connection("dev-1", transport=transport)
    await engine.connect("dev-1")
    await eventually(lambda: _health(engine) == Health.CONNECTED)

    assert await engine.send("dev-1", b"x") is False

    assert _health(engine) == Health.DISCONNECTED
    assert (LogLevel.ERROR, "[!] Send failed: dev-1: write failed: EIO") in _logs(engine)
    await eventually(lambda: transport.connect_calls == 2)
    await eventually(lambda: _health(engine) == Health.CONNECTED)
    assert _conn_attempts(engine) == 1
    await engine.close()


@pytest.mark.asyncio
async def test_refused_write_marks_connection_disconnected(
    make_engine: Callable[..., DeviceWhisperer], online: QueueTransport, scheduler: ManualScheduler
) -> None:
    engine = make_engine()
    engine.add_connection("dev-1", transport=online)
    engine.touch("dev-1")
    assert _health(engine) == Health.CONNECTED

    online.connected = False
    assert await engine.send("dev-1", "status") is False

    assert _health(engine) == Health.DISCONNECTED
    assert _logs(engine)[-1] == (LogLevel.ERROR, "[!] Send failed: transport refused the write")
    assert scheduler.pending == 0


@pytest.mark.asyncio
async def test_handler_removing_its_connection_stops_the_batch(
    make_engine: Callable[..., DeviceWhisperer],
    framed_config: EngineConfig,
    json_codec: JsonCodec[Any],
) -> None:
    dispatched: list[str] = []

    async def on_bye(message: Any, ctx: HandlerContext) -> None:
        dispatched.append("bye")
        await ctx.engine.remove_connection(ctx.uuid)

    def on_reading(message: Any, ctx: HandlerContext) -> None:
        dispatched.append("reading")

    engine = make_engine(config=framed_config, codec=json_codec, handlers={"bye": on_bye, "reading": on_reading})
    engine.add_connection("dev-1")
    stream = b"".join(
        wrap_length_prefixed(json_codec.encode({"topic": topic}), HEADER) for topic in ("bye", "reading")
    ) + b"late line\n"

    await engine.feed("dev-1", stream)

    assert dispatched == ["bye"]
    assert engine.connection("dev-1") is None


def _health(engine: DeviceWhisperer, uuid: str = "dev-1") -> Health:
    conn = engine.connection(uuid)
    assert conn is not None
    return conn.health


def _conn_attempts(engine: DeviceWhisperer, uuid: str = "dev-1") -> int:
    conn = engine.connection(uuid)
    assert conn is not None
    return conn.reconnect_attempts
