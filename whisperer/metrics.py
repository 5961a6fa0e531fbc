"""Prometheus exporter for engine and per-connection counters."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from typing import TYPE_CHECKING, Any

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.registry import Collector

from .protocol.structures import Health

if TYPE_CHECKING:
    from .engine import DeviceWhisperer

logger = logging.getLogger("whisperer.metrics")

_COUNTERS: tuple[tuple[str, str], ...] = (
    ("bytes_received", "Bytes received from the device"),
    ("bytes_sent", "Bytes written to the device"),
    ("messages_decoded", "Frames decoded into application messages"),
    ("text_lines", "Newline-delimited text lines received"),
    ("slip_frames", "SLIP frames received"),
    ("decode_errors", "Undecodable frames and SLIP framing violations"),
    ("garbage_bytes", "Bytes skipped while resynchronising on a frame header"),
    ("handler_errors", "Topic handlers that raised"),
    ("unknown_topics", "Messages whose topic had no handler"),
    ("reconnects", "Automatic reconnect attempts"),
)


class EngineCollector(Collector):
    """Projects the registry and each connection's LinkStats on scrape."""

    def __init__(self, engine: DeviceWhisperer) -> None:
        self._engine = engine

    def collect(self) -> Iterator[Any]:
        engine = self._engine

        by_health = GaugeMetricFamily(
            "whisperer_connections",
            "Registered connections by health",
            labels=("health",),
        )
        for health, count in engine.health_counts().items():
            by_health.add_metric((str(health),), count)
        yield by_health

        ready = GaugeMetricFamily("whisperer_ready", "Shared session readiness")
        ready.add_metric((), 1.0 if engine.ready else 0.0)
        yield ready

        connections = engine.connections()
        counters = {
            name: CounterMetricFamily(f"whisperer_link_{name}", doc, labels=("uuid",))
            for name, doc in _COUNTERS
        }
        attempts = GaugeMetricFamily(
            "whisperer_link_reconnect_attempts",
            "Automatic reconnect attempts since the last manual connect",
            labels=("uuid",),
        )
        up = GaugeMetricFamily(
            "whisperer_link_up",
            "1 when the connection is connected or degraded",
            labels=("uuid",),
        )
        for conn in connections:
            stats = engine.stats(conn.uuid).as_dict()
            for name, family in counters.items():
                family.add_metric((conn.uuid,), stats[name])
            attempts.add_metric((conn.uuid,), conn.reconnect_attempts)
            up.add_metric((conn.uuid,), 1.0 if conn.health in (Health.CONNECTED, Health.DEGRADED) else 0.0)
        yield from counters.values()
        yield attempts
        yield up


class PrometheusExporter:
    """Serve the engine's metrics in the Prometheus text format."""

    def __init__(self, engine: DeviceWhisperer, host: str, port: int) -> None:
        self._host = host
        self._port = port
        self._server: asyncio.AbstractServer | None = None
        self._resolved_port: int | None = None
        self._registry = CollectorRegistry()
        self._registry.register(EngineCollector(engine))

    @property
    def port(self) -> int:
        return self._resolved_port or self._port

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await asyncio.start_server(self._handle_client, host=self._host, port=self._port)
        for sock in self._server.sockets or ():
            sockname = sock.getsockname()
            if isinstance(sockname, tuple) and len(sockname) >= 2 and isinstance(sockname[1], int):
                self._resolved_port = sockname[1]
                break
        logger.info("Prometheus exporter listening", extra={"host": self._host, "port": self.port})

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        logger.info("Prometheus exporter stopped")

    async def run(self) -> None:
        await self.start()
        assert self._server is not None
        try:
            await self._server.serve_forever()
        finally:
            await self.stop()

    def render(self) -> bytes:
        return generate_latest(self._registry)

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            request_line = await reader.readline()
            if not request_line:
                return
            parts = request_line.decode("ascii", errors="ignore").split()
            if len(parts) < 2:
                await self._write_response(writer, 400, b"")
                return
            method, path = parts[0], parts[1]
            while True:
                line = await reader.readline()
                if not line or line in {b"\r\n", b"\n"}:
                    break
            if method != "GET" or path not in {"/metrics", "/"}:
                await self._write_response(writer, 404, b"")
                return
            await self._write_response(writer, 200, self.render(), content_type=CONTENT_TYPE_LATEST)
        except (OSError, ValueError) as exc:
            logger.warning("Prometheus client request error: %s", exc)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                logger.debug("Error closing metrics client connection", exc_info=True)

    async def _write_response(
        self,
        writer: asyncio.StreamWriter,
        status: int,
        body: bytes,
        *,
        content_type: str = "text/plain; charset=utf-8",
    ) -> None:
        reason = {200: "OK", 400: "Bad Request", 404: "Not Found"}.get(status, "Error")
        head = (
            f"HTTP/1.1 {status} {reason}\r\n"
            f"Content-Type: {content_type}\r\n"
            f"Content-Length: {len(body)}\r\n"
            "Connection: close\r\n\r\n"
        )
        writer.write(head.encode("ascii") + body)
        await writer.drain()


__all__ = ["EngineCollector", "PrometheusExporter"]
