"""Async orchestrator for the whisperer daemon.

Architecture:
    main() -> WhispererDaemon -> TaskGroup
        ├── mqtt-hub (MqttHub.run, when MQTT devices are configured)
        ├── status-logger (periodic connection summary)
        └── prometheus-exporter (optional)

Serial and WebSocket devices are connected at start-up; MQTT devices are
(re)connected every time the broker session becomes ready.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, NoReturn

import msgspec
import tenacity
import uvloop

from . import __version__
from .config.logging import configure_logging
from .config.model import DeviceConfig, EngineConfig
from .config.settings import load_config
from .const import SUPERVISOR_MAX_BACKOFF, SUPERVISOR_MIN_BACKOFF
from .dispatcher import HandlerContext
from .engine import DeviceWhisperer
from .errors import ConfigError
from .metrics import PrometheusExporter
from .transport.mqtt import MqttHub, build_tls_context
from .transport.serial import SerialTransport
from .transport.websocket import WebSocketTransport

logger = logging.getLogger("whisperer")


class SupervisedTaskSpec(msgspec.Struct):
    """Specification for a supervised async task."""

    name: str
    factory: Callable[[], Awaitable[None]]
    max_restarts: int | None = None
    min_backoff: float = SUPERVISOR_MIN_BACKOFF
    max_backoff: float = SUPERVISOR_MAX_BACKOFF


def _before_sleep(name: str) -> Callable[[tenacity.RetryCallState], None]:
    log = logging.getLogger("whisperer.supervisor")

    def _log(retry_state: tenacity.RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        log.error("%s failed (%s); restarting in %.1fs", name, exc, delay)

    return _log


async def supervise(spec: SupervisedTaskSpec) -> None:
    """Run ``spec.factory`` and restart it with backoff when it fails."""
    log = logging.getLogger("whisperer.supervisor")
    retryer = tenacity.AsyncRetrying(
        wait=tenacity.wait_exponential(multiplier=spec.min_backoff, max=spec.max_backoff),
        retry=tenacity.retry_if_exception_type(Exception),
        stop=tenacity.stop_after_attempt(spec.max_restarts + 1)
        if spec.max_restarts is not None
        else tenacity.stop_never,
        before_sleep=_before_sleep(spec.name),
        reraise=True,
    )
    try:
        async for attempt in retryer:
            with attempt:
                await spec.factory()
                log.warning("%s task exited cleanly; supervisor exiting", spec.name)
    except asyncio.CancelledError:
        log.debug("%s supervisor cancelled", spec.name)
        raise


class WhispererDaemon:
    """Owns the engine, its transports and the daemon's background tasks."""

    def __init__(self, config: EngineConfig) -> None:
        self.config = config
        self.engine = DeviceWhisperer(config, on_line=self._log_line, on_frame=self._log_frame)
        self.hub: MqttHub | None = None
        self.exporter: PrometheusExporter | None = None
        self._mqtt_uuids: list[str] = []
        self._direct_uuids: list[str] = []
        self._background: set[asyncio.Task[Any]] = set()

        if any(device.kind == "mqtt" for device in config.devices):
            self.hub = self._build_hub()
        for device in config.devices:
            self._register(device)

    def _build_hub(self) -> MqttHub:
        config = self.config
        tls_context = None
        if config.mqtt_tls:
            tls_context = build_tls_context(
                cafile=config.mqtt_cafile,
                certfile=config.mqtt_certfile,
                keyfile=config.mqtt_keyfile,
                insecure=config.mqtt_tls_insecure,
            )
        return MqttHub(
            host=config.mqtt_host,
            port=config.mqtt_port,
            username=config.mqtt_user,
            password=config.mqtt_pass,
            client_id=config.mqtt_client_id,
            tls_context=tls_context,
            keepalive=config.mqtt_keepalive,
            qos=config.mqtt_qos,
            sub_topic=config.sub_topic,
            pub_topic=config.pub_topic,
            on_ready_change=self._on_hub_ready,
            on_traffic=self.engine.touch,
        )

    def _register(self, device: DeviceConfig) -> str:
        transport: Any
        if device.kind == "serial":
            assert device.port is not None
            transport = SerialTransport(
                device.port,
                baudrate=device.baudrate,
                reset_on_connect=device.reset_on_connect,
                idle_poll_interval=self.config.idle_poll_interval,
            )
        elif device.kind == "websocket":
            assert device.host is not None and device.uuid is not None
            transport = WebSocketTransport(device.host, device.uuid, port=device.ws_port)
        elif device.kind == "mqtt":
            assert self.hub is not None and device.uuid is not None
            transport = self.hub.device(device.uuid, ping_payload=device.ping_payload)
        else:
            raise ConfigError(f"unknown device kind {device.kind!r}")

        uuid = self.engine.add_connection(device.uuid, transport=transport, name=device.name, slip=device.slip)
        (self._mqtt_uuids if device.kind == "mqtt" else self._direct_uuids).append(uuid)
        return uuid

    def _on_hub_ready(self, ready: bool) -> None:
        self.engine.set_ready(ready)
        if ready:
            task = asyncio.get_running_loop().create_task(self._connect_all(self._mqtt_uuids))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _connect_all(self, uuids: Sequence[str]) -> None:
        for uuid in uuids:
            conn = self.engine.connection(uuid)
            if conn is not None and not conn.is_connected:
                await self.engine.connect(uuid)

    def _log_line(self, text: str, context: HandlerContext) -> None:
        logger.info("%s < %s", context.uuid, text, extra={"uuid": context.uuid})

    def _log_frame(self, payload: bytes, context: HandlerContext) -> None:
        logger.info("%s < frame", context.uuid, extra={"uuid": context.uuid, "payload": payload})

    async def _status_logger(self) -> None:
        interval = self.config.status_interval
        if interval <= 0:
            return
        while True:
            await asyncio.sleep(interval)
            counts = {str(health): count for health, count in self.engine.health_counts().items()}
            logger.info("Connection status", extra={"connections": counts, "ready": self.engine.ready})

    def _setup_supervision(self) -> list[SupervisedTaskSpec]:
        specs = [SupervisedTaskSpec(name="status-logger", factory=self._status_logger)]
        if self.hub is not None:
            specs.append(SupervisedTaskSpec(name="mqtt-hub", factory=self.hub.run))
        if self.config.metrics_enabled:
            self.exporter = PrometheusExporter(self.engine, self.config.metrics_host, self.config.metrics_port)
            specs.append(SupervisedTaskSpec(name="prometheus-exporter", factory=self.exporter.run, max_restarts=5))
        return specs

    async def run(self) -> None:
        """Main async entry point."""
        specs = self._setup_supervision()
        if self.hub is None:
            self.engine.set_ready(True)
        await self._connect_all(self._direct_uuids)
        try:
            async with asyncio.TaskGroup() as task_group:
                for spec in specs:
                    task_group.create_task(supervise(spec))
        except* asyncio.CancelledError:
            logger.info("Main task cancelled; shutting down.")
        finally:
            for task in list(self._background):
                task.cancel()
            await self.engine.close()
            logger.info("whisperer daemon stopped.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="whisperer", description="Multi-device framing and liveness daemon")
    parser.add_argument("-c", "--config", help="TOML configuration file ([whisperer] section)")
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Sequence[str] | None = None) -> NoReturn:  # pragma: no cover (entry point wrapper)
    args = build_parser().parse_args(argv)
    overrides: dict[str, Any] = {"debug_logging": True} if args.debug else {}
    try:
        config = load_config(args.config, **overrides)
    except ConfigError as exc:
        print(f"whisperer: {exc}", file=sys.stderr)
        sys.exit(2)
    configure_logging(config)
    logger.info("Starting whisperer daemon with %d configured device(s)", len(config.devices))

    try:
        asyncio.run(WhispererDaemon(config).run(), loop_factory=uvloop.new_event_loop)
        sys.exit(0)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        sys.exit(0)
    except ExceptionGroup as exc_group:
        for group_exc in exc_group.exceptions:
            logger.critical("Fatal error in task group: %s", group_exc, exc_info=group_exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
