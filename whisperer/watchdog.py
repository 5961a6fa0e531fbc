"""Traffic-recency liveness monitor.

Some transports (pub/sub brokers in particular) never report that a device
went away. Health is therefore inferred from the time since the last
``touch``: three timers escalate from an active probe, to ``degraded``, to
``disconnected``. Every touch cancels and re-arms all three inside one
registry update, so a receive loop and a firing timer never race.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from collections.abc import Callable
from typing import Any, Protocol

import msgspec

from .const import DEFAULT_FAIL_INTERVAL, DEFAULT_PING_INTERVAL, DEFAULT_WARN_INTERVAL
from .protocol.structures import Health, LogLevel, LogLine, TimerHandle, WatchdogTimers
from .state.registry import Connection, ConnectionRegistry, append_log_line

logger = logging.getLogger("whisperer.watchdog")

Probe = Callable[[], Any]
HealthListener = Callable[[str, Health, Health], None]


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Schedules watchdog callbacks on an asyncio event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay, callback)


def transport_probe(conn: Connection) -> Probe | None:
    """Default probe lookup: the transport's ``probe`` method, if any."""
    probe = getattr(conn.transport, "probe", None)
    return probe if callable(probe) else None


class LivenessMonitor:
    """Derives per-connection health from touch recency."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        *,
        ping_interval: float = DEFAULT_PING_INTERVAL,
        warn_interval: float = DEFAULT_WARN_INTERVAL,
        fail_interval: float = DEFAULT_FAIL_INTERVAL,
        scheduler: Scheduler | None = None,
        probe_for: Callable[[Connection], Probe | None] = transport_probe,
        on_health_change: HealthListener | None = None,
    ) -> None:
        if not 0 < ping_interval <= warn_interval <= fail_interval:
            raise ValueError("intervals must satisfy 0 < ping <= warn <= fail")
        self.registry = registry
        self.ping_interval = ping_interval
        self.warn_interval = warn_interval
        self.fail_interval = fail_interval
        self._scheduler: Scheduler = scheduler or LoopScheduler()
        self._probe_for = probe_for
        self._on_health_change = on_health_change
        self._pending_probes: set[asyncio.Future[Any]] = set()

    def touch(self, uuid: str) -> bool:
        """Record traffic for *uuid* and re-arm its timers.

        Returns ``False`` when the connection is unknown.
        """
        previous: list[Health] = []

        def _rearm(conn: Connection) -> Connection:
            previous.append(conn.health)
            conn.watchdog.cancel()
            timers = WatchdogTimers(
                ping=self._scheduler.call_later(self.ping_interval, functools.partial(self._on_ping, uuid)),
                warn=self._scheduler.call_later(self.warn_interval, functools.partial(self._on_warn, uuid)),
                fail=self._scheduler.call_later(self.fail_interval, functools.partial(self._on_fail, uuid)),
            )
            return msgspec.structs.replace(conn, watchdog=timers, health=Health.CONNECTED)

        updated = self.registry.update(uuid, _rearm)
        if updated is None:
            return False
        self._notify(uuid, previous[0], updated.health)
        return True

    def stop(self, uuid: str) -> None:
        """Cancel all three timers of *uuid*."""

        def _disarm(conn: Connection) -> Connection:
            conn.watchdog.cancel()
            return msgspec.structs.replace(conn, watchdog=WatchdogTimers())

        self.registry.update(uuid, _disarm)

    def stop_all(self) -> None:
        for uuid in self.registry.uuids():
            self.stop(uuid)
        for future in list(self._pending_probes):
            future.cancel()

    def is_armed(self, uuid: str) -> bool:
        conn = self.registry.get(uuid)
        return conn is not None and conn.watchdog.armed

    # --- timer callbacks --------------------------------------------------

    def _on_ping(self, uuid: str) -> None:
        conn = self.registry.get(uuid)
        if conn is None:
            return
        probe = self._probe_for(conn)
        if probe is None:
            logger.debug("%s: ping due but transport has no probe", uuid)
            return
        logger.debug("%s: probing quiet connection", uuid)
        try:
            result = probe()
        except Exception as exc:
            logger.warning("%s: probe failed: %s", uuid, exc)
            return
        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._pending_probes.add(future)
            future.add_done_callback(functools.partial(self._probe_done, uuid))

    def _probe_done(self, uuid: str, future: asyncio.Future[Any]) -> None:
        self._pending_probes.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("%s: probe failed: %s", uuid, exc)

    def _on_warn(self, uuid: str) -> None:
        self._escalate(
            uuid,
            Health.DEGRADED,
            (Health.CONNECTED,),
            LogLine(level=LogLevel.WARNING, message=f"[!] No traffic for {self.warn_interval:g}s"),
        )

    def _on_fail(self, uuid: str) -> None:
        self._escalate(
            uuid,
            Health.DISCONNECTED,
            (Health.CONNECTED, Health.DEGRADED),
            LogLine(level=LogLevel.ERROR, message=f"[!] No traffic for {self.fail_interval:g}s; connection lost"),
            disarm=True,
        )

    def _escalate(
        self,
        uuid: str,
        target: Health,
        sources: tuple[Health, ...],
        line: LogLine,
        *,
        disarm: bool = False,
    ) -> None:
        previous: list[Health] = []

        def _apply(conn: Connection) -> Connection:
            previous.append(conn.health)
            if conn.health not in sources:
                return conn
            updated = append_log_line(conn, line, self.registry.log_capacity)
            if disarm:
                return msgspec.structs.replace(updated, health=target, watchdog=WatchdogTimers())
            return msgspec.structs.replace(updated, health=target)

        updated = self.registry.update(uuid, _apply)
        if updated is None:
            return
        if previous[0] != updated.health:
            logger.warning("%s: health %s -> %s", uuid, previous[0], updated.health)
        self._notify(uuid, previous[0], updated.health)

    def _notify(self, uuid: str, old: Health, new: Health) -> None:
        if old != new and self._on_health_change is not None:
            self._on_health_change(uuid, old, new)


__all__ = ["LivenessMonitor", "LoopScheduler", "Probe", "Scheduler", "transport_probe"]
