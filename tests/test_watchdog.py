"""Tests for the traffic-recency liveness monitor."""

from __future__ import annotations

import asyncio

import pytest

from whisperer.protocol.structures import Health, LogLevel
from whisperer.state.registry import ConnectionRegistry
from whisperer.transport.queue import QueueTransport
from whisperer.watchdog import LivenessMonitor

from .conftest import ManualScheduler


class _ProbeCounter:
    def __init__(self) -> None:
        self.calls = 0

    def __call__(self) -> None:
        self.calls += 1


@pytest.fixture()
def probe() -> _ProbeCounter:
    return _ProbeCounter()


@pytest.fixture()
def monitor(registry: ConnectionRegistry, scheduler: ManualScheduler, probe: _ProbeCounter) -> LivenessMonitor:
    registry.add("dev-1")
    return LivenessMonitor(registry, scheduler=scheduler, probe_for=lambda conn: probe)


def _health(registry: ConnectionRegistry, uuid: str = "dev-1") -> Health:
    conn = registry.get(uuid)
    assert conn is not None
    return conn.health


def test_rejects_unordered_intervals(registry: ConnectionRegistry, scheduler: ManualScheduler) -> None:
    with pytest.raises(ValueError):
        LivenessMonitor(registry, ping_interval=30, warn_interval=25, fail_interval=60, scheduler=scheduler)
    with pytest.raises(ValueError):
        LivenessMonitor(registry, ping_interval=0, scheduler=scheduler)


def test_silence_escalates_ping_warn_fail(
    monitor: LivenessMonitor,
    registry: ConnectionRegistry,
    scheduler: ManualScheduler,
    probe: _ProbeCounter,
) -> None:
    assert monitor.touch("dev-1") is True
    assert _health(registry) == Health.CONNECTED
    assert monitor.is_armed("dev-1")

    scheduler.advance(24)
    assert probe.calls == 0

    scheduler.advance(1)
    assert probe.calls == 1
    assert _health(registry) == Health.CONNECTED

    scheduler.advance(5)
    assert _health(registry) == Health.DEGRADED
    conn = registry.get("dev-1")
    assert conn is not None
    assert conn.logs[-1].level == LogLevel.WARNING
    assert conn.logs[-1].message == "[!] No traffic for 30s"

    scheduler.advance(30)
    assert _health(registry) == Health.DISCONNECTED
    conn = registry.get("dev-1")
    assert conn is not None
    assert conn.logs[-1].level == LogLevel.ERROR
    assert conn.logs[-1].message == "[!] No traffic for 60s; connection lost"
    assert not monitor.is_armed("dev-1")


def test_touch_restarts_all_timers(
    monitor: LivenessMonitor,
    registry: ConnectionRegistry,
    scheduler: ManualScheduler,
    probe: _ProbeCounter,
) -> None:
    monitor.touch("dev-1")
    scheduler.advance(20)
    monitor.touch("dev-1")

    scheduler.advance(20)
    assert probe.calls == 0
    assert _health(registry) == Health.CONNECTED

    scheduler.advance(10)
    assert probe.calls == 1
    assert _health(registry) == Health.DEGRADED
    assert scheduler.pending == 1


def test_touch_recovers_degraded_connection(
    monitor: LivenessMonitor, registry: ConnectionRegistry, scheduler: ManualScheduler
) -> None:
    monitor.touch("dev-1")
    scheduler.advance(30)
    assert _health(registry) == Health.DEGRADED

    monitor.touch("dev-1")

    assert _health(registry) == Health.CONNECTED
    scheduler.advance(59)
    assert _health(registry) == Health.DEGRADED


def test_timer_for_removed_connection_is_ignored(
    monitor: LivenessMonitor, registry: ConnectionRegistry, scheduler: ManualScheduler, probe: _ProbeCounter
) -> None:
    monitor.touch("dev-1")
    registry.remove("dev-1")

    scheduler.advance(120)
    monitor._on_warn("dev-1")
    monitor._on_fail("dev-1")

    assert probe.calls == 0
    assert registry.get("dev-1") is None


def test_touch_unknown_connection(monitor: LivenessMonitor) -> None:
    assert monitor.touch("ghost") is False


def test_stop_disarms_timers(monitor: LivenessMonitor, registry: ConnectionRegistry, scheduler: ManualScheduler) -> None:
    monitor.touch("dev-1")
    monitor.stop("dev-1")

    scheduler.advance(120)

    assert not monitor.is_armed("dev-1")
    assert _health(registry) == Health.CONNECTED


def test_health_listener_sees_transitions(registry: ConnectionRegistry, scheduler: ManualScheduler) -> None:
    registry.add("dev-1")
    changes: list[tuple[str, Health, Health]] = []
    monitor = LivenessMonitor(
        registry,
        scheduler=scheduler,
        on_health_change=lambda uuid, old, new: changes.append((uuid, old, new)),
    )

    monitor.touch("dev-1")
    monitor.touch("dev-1")
    scheduler.advance(60)

    assert changes == [
        ("dev-1", Health.DISCONNECTED, Health.CONNECTED),
        ("dev-1", Health.CONNECTED, Health.DEGRADED),
        ("dev-1", Health.DEGRADED, Health.DISCONNECTED),
    ]


@pytest.mark.asyncio
async def test_async_transport_probe_is_scheduled(registry: ConnectionRegistry, scheduler: ManualScheduler) -> None:
    transport = QueueTransport()
    registry.add("dev-1", {"transport": transport})
    monitor = LivenessMonitor(registry, scheduler=scheduler)

    monitor.touch("dev-1")
    scheduler.advance(25)
    await asyncio.sleep(0)

    assert transport.probes == 1
