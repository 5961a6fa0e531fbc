"""Keyed store of per-connection state.

Every mutation goes through :meth:`ConnectionRegistry.update`, which holds
a lock scoped to one uuid for the whole read-modify-write. Receive loops,
watchdog timers and reconnect policies may all touch the same connection;
they never lose each other's updates and never block other connections.
"""

from __future__ import annotations

import logging
import secrets
import threading
from collections.abc import Callable, Iterator, Mapping
from datetime import datetime
from types import MappingProxyType
from typing import Any, Final

import msgspec

from ..const import DEFAULT_LOG_CAPACITY
from ..protocol.structures import Health, LogLevel, LogLine, WatchdogTimers

logger = logging.getLogger("whisperer.registry")

_ANIMALS: Final[tuple[str, ...]] = (
    "albatross", "badger", "capybara", "dingo", "eland", "ferret", "gecko",
    "heron", "ibex", "jackal", "kestrel", "lemur", "marmot", "narwhal",
    "ocelot", "pangolin", "quokka", "raven", "salamander", "tapir",
    "urchin", "vole", "walrus", "yak", "zebu",
)


class Connection(msgspec.Struct, frozen=True):
    """Snapshot of one device connection. Replaced, never mutated."""

    uuid: str
    name: str = ""
    transport: Any = None
    health: Health = Health.DISCONNECTED
    auto_reconnect: bool = True
    reconnect_attempts: int = 0
    slip_enabled: bool = False
    logs: tuple[LogLine, ...] = ()
    watchdog: WatchdogTimers = msgspec.field(default_factory=WatchdogTimers)
    extra: Mapping[str, Any] = msgspec.field(default_factory=lambda: MappingProxyType({}))

    @property
    def is_connected(self) -> bool:
        return self.health in (Health.CONNECTED, Health.DEGRADED)


ConnectionUpdater = Callable[[Connection], Connection]


def synthesize_uuid() -> str:
    """Return a human-friendly identifier such as ``"quokka-3fa9"``."""
    return f"{secrets.choice(_ANIMALS)}-{secrets.token_hex(2)}"


def append_log_line(conn: Connection, line: LogLine, capacity: int = DEFAULT_LOG_CAPACITY) -> Connection:
    """Return *conn* with *line* appended to its bounded log ring."""
    logs = conn.logs + (line,)
    if len(logs) > capacity:
        logs = logs[-capacity:]
    return msgspec.structs.replace(conn, logs=logs)


class ConnectionRegistry:
    """Insertion-ordered, uuid-sharded connection store."""

    def __init__(self, *, log_capacity: int = DEFAULT_LOG_CAPACITY) -> None:
        if log_capacity <= 0:
            raise ValueError("log_capacity must be positive")
        self.log_capacity = log_capacity
        self._connections: dict[str, Connection] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._map_lock = threading.Lock()

    def __contains__(self, uuid: object) -> bool:
        return uuid in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def __iter__(self) -> Iterator[Connection]:
        return iter(self.list())

    def add(self, uuid: str | None = None, seed: dict[str, Any] | None = None) -> str:
        """Register a connection and return its uuid.

        Adding an already-registered uuid is a no-op returning that uuid.
        """
        with self._map_lock:
            if uuid is not None and uuid in self._connections:
                return uuid
            if uuid is None:
                uuid = synthesize_uuid()
                while uuid in self._connections:
                    uuid = synthesize_uuid()
            fields = dict(seed or {})
            fields.setdefault("name", uuid)
            if "extra" in fields:
                fields["extra"] = MappingProxyType(dict(fields["extra"]))
            self._connections[uuid] = Connection(uuid=uuid, **fields)
            self._locks[uuid] = threading.Lock()
        logger.debug("Connection %s added", uuid)
        return uuid

    def get(self, uuid: str) -> Connection | None:
        return self._connections.get(uuid)

    def update(self, uuid: str, fn: ConnectionUpdater) -> Connection | None:
        """Atomically replace the record for *uuid* with ``fn(record)``.

        Does nothing and returns ``None`` when *uuid* is absent, including
        when it was removed while this call waited for the lock. *fn* runs
        under the uuid's lock and must not call back into the registry.
        """
        lock = self._locks.get(uuid)
        if lock is None:
            return None
        with lock:
            # The uuid may have been removed and re-added while we waited.
            if self._locks.get(uuid) is not lock:
                return None
            current = self._connections.get(uuid)
            if current is None:
                return None
            updated = fn(current)
            if updated.uuid != uuid:
                raise ValueError(f"updater changed uuid {uuid!r} -> {updated.uuid!r}")
            self._connections[uuid] = updated
            return updated

    def remove(self, uuid: str) -> Connection | None:
        """Drop *uuid*, cancelling any watchdog timers still attached."""
        lock = self._locks.get(uuid)
        if lock is None:
            return None
        with lock:
            with self._map_lock:
                if self._locks.get(uuid) is not lock:
                    return None
                removed = self._connections.pop(uuid, None)
                self._locks.pop(uuid, None)
        if removed is not None:
            removed.watchdog.cancel()
            logger.debug("Connection %s removed", uuid)
        return removed

    def list(self) -> list[Connection]:
        with self._map_lock:
            return list(self._connections.values())

    def uuids(self) -> list[str]:
        with self._map_lock:
            return list(self._connections)

    def append_log(
        self,
        uuid: str,
        level: LogLevel | int,
        message: Any,
        timestamp: datetime | None = None,
    ) -> Connection | None:
        if timestamp is None:
            line = LogLine(level=LogLevel(level), message=message)
        else:
            line = LogLine(level=LogLevel(level), message=message, timestamp=timestamp)
        return self.update(uuid, lambda conn: append_log_line(conn, line, self.log_capacity))

    def rename(self, uuid: str, name: str) -> Connection | None:
        return self.update(uuid, lambda conn: msgspec.structs.replace(conn, name=name))

    def set_health(self, uuid: str, health: Health) -> Connection | None:
        return self.update(uuid, lambda conn: msgspec.structs.replace(conn, health=health))


__all__ = [
    "Connection",
    "ConnectionRegistry",
    "ConnectionUpdater",
    "append_log_line",
    "synthesize_uuid",
]
