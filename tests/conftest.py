"""Pytest configuration for whisperer tests."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from collections.abc import Callable
from typing import Any

import pytest

from whisperer.codec import JsonCodec
from whisperer.config.logging import StructuredLogFormatter
from whisperer.config.model import EngineConfig
from whisperer.engine import DeviceWhisperer
from whisperer.state.registry import ConnectionRegistry
from whisperer.transport.queue import QueueTransport


class ManualTimer:
    """Timer handle driven by :class:`ManualScheduler`."""

    def __init__(self, when: float, callback: Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Deterministic stand-in for ``loop.call_later`` with a virtual clock."""

    def __init__(self) -> None:
        self.now = 0.0
        self._queue: list[tuple[float, int, ManualTimer]] = []
        self._seq = itertools.count()

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(self.now + delay, callback)
        heapq.heappush(self._queue, (timer.when, next(self._seq), timer))
        return timer

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while self._queue and self._queue[0][0] <= target:
            when, _, timer = heapq.heappop(self._queue)
            self.now = when
            if not timer.cancelled:
                timer.callback()
        self.now = target

    @property
    def pending(self) -> int:
        return sum(1 for _, _, timer in self._queue if not timer.cancelled)


@pytest.fixture(autouse=True)
def reset_logging_handlers():
    """Close and remove root handlers installed by configure_logging."""
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        if not isinstance(handler.formatter, StructuredLogFormatter):
            continue
        try:
            handler.close()
        except (OSError, RuntimeError):
            pass
        root.removeHandler(handler)


@pytest.fixture()
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture()
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


@pytest.fixture()
def json_codec() -> JsonCodec[Any]:
    return JsonCodec()


@pytest.fixture()
def fast_config() -> EngineConfig:
    return EngineConfig(retry_delay=0.0, quiescence_delay=0.0, idle_poll_interval=0.0)


@pytest.fixture()
def transport() -> QueueTransport:
    return QueueTransport()


@pytest.fixture()
def make_engine(fast_config: EngineConfig, scheduler: ManualScheduler) -> Callable[..., DeviceWhisperer]:
    def _factory(**kwargs: Any) -> DeviceWhisperer:
        kwargs.setdefault("scheduler", scheduler)
        config = kwargs.pop("config", fast_config)
        return DeviceWhisperer(config, **kwargs)

    return _factory


@pytest.fixture()
def eventually() -> Callable[..., Any]:
    """Poll *predicate* on the running loop until it holds or time runs out."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.001)

    return _wait
