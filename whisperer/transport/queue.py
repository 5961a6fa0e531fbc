"""In-memory transport backed by asyncio queues."""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger("whisperer.transport.queue")

_CLOSE = object()


class QueueTransport:
    """Loopback transport for embedding and tests.

    Inbound data is injected with :meth:`push`; outbound data lands in
    :attr:`sent`. :meth:`close` makes the next ``receive`` report a closed
    channel, which is how an unexpected drop is simulated.
    """

    def __init__(self, *, connect_results: list[bool] | None = None) -> None:
        self._inbox: asyncio.Queue[object] = asyncio.Queue()
        self._connect_results = list(connect_results or [])
        self.sent: list[bytes] = []
        self.connected = False
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.probes = 0

    async def connect(self) -> bool:
        self.connect_calls += 1
        result = self._connect_results.pop(0) if self._connect_results else True
        self.connected = result
        return result

    async def disconnect(self) -> bool:
        self.disconnect_calls += 1
        self.connected = False
        return True

    async def send(self, data: bytes) -> bool:
        if not self.connected:
            return False
        self.sent.append(bytes(data))
        return True

    async def receive(self) -> bytes | str | None:
        item = await self._inbox.get()
        if item is _CLOSE:
            self.connected = False
            return None
        return item  # type: ignore[return-value]

    async def probe(self) -> None:
        self.probes += 1

    def push(self, data: bytes | str) -> None:
        self._inbox.put_nowait(data)

    def close(self) -> None:
        self._inbox.put_nowait(_CLOSE)


__all__ = ["QueueTransport"]
