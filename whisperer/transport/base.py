"""Transport collaborator contract."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class Transport(Protocol):
    """A byte channel to one device.

    ``receive`` returns ``None`` once the channel is closed and ``b""`` when a
    polling transport has nothing available yet. ``probe`` is optional: when
    present, the liveness monitor calls it on a quiet connection.
    """

    async def connect(self) -> bool: ...

    async def disconnect(self) -> bool: ...

    async def send(self, data: bytes) -> bool: ...

    async def receive(self) -> bytes | str | None: ...


__all__ = ["Transport"]
