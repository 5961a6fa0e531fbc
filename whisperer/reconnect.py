"""Connection supervision: connect, receive loop and bounded reconnect."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import msgspec
import tenacity
from transitions import Machine

from .const import (
    DEFAULT_IDLE_POLL_INTERVAL,
    DEFAULT_MAX_RETRIES,
    DEFAULT_QUIESCENCE_DELAY,
    DEFAULT_RETRY_DELAY,
)
from .errors import TransportError, UnknownConnectionError
from .protocol.structures import Health, LogLevel
from .state.registry import ConnectionRegistry
from .watchdog import LivenessMonitor

logger = logging.getLogger("whisperer.reconnect")

ChunkHandler = Callable[[str, bytes | str], Awaitable[object]]


class ConnectionLink:
    """Lifecycle FSM of one connection, mirrored into registry health."""

    STATE_DISCONNECTED = "disconnected"
    STATE_CONNECTING = "connecting"
    STATE_CONNECTED = "connected"

    def __init__(self, uuid: str, registry: ConnectionRegistry) -> None:
        self.uuid = uuid
        self.registry = registry
        self.fsm_state = self.STATE_DISCONNECTED
        self.task: asyncio.Task[None] | None = None
        self.closed = asyncio.Event()

        self.machine = Machine(
            model=self,
            states=[self.STATE_DISCONNECTED, self.STATE_CONNECTING, self.STATE_CONNECTED],
            initial=self.STATE_DISCONNECTED,
            model_attribute="fsm_state",
            ignore_invalid_triggers=True,
            after_state_change="_mirror_health",
        )
        self.machine.add_transition("begin", [self.STATE_DISCONNECTED, self.STATE_CONNECTED], self.STATE_CONNECTING)
        self.machine.add_transition("established", self.STATE_CONNECTING, self.STATE_CONNECTED)
        self.machine.add_transition("drop", "*", self.STATE_DISCONNECTED)

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    def _mirror_health(self) -> None:
        self.registry.set_health(self.uuid, Health(self.fsm_state))


class ReconnectionCoordinator:
    """Runs one supervising task per connection.

    Each task connects the transport, pumps received chunks into
    *on_receive* in arrival order and, when the link closes unexpectedly,
    retries after a fixed delay until ``max_retries`` automatic attempts
    have been made since the last manual :meth:`connect`.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        on_receive: ChunkHandler,
        *,
        monitor: LivenessMonitor | None = None,
        on_reset: Callable[[str], None] | None = None,
        on_reconnect: Callable[[str, int], None] | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        quiescence_delay: float = DEFAULT_QUIESCENCE_DELAY,
        idle_poll_interval: float = DEFAULT_IDLE_POLL_INTERVAL,
    ) -> None:
        self.registry = registry
        self.monitor = monitor
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.quiescence_delay = quiescence_delay
        self.idle_poll_interval = idle_poll_interval
        self._on_receive = on_receive
        self._on_reset = on_reset
        self._on_reconnect = on_reconnect
        self._links: dict[str, ConnectionLink] = {}

    def link(self, uuid: str) -> ConnectionLink:
        link = self._links.get(uuid)
        if link is None:
            if uuid not in self.registry:
                raise UnknownConnectionError(uuid)
            link = self._links[uuid] = ConnectionLink(uuid, self.registry)
        return link

    def state(self, uuid: str) -> str:
        link = self._links.get(uuid)
        return link.fsm_state if link is not None else ConnectionLink.STATE_DISCONNECTED

    async def connect(self, uuid: str) -> asyncio.Task[None]:
        """Manual connect: resets the retry budget and decoder state."""
        link = self.link(uuid)
        await self._halt(link)

        self.registry.update(
            uuid,
            lambda conn: msgspec.structs.replace(conn, auto_reconnect=True, reconnect_attempts=0),
        )
        if self._on_reset is not None:
            self._on_reset(uuid)

        link.task = asyncio.create_task(self._supervise(link), name=f"whisperer-link-{uuid}")
        return link.task

    async def disconnect(self, uuid: str) -> bool:
        """Explicit disconnect. Suppresses automatic reconnection."""
        conn = self.registry.update(uuid, lambda c: msgspec.structs.replace(c, auto_reconnect=False))
        if conn is None:
            return False
        link = self._links.get(uuid)
        if link is not None:
            await self._halt(link)
            link.drop()
        else:
            self.registry.set_health(uuid, Health.DISCONNECTED)
        if self.monitor is not None:
            self.monitor.stop(uuid)

        transport = conn.transport
        if transport is None:
            return True
        try:
            return bool(await transport.disconnect())
        except Exception as exc:
            logger.warning("%s: transport disconnect failed: %s", uuid, exc)
            return False

    def notify_closed(self, uuid: str) -> None:
        """Report an unexpected close detected outside the receive loop."""
        link = self._links.get(uuid)
        if link is None:
            return
        link.closed.set()

    async def reconnect_all(self) -> None:
        """Disconnect every current connection, then reconnect the survivors."""
        snapshot = self.registry.uuids()
        for uuid in snapshot:
            await self.disconnect(uuid)
            await asyncio.sleep(self.quiescence_delay)
        for uuid in snapshot:
            if uuid in self.registry:
                await self.connect(uuid)

    async def forget(self, uuid: str) -> None:
        """Halt and drop the link of a connection that is being removed."""
        link = self._links.pop(uuid, None)
        if link is not None:
            await self._halt(link)

    async def close(self) -> None:
        for uuid in list(self._links):
            await self.forget(uuid)

    async def wait(self, uuid: str) -> None:
        """Wait until the supervising task of *uuid* has finished."""
        link = self._links.get(uuid)
        if link is not None and link.task is not None:
            await asyncio.gather(link.task, return_exceptions=True)

    # --- supervision --------------------------------------------------------

    async def _halt(self, link: ConnectionLink) -> None:
        task, link.task = link.task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            # Called from a handler running inside the link's own receive loop.
            link.closed.set()
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def _should_stop(self, uuid: str) -> Callable[[tenacity.RetryCallState], bool]:
        def _stop(retry_state: tenacity.RetryCallState) -> bool:
            conn = self.registry.get(uuid)
            if conn is None or not conn.auto_reconnect:
                return True
            return retry_state.attempt_number > self.max_retries

        return _stop

    def _before_sleep(self, uuid: str) -> Callable[[tenacity.RetryCallState], None]:
        def _log(retry_state: tenacity.RetryCallState) -> None:
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            conn = self.registry.update(
                uuid,
                lambda c: msgspec.structs.replace(c, reconnect_attempts=c.reconnect_attempts + 1),
            )
            attempts = conn.reconnect_attempts if conn is not None else retry_state.attempt_number
            logger.info(
                "%s: link lost (%s); reconnecting in %.2fs (attempt %d/%d)",
                uuid,
                exc,
                delay,
                attempts,
                self.max_retries,
            )
            self.registry.append_log(
                uuid,
                LogLevel.WARNING,
                f"[~] Reconnecting in {delay:g}s (attempt {attempts}/{self.max_retries})",
            )
            if self._on_reconnect is not None:
                self._on_reconnect(uuid, attempts)

        return _log

    async def _supervise(self, link: ConnectionLink) -> None:
        uuid = link.uuid
        retryer = tenacity.AsyncRetrying(
            wait=tenacity.wait_fixed(self.retry_delay),
            stop=self._should_stop(uuid),
            retry=tenacity.retry_if_exception_type(TransportError),
            before_sleep=self._before_sleep(uuid),
            reraise=True,
        )
        try:
            async for attempt in retryer:
                with attempt:
                    await self._run_link(link)
        except TransportError as exc:
            conn = self.registry.get(uuid)
            if conn is not None and conn.auto_reconnect:
                logger.error("%s: giving up after %d reconnect attempts: %s", uuid, conn.reconnect_attempts, exc)
                self.registry.append_log(
                    uuid,
                    LogLevel.ERROR,
                    f"[!] Giving up after {conn.reconnect_attempts} reconnect attempts",
                )
        except asyncio.CancelledError:
            logger.debug("%s: link task cancelled", uuid)
            raise
        except Exception:
            logger.exception("%s: link task crashed", uuid)
        finally:
            if uuid in self.registry:
                link.drop()
                if self.monitor is not None:
                    self.monitor.stop(uuid)

    async def _run_link(self, link: ConnectionLink) -> None:
        uuid = link.uuid
        conn = self.registry.get(uuid)
        if conn is None:
            return
        transport = conn.transport
        if transport is None:
            raise TransportError(uuid, "no transport attached")

        link.closed.clear()
        link.begin()
        try:
            connected = await transport.connect()
        except TransportError:
            link.drop()
            raise
        except Exception as exc:
            link.drop()
            raise TransportError(uuid, f"connect failed: {exc}") from exc
        if not connected:
            link.drop()
            raise TransportError(uuid, "connect failed")

        link.established()
        logger.info("%s: connected", uuid)
        if self.monitor is not None:
            self.monitor.touch(uuid)

        try:
            await self._receive_loop(link, transport)
        finally:
            link.drop()
            if self.monitor is not None:
                self.monitor.stop(uuid)

        conn = self.registry.get(uuid)
        if conn is not None and conn.auto_reconnect:
            raise TransportError(uuid, "connection closed")
        logger.info("%s: disconnected", uuid)

    async def _receive_loop(self, link: ConnectionLink, transport: object) -> None:
        uuid = link.uuid
        closed_waiter = asyncio.ensure_future(link.closed.wait())
        receiving: asyncio.Future[Any] | None = None
        try:
            while True:
                receiving = asyncio.ensure_future(transport.receive())  # type: ignore[attr-defined]
                done, _ = await asyncio.wait({receiving, closed_waiter}, return_when=asyncio.FIRST_COMPLETED)
                if receiving not in done:
                    receiving.cancel()
                    await asyncio.gather(receiving, return_exceptions=True)
                    logger.warning("%s: transport reported close", uuid)
                    return
                try:
                    chunk = receiving.result()
                except TransportError:
                    raise
                except Exception as exc:
                    logger.warning("%s: receive failed: %s", uuid, exc)
                    return
                if chunk is None:
                    return
                if not chunk:
                    await asyncio.sleep(self.idle_poll_interval)
                    continue
                if self.monitor is not None:
                    self.monitor.touch(uuid)
                await self._on_receive(uuid, chunk)
        finally:
            closed_waiter.cancel()
            if receiving is not None and not receiving.done():
                receiving.cancel()


__all__ = ["ChunkHandler", "ConnectionLink", "ReconnectionCoordinator"]
