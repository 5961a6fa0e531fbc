"""Topic-keyed dispatch of decoded messages to application handlers."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from .const import DEFAULT_TOPIC_FIELD
from .errors import HandlerError
from .protocol.structures import LogLevel
from .state.registry import ConnectionRegistry

if TYPE_CHECKING:
    from .engine import DeviceWhisperer

logger = logging.getLogger("whisperer.dispatcher")

Topic = str | int


@dataclass(frozen=True, slots=True)
class HandlerContext:
    """What every handler receives alongside the message."""

    uuid: str
    engine: DeviceWhisperer

    @property
    def registry(self) -> ConnectionRegistry:
        return self.engine.registry

    async def send(self, data: bytes | str) -> bool:
        return await self.engine.send(self.uuid, data)

    async def reply(self, message: Any) -> bool:
        return await self.engine.send_message(self.uuid, message)

    def log(self, level: LogLevel | int, message: Any) -> None:
        self.engine.append_log(self.uuid, level, message)


TopicHandler = Callable[[Any, HandlerContext], Awaitable[None] | None]


def extract_topic(message: Any, field: str) -> Any:
    """Read *field* from a mapping key or an attribute of *message*."""
    if isinstance(message, Mapping):
        return message.get(field)
    return getattr(message, field, None)


class TopicDispatcher:
    """Routes each decoded message to the handler registered for its topic.

    The topic map is frozen at construction. A failing handler is logged and
    never stops the caller from dispatching the next frame.
    """

    def __init__(
        self,
        handlers: Mapping[Topic, TopicHandler],
        *,
        topic_field: str = DEFAULT_TOPIC_FIELD,
        on_log: Callable[[str, LogLevel, str], None] | None = None,
    ) -> None:
        self._handlers: Mapping[Topic, TopicHandler] = MappingProxyType(dict(handlers))
        self.topic_field = topic_field
        self._on_log = on_log

    @property
    def handlers(self) -> Mapping[Topic, TopicHandler]:
        return self._handlers

    def __contains__(self, topic: object) -> bool:
        return topic in self._handlers

    async def dispatch(self, message: Any, context: HandlerContext) -> bool:
        """Invoke the handler for *message*'s topic.

        Returns ``True`` only when a handler ran to completion.
        """
        topic = extract_topic(message, self.topic_field)
        handler = self._lookup(topic)
        if handler is None:
            logger.warning("%s: unknown topic %r", context.uuid, topic)
            self._log(context.uuid, LogLevel.WARNING, f'[!] Unknown topic: "{topic}"')
            return False

        try:
            result = handler(message, context)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            error = HandlerError(topic, exc)
            logger.error("%s: %s", context.uuid, error, exc_info=exc)
            self._log(context.uuid, LogLevel.ERROR, f'[!] Error in handler for topic "{topic}": {exc}')
            return False
        return True

    def _lookup(self, topic: Any) -> TopicHandler | None:
        if topic is None:
            return None
        try:
            return self._handlers.get(topic)
        except TypeError:
            # Unhashable topic values never match.
            return None

    def _log(self, uuid: str, level: LogLevel, message: str) -> None:
        if self._on_log is not None:
            self._on_log(uuid, level, message)


__all__ = ["HandlerContext", "Topic", "TopicDispatcher", "TopicHandler", "extract_topic"]
