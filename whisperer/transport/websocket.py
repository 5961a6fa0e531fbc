"""WebSocket transport to a device relay at ``ws(s)://host:port/ui/<uuid>``."""

from __future__ import annotations

import logging

import aiohttp

from ..const import DEFAULT_WEBSOCKET_PORT

logger = logging.getLogger("whisperer.transport.websocket")

SECURE_PORT = 443


def relay_url(host: str, port: int, uuid: str) -> str:
    """``wss`` on the TLS port, plain ``ws`` everywhere else."""
    scheme = "wss" if port == SECURE_PORT else "ws"
    return f"{scheme}://{host}:{port}/ui/{uuid}"


class WebSocketTransport:
    """aiohttp client WebSocket carrying one device's byte stream."""

    def __init__(
        self,
        host: str,
        uuid: str,
        *,
        port: int = DEFAULT_WEBSOCKET_PORT,
        session: aiohttp.ClientSession | None = None,
        heartbeat: float | None = None,
    ) -> None:
        self.url = relay_url(host, port, uuid)
        self.uuid = uuid
        self.heartbeat = heartbeat
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> bool:
        if self.is_open:
            await self.disconnect()
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        try:
            self._ws = await self._session.ws_connect(self.url, heartbeat=self.heartbeat)
        except (aiohttp.ClientError, OSError) as exc:
            logger.error("WebSocket connect to %s failed: %s", self.url, exc)
            return False
        logger.info("WebSocket open: %s", self.url)
        return True

    async def disconnect(self) -> bool:
        ws, self._ws = self._ws, None
        closed = False
        if ws is not None and not ws.closed:
            await ws.close()
            closed = True
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        return closed

    async def send(self, data: bytes) -> bool:
        if not self.is_open:
            return False
        assert self._ws is not None
        try:
            await self._ws.send_bytes(data)
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            logger.warning("WebSocket send to %s failed: %s", self.url, exc)
            return False
        return True

    async def receive(self) -> bytes | str | None:
        ws = self._ws
        if ws is None:
            return None
        while True:
            msg = await ws.receive()
            if msg.type == aiohttp.WSMsgType.BINARY:
                return bytes(msg.data)
            if msg.type == aiohttp.WSMsgType.TEXT:
                return str(msg.data)
            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                logger.info("WebSocket closed: %s", self.url)
                return None
            if msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("WebSocket error on %s: %s", self.url, ws.exception())
                return None


__all__ = ["WebSocketTransport", "relay_url"]
