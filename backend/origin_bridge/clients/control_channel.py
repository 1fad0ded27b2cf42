"""WebSocket transport for the Origin control channel."""

import asyncio
import logging
import time
from typing import AsyncIterator, Callable, Optional

import aiohttp

from origin_bridge.clients.origin_protocol import ChannelError

logger = logging.getLogger(__name__)


class ControlChannel:
    """Thin wrapper around an aiohttp client WebSocket.

    Pings are answered manually (``autoping=False``) so that pongs reach us
    and the keep-alive round-trip time can be measured.
    """

    def __init__(self, on_pong: Optional[Callable[[float], None]] = None):
        self.on_pong = on_pong
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._ping_sent_at: Optional[float] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def open(self, url: str) -> None:
        """Perform the WebSocket handshake.

        Raises:
            ChannelError: If the handshake fails
        """
        if self.connected:
            return

        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(url, autoping=False, heartbeat=None)
        except asyncio.CancelledError:
            await self._close_session()
            raise
        except (aiohttp.ClientError, OSError) as e:
            await self._close_session()
            raise ChannelError(f"Failed to open {url}: {e}")

        logger.debug(f"Control channel open: {url}")

    async def send_text(self, text: str) -> None:
        if not self.connected:
            raise ChannelError("Control channel is not open")
        try:
            await self._ws.send_str(text)
        except (aiohttp.ClientError, ConnectionError) as e:
            raise ChannelError(f"Failed to send: {e}")

    async def ping(self) -> None:
        if not self.connected:
            raise ChannelError("Control channel is not open")
        self._ping_sent_at = time.monotonic()
        try:
            await self._ws.ping()
        except (aiohttp.ClientError, ConnectionError) as e:
            self._ping_sent_at = None
            raise ChannelError(f"Failed to ping: {e}")

    async def messages(self) -> AsyncIterator[str]:
        """Yield text frames until the socket closes or fails."""
        if self._ws is None:
            return

        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                yield msg.data
            elif msg.type == aiohttp.WSMsgType.PING:
                await self._ws.pong(msg.data)
            elif msg.type == aiohttp.WSMsgType.PONG:
                self._handle_pong()
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.error(f"Control channel error: {self._ws.exception()}")
                break

    def _handle_pong(self) -> None:
        if self._ping_sent_at is None:
            return
        rtt_ms = (time.monotonic() - self._ping_sent_at) * 1000.0
        self._ping_sent_at = None
        if self.on_pong:
            self.on_pong(rtt_ms)

    async def close(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        await self._close_session()

    async def _close_session(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
