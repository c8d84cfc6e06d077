"""Socket transport driving a SocketListener from a websocket connection.

The session never touches the websocket directly. It receives a ``Socket``
from a factory and is told about open/message/close/error through the
``SocketListener`` coroutines, which the reader task awaits one at a time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Protocol, runtime_checkable

import aiohttp

from .errors import RocketChatClientError, TransportError
from .ws_client import RocketChatWsClient, RocketChatWsMessageType

_LOGGER = logging.getLogger(__name__)


@runtime_checkable
class SocketListener(Protocol):
    """Receives transport events, serialized on one reader task."""

    async def on_open(self) -> None: ...

    async def on_message(self, text: str) -> None: ...

    async def on_close(self, closed_by_server: bool) -> None: ...

    async def on_error(self, error: BaseException) -> None: ...


class Socket(Protocol):
    """Transport handle owned by a session."""

    async def connect(self) -> None: ...

    async def send(self, text: str) -> None: ...

    async def close(self) -> None: ...


SocketFactory = Callable[[str, SocketListener], Socket]


class WebsocketTransport:
    """Default ``Socket`` backed by RocketChatWsClient."""

    def __init__(
        self,
        url: str,
        listener: SocketListener,
        *,
        session: aiohttp.ClientSession | None = None,
        ping_interval: float | None = 20,
        timeout: float = 15.0,
    ) -> None:
        self.url = url
        self._listener = listener
        self._session = session
        self._ping_interval = ping_interval
        self._timeout = timeout
        self._client: RocketChatWsClient | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._closing = False

    async def connect(self) -> None:
        """Open the websocket, report on_open, then start the reader.

        Raises:
            TransportError: If the connection cannot be established
        """
        self._closing = False
        client = RocketChatWsClient()
        await client.connect(
            self.url,
            session=self._session,
            ping_interval=self._ping_interval,
            timeout=self._timeout,
        )
        if self._closing:
            await client.close()
            raise TransportError("Socket closed during connect")
        self._client = client

        try:
            await self._listener.on_open()
        except Exception:
            self._client = None
            await client.close()
            raise
        self._reader_task = asyncio.create_task(self._read_loop())

    async def send(self, text: str) -> None:
        if self._client is None or not self._client.connected:
            raise TransportError("Socket is not open")
        _LOGGER.debug("[%s] >> %s", self.url, text)
        await self._client.send_text(text)

    async def close(self) -> None:
        """Close the websocket and wait for the reader to finish."""
        self._closing = True
        client, self._client = self._client, None
        if client is not None:
            try:
                await asyncio.wait_for(client.close(), timeout=2.0)
            except TimeoutError:
                _LOGGER.warning("[%s] WebSocket close timed out", self.url)
            except RocketChatClientError as err:
                _LOGGER.debug("[%s] Error while closing: %s", self.url, err)

        task, self._reader_task = self._reader_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _read_loop(self) -> None:
        client = self._client
        if client is None:
            return

        async for msg in client:
            if msg.type is RocketChatWsMessageType.TEXT:
                if isinstance(msg.data, str):
                    _LOGGER.debug("[%s] << %s", self.url, msg.data)
                    await self._listener.on_message(msg.data)
            elif msg.type is RocketChatWsMessageType.CLOSED:
                await self._listener.on_close(not self._closing)
                return
            else:
                error = msg.data
                if not isinstance(error, BaseException):
                    error = TransportError("WebSocket error")
                if self._closing:
                    await self._listener.on_close(False)
                else:
                    await self._listener.on_error(error)
                return


def default_socket_factory(
    *,
    session: aiohttp.ClientSession | None = None,
    ping_interval: float | None = 20,
    timeout: float = 15.0,
) -> SocketFactory:
    """Build a factory producing WebsocketTransport instances."""

    def factory(url: str, listener: SocketListener) -> Socket:
        return WebsocketTransport(
            url,
            listener,
            session=session,
            ping_interval=ping_interval,
            timeout=timeout,
        )

    return factory
