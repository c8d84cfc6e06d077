"""WebSocket client wrapper for the Rocket.Chat realtime endpoint."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import aiohttp
from aiohttp import WSMsgType
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

from .errors import RocketChatConnectionError
from .ws import connect_aiohttp_websocket, connect_websocket

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class RocketChatWsMessageType(Enum):
    """Normalized WebSocket message types."""

    TEXT = "text"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class RocketChatWsMessage:
    """Normalized WebSocket message payload."""

    type: RocketChatWsMessageType
    data: str | BaseException | None = None


class RocketChatWsClient:
    """Wrapper around a websockets or aiohttp connection.

    The websockets library is used by default. Passing an
    ``aiohttp.ClientSession`` to :meth:`connect` reuses the application's
    session instead.
    """

    def __init__(self) -> None:
        self._ws: ClientConnection | aiohttp.ClientWebSocketResponse | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(
        self,
        url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        ping_interval: float | None = 20,
        timeout: float = 15.0,
    ) -> None:
        """Connect to the server websocket."""
        if session is not None:
            self._ws = await connect_aiohttp_websocket(
                session,
                url,
                heartbeat=ping_interval,
                timeout=timeout,
            )
        else:
            self._ws = await connect_websocket(
                url,
                ping_interval=ping_interval,
                timeout=timeout,
            )

    async def close(self) -> None:
        """Close the websocket connection."""
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    async def send_text(self, text: str) -> None:
        """Send a text frame."""
        if self._ws is None:
            raise RocketChatConnectionError("WebSocket is not connected")
        try:
            if isinstance(self._ws, aiohttp.ClientWebSocketResponse):
                await self._ws.send_str(text)
            else:
                await self._ws.send(text)
        except ConnectionClosed as err:
            raise RocketChatConnectionError("WebSocket is closed") from err
        except (OSError, aiohttp.ClientError) as err:
            raise RocketChatConnectionError("WebSocket send failed") from err

    def __aiter__(self) -> AsyncIterator[RocketChatWsMessage]:
        if self._ws is None:
            raise RocketChatConnectionError("WebSocket is not connected")
        return self._iter_messages(self._ws)

    async def _iter_messages(
        self, ws: ClientConnection | aiohttp.ClientWebSocketResponse
    ) -> AsyncIterator[RocketChatWsMessage]:
        try:
            async for msg in ws:
                normalized: RocketChatWsMessage | None = self._normalize_message(msg)
                if normalized is None:
                    continue
                yield normalized
                if normalized.type is not RocketChatWsMessageType.TEXT:
                    return
        except ConnectionClosed:
            yield RocketChatWsMessage(type=RocketChatWsMessageType.CLOSED)
        except Exception as err:
            yield RocketChatWsMessage(type=RocketChatWsMessageType.ERROR, data=err)
        else:
            # Normal iteration completion means the peer closed gracefully.
            yield RocketChatWsMessage(type=RocketChatWsMessageType.CLOSED)

    @staticmethod
    def _normalize_message(msg: Any) -> RocketChatWsMessage | None:
        """Normalize backend-specific frames into RocketChatWsMessage."""
        if isinstance(msg, bytes):
            return None
        if isinstance(msg, str):
            return RocketChatWsMessage(RocketChatWsMessageType.TEXT, msg)

        msg_type = getattr(msg, "type", None)
        data = getattr(msg, "data", None)

        if msg_type is not None:
            normalized_type = RocketChatWsClient._map_aiohttp_type(msg_type)
            if normalized_type is None:
                return None
            if normalized_type is RocketChatWsMessageType.CLOSED:
                return RocketChatWsMessage(normalized_type)
            return RocketChatWsMessage(normalized_type, data)

        return None

    @staticmethod
    def _map_aiohttp_type(msg_type: Any) -> RocketChatWsMessageType | None:
        """Map aiohttp WSMsgType enums to internal message types."""
        if msg_type is WSMsgType.TEXT:
            return RocketChatWsMessageType.TEXT

        if msg_type is WSMsgType.BINARY:
            return None

        if msg_type in {WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED}:
            return RocketChatWsMessageType.CLOSED

        if msg_type is WSMsgType.ERROR:
            return RocketChatWsMessageType.ERROR

        return None
