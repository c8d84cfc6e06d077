"""WebSocket helpers for the Rocket.Chat realtime endpoint."""

from __future__ import annotations

import asyncio
from urllib.parse import urlsplit, urlunsplit

import aiohttp
import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    InvalidHandshake,
    InvalidURI,
    WebSocketException,
)

from .errors import (
    RocketChatConnectionError,
    RocketChatHandshakeError,
    RocketChatTimeout,
)


def websocket_url(server_url: str) -> str:
    """Normalize a server address into its DDP websocket URL.

    ``https://chat.example.com`` becomes ``wss://chat.example.com/websocket``.
    URLs that already point at a websocket path are returned unchanged.
    """
    parts = urlsplit(server_url)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    if scheme not in ("ws", "wss"):
        raise ValueError(f"Unsupported URL scheme: {parts.scheme!r}")
    path = parts.path.rstrip("/")
    if not path.endswith("/websocket"):
        path = f"{path}/websocket"
    return urlunsplit((scheme, parts.netloc, path, parts.query, ""))


async def connect_websocket(
    url: str,
    *,
    ping_interval: float | None = 20,
    timeout: float = 15.0,
) -> ClientConnection:
    """Connect to a WebSocket endpoint with the websockets library.

    Args:
        url: ws:// or wss:// URL
        ping_interval: Interval for protocol-level ping frames
        timeout: Connection timeout
    """
    try:
        return await asyncio.wait_for(
            websockets.connect(
                url,
                ping_interval=ping_interval,
                close_timeout=5,
                max_size=None,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise RocketChatTimeout("WebSocket connection timed out") from err
    except (InvalidHandshake, InvalidURI) as err:
        raise RocketChatHandshakeError("WebSocket handshake failed") from err
    except (OSError, WebSocketException) as err:
        raise RocketChatConnectionError("WebSocket connection failed") from err


async def connect_aiohttp_websocket(
    session: aiohttp.ClientSession,
    url: str,
    *,
    heartbeat: float | None = 20,
    timeout: float = 15.0,
) -> aiohttp.ClientWebSocketResponse:
    """Connect through an application-owned aiohttp session."""
    try:
        return await asyncio.wait_for(
            session.ws_connect(
                url,
                heartbeat=heartbeat,
                max_msg_size=0,
                autoping=True,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise RocketChatTimeout("WebSocket connection timed out") from err
    except aiohttp.WSServerHandshakeError as err:
        raise RocketChatHandshakeError("WebSocket handshake failed") from err
    except (OSError, aiohttp.ClientError) as err:
        raise RocketChatConnectionError("WebSocket connection failed") from err
