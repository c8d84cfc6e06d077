"""Asyncio client for the Rocket.Chat realtime (DDP) API."""

__version__ = "0.1.0"

from .auth import Token, parse_login_result
from .errors import (
    AlreadyConnectedError,
    ConnectionClosedError,
    DuplicateCorrelationIdError,
    NotConnectedError,
    ProtocolError,
    RocketChatApiError,
    RocketChatClientError,
    RocketChatConnectionError,
    RocketChatHandshakeError,
    RocketChatTimeout,
    TransportError,
)
from .listeners import ConnectListener, LoginCallback, StreamCollectionListener
from .livechat import Guest, LiveChatRoom, create_room, login_guest, register_guest
from .pending import PendingCallRegistry
from .protocol import decode_frame, encode_frame, parse_error_payload
from .reconnect import ReconnectionStrategy
from .session import RocketChatSession, SessionState, Subscription
from .transport import Socket, SocketListener, WebsocketTransport
from .ws import connect_websocket, websocket_url
from .ws_client import RocketChatWsClient, RocketChatWsMessage, RocketChatWsMessageType

__all__ = [
    "AlreadyConnectedError",
    "ConnectListener",
    "ConnectionClosedError",
    "DuplicateCorrelationIdError",
    "Guest",
    "LiveChatRoom",
    "LoginCallback",
    "NotConnectedError",
    "PendingCallRegistry",
    "ProtocolError",
    "ReconnectionStrategy",
    "RocketChatApiError",
    "RocketChatClientError",
    "RocketChatConnectionError",
    "RocketChatHandshakeError",
    "RocketChatSession",
    "RocketChatTimeout",
    "RocketChatWsClient",
    "RocketChatWsMessage",
    "RocketChatWsMessageType",
    "SessionState",
    "Socket",
    "SocketListener",
    "StreamCollectionListener",
    "Subscription",
    "Token",
    "TransportError",
    "WebsocketTransport",
    "__version__",
    "connect_websocket",
    "create_room",
    "decode_frame",
    "encode_frame",
    "login_guest",
    "parse_error_payload",
    "parse_login_result",
    "register_guest",
    "websocket_url",
]
