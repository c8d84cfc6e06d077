"""Session manager for the Rocket.Chat realtime (DDP) websocket.

This module owns the socket lifecycle and multiplexes everything that
travels over it:
- Connection state machine (idle, connecting, open, closed)
- Correlation ids and pending method calls
- Stream subscriptions and their unsolicited events
- Heartbeat pings
- Reconnection through an injected strategy
- Login flows

Usage:
    session = RocketChatSession("https://chat.example.com")
    await session.connect(my_connect_listener)
    token = await session.login_with_password("user", "secret")
    await session.disconnect()
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import aiohttp

from .auth import (
    LOGIN_METHOD,
    Token,
    build_password_login_params,
    build_resume_login_params,
    parse_login_result,
)
from .errors import (
    AlreadyConnectedError,
    ConnectionClosedError,
    NotConnectedError,
    ProtocolError,
    RocketChatApiError,
    TransportError,
)
from .listeners import ConnectListener, LoginCallback, StreamCollectionListener
from .pending import ErrorCallback, PendingCallRegistry, SuccessCallback
from .protocol import (
    Added,
    Changed,
    Connected,
    DecodedMessage,
    Failed,
    NoSub,
    Ping,
    Pong,
    Ready,
    Removed,
    Result,
    Unknown,
    build_connect,
    build_method_call,
    build_ping,
    build_pong,
    build_subscription,
    build_unsubscription,
    decode_frame,
    encode_frame,
    parse_error_payload,
)
from .reconnect import ReconnectionStrategy
from .transport import Socket, SocketFactory, default_socket_factory
from .ws import websocket_url

_LOGGER = logging.getLogger(__name__)

MAX_MISSED_PONGS = 3


class SessionState(Enum):
    """Connection states of a session."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


@dataclass(slots=True, eq=False)
class Subscription:
    """Standing registration for server-pushed events on one collection.

    ready turns True on the server's ready frame and back to False when the
    connection drops; on_ready fires once per connection.
    """

    id: str
    name: str
    params: list[Any] = field(default_factory=list)
    on_added: Callable[[dict[str, Any]], None] | None = None
    on_changed: Callable[[dict[str, Any]], None] | None = None
    on_removed: Callable[[str | None], None] | None = None
    on_ready: Callable[[str], None] | None = None
    on_nosub: Callable[[RocketChatApiError | None], None] | None = None
    ready: bool = False


def _document(
    doc_id: str | None, fields: Mapping[str, Any], cleared: tuple[str, ...] = ()
) -> dict[str, Any]:
    """Flatten an event into a document; cleared fields map to None."""
    document = dict(fields)
    for name in cleared:
        document[name] = None
    if doc_id is not None:
        document["_id"] = doc_id
    return document


class RocketChatSession:
    """Single logical DDP session over one websocket at a time."""

    def __init__(
        self,
        url: str,
        *,
        socket_factory: SocketFactory | None = None,
        reconnection_strategy: ReconnectionStrategy | None = None,
        ping_interval: float = 30.0,
        ping_timeout: float = 10.0,
        connect_timeout: float = 15.0,
        aiohttp_session: aiohttp.ClientSession | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize session.

        Args:
            url: Server URL (http(s):// or ws(s)://)
            socket_factory: Builds the transport; defaults to WebsocketTransport
            reconnection_strategy: Consulted after a lost connection; None disables reconnects
            ping_interval: Heartbeat ping interval (seconds)
            ping_timeout: Grace period for a pong after each ping (seconds)
            connect_timeout: Websocket connect timeout (seconds)
            aiohttp_session: Use this aiohttp session instead of the websockets library
            logger: Logger overriding the module logger
        """
        self.url = websocket_url(url)

        self._socket_factory = socket_factory or default_socket_factory(
            session=aiohttp_session,
            timeout=connect_timeout,
        )
        self._reconnection_strategy = reconnection_strategy
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout
        self._logger = logger or _LOGGER

        # Connection state
        self._state = SessionState.IDLE
        self._socket: Socket | None = None
        self._session_id: str | None = None
        self._listener: ConnectListener | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._shutdown_requested = False

        # Calls and streams
        self._ids = itertools.count(1)
        self._registry = PendingCallRegistry()
        self._subscriptions: dict[str, Subscription] = {}

        # Keepalive
        self._ping_enabled = True
        self._ping_task: asyncio.Task[None] | None = None
        self._ping_ids = itertools.count(1)
        self._pending_pings: dict[str, float] = {}
        self._last_pong_time: float | None = None
        self._missed_pong_windows = 0

    # -------------------------------------------------------------------------
    # Public API: Connection Management
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        """True once the server has accepted the DDP handshake."""
        return self._state is SessionState.OPEN

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def pending_calls(self) -> int:
        return len(self._registry)

    @property
    def subscriptions(self) -> dict[str, Subscription]:
        return dict(self._subscriptions)

    async def connect(self, listener: ConnectListener | None = None) -> None:
        """Open the websocket and start the DDP handshake.

        Returns once the socket is started; ``listener.on_connect`` fires when
        the server confirms the session.

        Raises:
            AlreadyConnectedError: If connecting or already open
        """
        if self._state in (SessionState.CONNECTING, SessionState.OPEN):
            raise AlreadyConnectedError(f"Session is {self._state.value}")
        if listener is not None:
            self._listener = listener
        self._shutdown_requested = False
        await self._open_socket()

    async def disconnect(self) -> None:
        """Close the connection and fail every pending call. Idempotent."""
        self._shutdown_requested = True
        self._cancel_reconnect()

        if self._state in (SessionState.IDLE, SessionState.CLOSED):
            return

        self._logger.info("[%s] Disconnecting", self.url)
        socket, self._socket = self._socket, None
        self._set_state(SessionState.CLOSED)
        self._session_id = None
        self._stop_keepalive()

        if socket is not None:
            await socket.close()

        self._fail_pending()
        await self._notify("on_disconnect", False)

    def disable_ping(self) -> None:
        """Stop sending heartbeat pings."""
        self._ping_enabled = False
        self._stop_keepalive()

    def enable_ping(self) -> None:
        self._ping_enabled = True
        if self.is_connected:
            self._start_keepalive()

    # -------------------------------------------------------------------------
    # Public API: Method Calls
    # -------------------------------------------------------------------------

    async def call_with_callback(
        self,
        method: str,
        params: Any,
        on_success: SuccessCallback,
        on_error: ErrorCallback,
    ) -> str:
        """Send a method call; exactly one of the callbacks fires later.

        Returns:
            The correlation id of the call

        Raises:
            NotConnectedError: If the session is not open
        """
        self._ensure_open()

        call_id = self._next_id()
        frame = build_method_call(method, params, call_id)
        self._registry.register(call_id, on_success, on_error, method=method)

        try:
            await self._send_frame(frame)
        except TransportError as err:
            self._logger.warning("[%s] Failed to send %s: %s", self.url, method, err)
            self._registry.reject(call_id, err)
        return call_id

    async def call(self, method: str, *params: Any) -> Any:
        """Call a server method and wait for its result.

        Raises:
            NotConnectedError: If the session is not open
            RocketChatApiError: If the server reports an error
            ConnectionClosedError: If the connection closes first
            TransportError: If the frame could not be sent
        """
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

        def on_success(result: Any) -> None:
            if not future.done():
                future.set_result(result)

        def on_error(error: BaseException) -> None:
            if not future.done():
                future.set_exception(error)

        await self.call_with_callback(method, list(params), on_success, on_error)
        return await future

    # -------------------------------------------------------------------------
    # Public API: Subscriptions
    # -------------------------------------------------------------------------

    async def subscribe(
        self,
        name: str,
        *params: Any,
        on_added: Callable[[dict[str, Any]], None] | None = None,
        on_changed: Callable[[dict[str, Any]], None] | None = None,
        on_removed: Callable[[str | None], None] | None = None,
        on_ready: Callable[[str], None] | None = None,
        on_nosub: Callable[[RocketChatApiError | None], None] | None = None,
    ) -> Subscription:
        """Register a stream subscription.

        Events for collection ``name`` go to the matching callbacks. The
        subscription is sent now if the session is open, and again after
        every reconnect until :meth:`unsubscribe` is called.
        """
        subscription = Subscription(
            id=self._next_id(),
            name=name,
            params=list(params),
            on_added=on_added,
            on_changed=on_changed,
            on_removed=on_removed,
            on_ready=on_ready,
            on_nosub=on_nosub,
        )
        frame = build_subscription(name, subscription.params, subscription.id)
        self._subscriptions[subscription.id] = subscription

        if self.is_connected:
            try:
                await self._send_frame(frame)
            except TransportError as err:
                self._logger.warning(
                    "[%s] Failed to subscribe to %s: %s", self.url, name, err
                )
        return subscription

    async def subscribe_collection(
        self,
        name: str,
        listener: StreamCollectionListener,
        *params: Any,
    ) -> Subscription:
        """Subscribe with a StreamCollectionListener object."""
        return await self.subscribe(
            name,
            *params,
            on_added=listener.on_added,
            on_changed=listener.on_changed,
            on_removed=listener.on_removed,
        )

    async def unsubscribe(self, sub_id: str) -> bool:
        """Tear down a subscription. Returns False if it was not active."""
        subscription = self._subscriptions.pop(sub_id, None)
        if subscription is None:
            return False

        if self.is_connected:
            try:
                await self._send_frame(build_unsubscription(sub_id))
            except TransportError as err:
                self._logger.warning(
                    "[%s] Failed to unsubscribe %s: %s", self.url, sub_id, err
                )
        return True

    # -------------------------------------------------------------------------
    # Public API: Login
    # -------------------------------------------------------------------------

    async def login_with_password(self, username: str, password: str) -> Token:
        """Log in with credentials and return the issued token."""
        result = await self.call(
            LOGIN_METHOD, build_password_login_params(username, password)
        )
        return parse_login_result(result)

    async def login_with_token(self, token: str) -> Token:
        """Resume a session with a previously issued token."""
        result = await self.call(LOGIN_METHOD, build_resume_login_params(token))
        return parse_login_result(result, resumed=True)

    async def login(
        self, username: str, password: str, callback: LoginCallback
    ) -> str:
        """Callback flavour of :meth:`login_with_password`."""
        return await self._login(
            build_password_login_params(username, password), callback, resumed=False
        )

    async def login_using_token(self, token: str, callback: LoginCallback) -> str:
        """Callback flavour of :meth:`login_with_token`."""
        return await self._login(
            build_resume_login_params(token), callback, resumed=True
        )

    async def _login(
        self, params: dict[str, Any], callback: LoginCallback, *, resumed: bool
    ) -> str:
        def on_success(result: Any) -> None:
            try:
                token = parse_login_result(result, resumed=resumed)
            except ProtocolError as err:
                self._logger.warning("[%s] Invalid login result: %s", self.url, err)
                callback.on_error(err)
                return
            callback.on_login_success(token)

        return await self.call_with_callback(
            LOGIN_METHOD, [params], on_success, callback.on_error
        )

    # -------------------------------------------------------------------------
    # SocketListener
    # -------------------------------------------------------------------------

    async def on_open(self) -> None:
        """Transport is up; start the DDP handshake."""
        self._logger.debug("[%s] Socket open, sending DDP connect", self.url)
        await self._send_frame(build_connect())

    async def on_message(self, text: str) -> None:
        try:
            message = decode_frame(text)
            await self._dispatch(message)
        except Exception as err:
            self._logger.exception("[%s] Error handling frame: %s", self.url, err)

    async def on_close(self, closed_by_server: bool) -> None:
        if self._state is SessionState.CONNECTING:
            await self._fail_connect(
                TransportError("Connection closed during handshake")
            )
        elif self._state is SessionState.OPEN:
            self._logger.info(
                "[%s] WebSocket closed (by server: %s)", self.url, closed_by_server
            )
            await self._connection_lost(closed_by_server)

    async def on_error(self, error: BaseException) -> None:
        if self._state is SessionState.CONNECTING:
            await self._fail_connect(error)
        elif self._state is SessionState.OPEN:
            self._logger.error("[%s] WebSocket error: %s", self.url, error)
            await self._connection_lost(True)

    # -------------------------------------------------------------------------
    # Internal: Connection State Machine
    # -------------------------------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        if self._state is not state:
            self._logger.debug(
                "[%s] State: %s → %s", self.url, self._state.value, state.value
            )
            self._state = state

    def _ensure_open(self) -> None:
        if self._state is not SessionState.OPEN:
            raise NotConnectedError(f"Session is {self._state.value}, not open")

    def _next_id(self) -> str:
        return str(next(self._ids))

    async def _open_socket(self) -> None:
        self._set_state(SessionState.CONNECTING)
        attempt = (
            self._reconnection_strategy.attempts if self._reconnection_strategy else 0
        )
        self._logger.info("[%s] Connecting (attempt #%d)", self.url, attempt + 1)

        socket = self._socket_factory(self.url, self)
        self._socket = socket
        try:
            await socket.connect()
        except TransportError as err:
            if self._socket is socket and self._state is SessionState.CONNECTING:
                await self._fail_connect(err)
                return
            await socket.close()
            return

        if self._socket is not socket:
            # Disconnected while the handshake was in flight
            self._logger.debug("[%s] Closing superseded socket", self.url)
            await socket.close()

    async def _fail_connect(self, error: BaseException) -> None:
        self._logger.warning("[%s] Connection failed: %s", self.url, error)
        socket, self._socket = self._socket, None
        self._set_state(SessionState.CLOSED)

        if socket is not None:
            await socket.close()

        self._fail_pending()
        await self._notify("on_connect_error", error)
        self._schedule_reconnect()

    async def _connection_lost(self, closed_by_server: bool) -> None:
        socket, self._socket = self._socket, None
        self._set_state(SessionState.CLOSED)
        self._session_id = None
        self._stop_keepalive()

        if socket is not None:
            await socket.close()

        self._fail_pending()
        await self._notify("on_disconnect", closed_by_server)
        self._schedule_reconnect()

    def _fail_pending(self) -> None:
        for subscription in self._subscriptions.values():
            subscription.ready = False
        drained = self._registry.drain_all(ConnectionClosedError("Connection closed"))
        if drained:
            self._logger.debug("[%s] Failed %d pending calls", self.url, drained)

    async def _on_connected(self, session_id: str | None) -> None:
        self._set_state(SessionState.OPEN)
        self._session_id = session_id
        self._logger.info("[%s] Connected (session %s)", self.url, session_id)

        if self._reconnection_strategy is not None:
            self._reconnection_strategy.reset()
        if self._ping_enabled:
            self._start_keepalive()

        for subscription in list(self._subscriptions.values()):
            try:
                await self._send_frame(
                    build_subscription(
                        subscription.name, subscription.params, subscription.id
                    )
                )
            except TransportError as err:
                self._logger.warning(
                    "[%s] Failed to resubscribe %s: %s", self.url, subscription.name, err
                )
                break

        await self._notify("on_connect", session_id)

    def _schedule_reconnect(self) -> None:
        """Consult the reconnection strategy after a lost connection."""
        if self._shutdown_requested or self._reconnection_strategy is None:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return

        delay = self._reconnection_strategy.next_delay()
        if delay is None:
            self._logger.warning(
                "[%s] Giving up after %d reconnect attempts",
                self.url,
                self._reconnection_strategy.attempts,
            )
            return

        self._logger.info("[%s] Reconnecting in %.1fs", self.url, delay)
        self._reconnect_task = asyncio.create_task(self._reconnect_after_delay(delay))

    async def _reconnect_after_delay(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self._logger.debug("[%s] Reconnect cancelled", self.url)
            return

        self._reconnect_task = None
        if self._shutdown_requested or self._state not in (
            SessionState.IDLE,
            SessionState.CLOSED,
        ):
            return
        await self._open_socket()

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _notify(self, hook: str, *args: Any) -> None:
        """Invoke a ConnectListener hook; plain or async methods both work."""
        if self._listener is None:
            return
        callback = getattr(self._listener, hook, None)
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as err:
            self._logger.exception("[%s] %s callback error: %s", self.url, hook, err)

    # -------------------------------------------------------------------------
    # Internal: Message Dispatch
    # -------------------------------------------------------------------------

    async def _send_frame(self, frame: Mapping[str, Any]) -> None:
        if self._socket is None:
            raise TransportError("Socket is not open")
        await self._socket.send(encode_frame(frame))

    async def _dispatch(self, message: DecodedMessage) -> None:
        if isinstance(message, Result):
            self._handle_result(message)
        elif isinstance(message, (Added, Changed, Removed)):
            self._handle_collection_event(message)
        elif isinstance(message, Ping):
            await self._handle_ping(message)
        elif isinstance(message, Pong):
            self._handle_pong(message)
        elif isinstance(message, Connected):
            if self._state is SessionState.CONNECTING:
                await self._on_connected(message.session)
            else:
                self._logger.debug("[%s] Ignoring duplicate connected frame", self.url)
        elif isinstance(message, Ready):
            self._handle_ready(message)
        elif isinstance(message, NoSub):
            self._handle_nosub(message)
        elif isinstance(message, Failed):
            if self._state is SessionState.CONNECTING:
                await self._fail_connect(
                    ProtocolError(
                        f"Server rejected DDP handshake (suggested version {message.version})"
                    )
                )
        elif isinstance(message, Unknown):
            self._logger.debug(
                "[%s] Dropping frame: %s", self.url, ProtocolError(message.reason)
            )

    def _handle_result(self, message: Result) -> None:
        if not message.has_error:
            handled = self._registry.resolve(message.id, message.result)
        elif isinstance(message.error, Mapping):
            handled = self._registry.reject(message.id, parse_error_payload(message.error))
        else:
            handled = self._registry.reject(
                message.id, ProtocolError(f"Malformed error payload: {message.error!r}")
            )

        if not handled:
            self._logger.debug(
                "[%s] Dropping result for unknown call id %s", self.url, message.id
            )

    def _handle_collection_event(self, message: Added | Changed | Removed) -> None:
        for subscription in list(self._subscriptions.values()):
            if subscription.name != message.collection:
                continue
            try:
                if isinstance(message, Added):
                    if subscription.on_added:
                        subscription.on_added(_document(message.id, message.fields))
                elif isinstance(message, Changed):
                    if subscription.on_changed:
                        subscription.on_changed(
                            _document(message.id, message.fields, message.cleared)
                        )
                elif subscription.on_removed:
                    subscription.on_removed(message.id)
            except Exception as err:
                self._logger.exception(
                    "[%s] Subscription %s callback error: %s",
                    self.url,
                    subscription.name,
                    err,
                )

    def _handle_ready(self, message: Ready) -> None:
        for sub_id in message.subs:
            subscription = self._subscriptions.get(sub_id)
            if subscription is None or subscription.ready:
                continue
            subscription.ready = True
            if subscription.on_ready:
                try:
                    subscription.on_ready(sub_id)
                except Exception as err:
                    self._logger.exception(
                        "[%s] Ready callback error for %s: %s", self.url, sub_id, err
                    )

    def _handle_nosub(self, message: NoSub) -> None:
        subscription = self._subscriptions.pop(message.id, None)
        if subscription is None:
            return
        error = parse_error_payload(message.error) if message.error is not None else None
        if error is not None:
            self._logger.warning(
                "[%s] Subscription %s rejected: %s", self.url, subscription.name, error
            )
        if subscription.on_nosub:
            try:
                subscription.on_nosub(error)
            except Exception as err:
                self._logger.exception(
                    "[%s] Nosub callback error for %s: %s", self.url, message.id, err
                )

    async def _handle_ping(self, message: Ping) -> None:
        try:
            await self._send_frame(build_pong(message.id))
        except TransportError as err:
            self._logger.warning("[%s] Failed to send pong: %s", self.url, err)

    def _handle_pong(self, message: Pong) -> None:
        if message.id is not None:
            sent_at = self._pending_pings.pop(message.id, None)
            if sent_at is not None:
                self._logger.debug(
                    "[%s] Pong id=%s (%.2fs)",
                    self.url,
                    message.id,
                    time.monotonic() - sent_at,
                )
        self._last_pong_time = time.monotonic()
        self._missed_pong_windows = 0

    # -------------------------------------------------------------------------
    # Internal: Keepalive
    # -------------------------------------------------------------------------

    def _start_keepalive(self) -> None:
        if self._ping_task is not None and not self._ping_task.done():
            return
        self._last_pong_time = time.monotonic()
        self._missed_pong_windows = 0
        self._pending_pings.clear()
        self._ping_task = asyncio.create_task(self._keepalive_loop())

    def _stop_keepalive(self) -> None:
        task, self._ping_task = self._ping_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _keepalive_loop(self) -> None:
        """Send periodic pings and detect a dead connection."""
        try:
            while self.is_connected:
                await asyncio.sleep(self._ping_interval)
                if not self.is_connected:
                    break
                await self._send_ping()

                if self._last_pong_time is None:
                    continue
                since_pong = time.monotonic() - self._last_pong_time
                if since_pong > self._ping_interval + self._ping_timeout:
                    self._missed_pong_windows += 1
                    self._logger.warning(
                        "[%s] Missed pong (%.1fs since last, %d windows)",
                        self.url,
                        since_pong,
                        self._missed_pong_windows,
                    )
                    if self._missed_pong_windows >= MAX_MISSED_PONGS:
                        self._logger.error(
                            "[%s] Connection dead (%d missed pongs)",
                            self.url,
                            MAX_MISSED_PONGS,
                        )
                        await self._connection_lost(True)
                        break

        except asyncio.CancelledError:
            self._logger.debug("[%s] Keepalive cancelled", self.url)

    async def _send_ping(self) -> None:
        ping_id = str(next(self._ping_ids))
        self._pending_pings[ping_id] = time.monotonic()
        try:
            await self._send_frame(build_ping(ping_id))
        except TransportError as err:
            self._pending_pings.pop(ping_id, None)
            self._logger.debug("[%s] Failed to send ping: %s", self.url, err)
