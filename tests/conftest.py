"""Pytest configuration and fixtures for rocketchat_core tests."""

from __future__ import annotations

import asyncio
import inspect
import json
from collections.abc import AsyncIterator, Callable
from typing import Any
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from rocketchat_core import RocketChatSession
from rocketchat_core.errors import TransportError
from rocketchat_core.transport import SocketListener

SERVER_URL = "https://test.rocket.chat/websocket"


class FakeSocket:
    """In-memory Socket that records frames and lets tests push frames back."""

    def __init__(self, url: str, listener: SocketListener) -> None:
        self.url = url
        self.listener = listener
        self.sent: list[str] = []
        self.closed = False
        self.connect_error: BaseException | None = None
        self.responder: Callable[[dict[str, Any]], Any] | None = None

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        await self.listener.on_open()

    async def send(self, text: str) -> None:
        if self.closed:
            raise TransportError("Socket is closed")
        self.sent.append(text)
        if self.responder is not None:
            result = self.responder(json.loads(text))
            if inspect.isawaitable(result):
                await result

    async def close(self) -> None:
        self.closed = True

    @property
    def frames(self) -> list[dict[str, Any]]:
        return [json.loads(text) for text in self.sent]

    def frames_of(self, msg: str) -> list[dict[str, Any]]:
        return [frame for frame in self.frames if frame.get("msg") == msg]

    async def receive(self, payload: dict[str, Any] | str) -> None:
        """Deliver a frame to the listener as the transport would."""
        text = payload if isinstance(payload, str) else json.dumps(payload)
        await self.listener.on_message(text)


class FakeSocketFactory:
    """Socket factory handing out FakeSocket instances."""

    def __init__(self) -> None:
        self.sockets: list[FakeSocket] = []
        self.connect_error: BaseException | None = None

    def __call__(self, url: str, listener: SocketListener) -> FakeSocket:
        socket = FakeSocket(url, listener)
        socket.connect_error = self.connect_error
        self.sockets.append(socket)
        return socket

    @property
    def socket(self) -> FakeSocket:
        return self.sockets[-1]


def result_frame(call_id: str, result: Any = None) -> dict[str, Any]:
    return {"msg": "result", "id": call_id, "result": result}


def error_frame(call_id: str, error: dict[str, Any]) -> dict[str, Any]:
    return {"msg": "result", "id": call_id, "error": error}


async def wait_for_frames(socket: FakeSocket, msg: str, count: int) -> None:
    """Yield to the loop until count frames of type msg were sent."""
    for _ in range(100):
        if len(socket.frames_of(msg)) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"expected {count} {msg!r} frames, got {socket.frames_of(msg)}")


@pytest.fixture
def socket_factory() -> FakeSocketFactory:
    return FakeSocketFactory()


@pytest.fixture
def connect_listener() -> MagicMock:
    """ConnectListener mock with plain (sync) hooks."""
    listener = MagicMock()
    listener.on_connect = MagicMock(return_value=None)
    listener.on_disconnect = MagicMock(return_value=None)
    listener.on_connect_error = MagicMock(return_value=None)
    return listener


@pytest.fixture
def session(socket_factory: FakeSocketFactory) -> RocketChatSession:
    """Session wired to the fake transport with heartbeat disabled."""
    session = RocketChatSession(SERVER_URL, socket_factory=socket_factory)
    session.disable_ping()
    return session


@pytest_asyncio.fixture
async def open_session(
    session: RocketChatSession,
    socket_factory: FakeSocketFactory,
    connect_listener: MagicMock,
) -> AsyncIterator[RocketChatSession]:
    """Session that completed the DDP handshake."""
    await session.connect(connect_listener)
    await socket_factory.socket.receive({"msg": "connected", "session": "sess-1"})
    assert session.is_connected
    yield session
    await session.disconnect()
