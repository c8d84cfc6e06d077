"""Live chat helpers built on a RocketChatSession.

A visitor registers as a guest, logs in with its visitor token, opens a
room (the room id is chosen client side) and exchanges messages over the
``stream-room-messages`` stream.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from .errors import ProtocolError

if TYPE_CHECKING:
    from .auth import Token
    from .session import RocketChatSession, Subscription

_LOGGER = logging.getLogger(__name__)

ROOM_MESSAGES_STREAM = "stream-room-messages"

# Alphabet of server-generated ids (no ambiguous characters)
_ID_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTWXYZabcdefghijkmnopqrstuvwxyz"


def random_id(length: int = 17) -> str:
    """Generate an id in the same format the server uses for rooms."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


@dataclass(frozen=True)
class Guest:
    """Registered live chat visitor."""

    user_id: str
    token: str
    name: str
    email: str
    department: str | None = None


class RoomMessageListener(Protocol):
    def on_message(self, message: dict[str, Any]) -> None: ...


async def register_guest(
    session: RocketChatSession,
    name: str,
    email: str,
    *,
    department: str | None = None,
    token: str | None = None,
) -> Guest:
    """Register a visitor and return it with its visitor token."""
    visitor_token = token or secrets.token_hex(16)
    params: dict[str, Any] = {"token": visitor_token, "name": name, "email": email}
    if department:
        params["department"] = department

    result = await session.call("livechat:registerGuest", params)
    if not isinstance(result, Mapping) or not result.get("userId"):
        raise ProtocolError("registerGuest result has no userId")

    _LOGGER.debug("Registered guest %s", result["userId"])
    return Guest(
        user_id=str(result["userId"]),
        token=str(result.get("token") or visitor_token),
        name=name,
        email=email,
        department=department,
    )


async def login_guest(session: RocketChatSession, guest: Guest) -> Token:
    """Log a guest in; the visitor token acts as its resume token."""
    return await session.login_with_token(guest.token)


async def get_initial_data(
    session: RocketChatSession, visitor_token: str
) -> dict[str, Any]:
    """Fetch the live chat widget configuration for a visitor."""
    result = await session.call("livechat:getInitialData", visitor_token)
    if not isinstance(result, Mapping):
        raise ProtocolError("getInitialData result is not an object")
    return dict(result)


class LiveChatRoom:
    """Room between one guest and the agents serving it."""

    def __init__(
        self,
        session: RocketChatSession,
        guest: Guest,
        room_id: str | None = None,
    ) -> None:
        self._session = session
        self.guest = guest
        self.room_id = room_id or random_id()
        self._subscription: Subscription | None = None

    async def send_message(self, text: str) -> dict[str, Any]:
        """Post a message; the first message creates the room on the server."""
        if not text:
            raise ValueError("message text is required")
        result = await self._session.call(
            "sendMessageLivechat",
            {
                "_id": random_id(),
                "rid": self.room_id,
                "msg": text,
                "token": self.guest.token,
            },
        )
        return dict(result) if isinstance(result, Mapping) else {}

    async def subscribe_messages(self, listener: RoomMessageListener) -> Subscription:
        """Forward messages posted to this room to listener.on_message."""
        room_id = self.room_id

        def on_changed(value: dict[str, Any]) -> None:
            if value.get("eventName") != room_id:
                return
            for message in value.get("args") or []:
                if isinstance(message, Mapping):
                    listener.on_message(dict(message))

        if self._subscription is not None:
            await self._session.unsubscribe(self._subscription.id)
        self._subscription = await self._session.subscribe(
            ROOM_MESSAGES_STREAM,
            room_id,
            {"useCollection": False, "args": [{"token": self.guest.token}]},
            on_changed=on_changed,
        )
        return self._subscription

    async def unsubscribe_messages(self) -> bool:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return False
        return await self._session.unsubscribe(subscription.id)


def create_room(
    session: RocketChatSession, guest: Guest, room_id: str | None = None
) -> LiveChatRoom:
    """Open a room handle for guest. Nothing is sent until the first message."""
    return LiveChatRoom(session, guest, room_id)
