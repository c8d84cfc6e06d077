"""Listener interfaces for session lifecycle, logins and streams.

Any object with the matching methods works; nothing needs to inherit from
these protocols.
"""

from __future__ import annotations

from collections.abc import Awaitable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .auth import Token


@runtime_checkable
class ConnectListener(Protocol):
    """Connection lifecycle hooks. Methods may be plain or async."""

    def on_connect(self, session_id: str | None) -> Awaitable[None] | None: ...

    def on_disconnect(self, closed_by_server: bool) -> Awaitable[None] | None: ...

    def on_connect_error(self, error: BaseException) -> Awaitable[None] | None: ...


@runtime_checkable
class LoginCallback(Protocol):
    """Receives exactly one of on_login_success or on_error."""

    def on_login_success(self, token: Token) -> None: ...

    def on_error(self, error: BaseException) -> None: ...


@runtime_checkable
class StreamCollectionListener(Protocol):
    """Receives unsolicited events for one subscribed collection."""

    def on_added(self, document: dict[str, Any]) -> None: ...

    def on_changed(self, value: dict[str, Any]) -> None: ...

    def on_removed(self, key: str | None) -> None: ...
