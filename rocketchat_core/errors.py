"""Client error types for Rocket.Chat realtime interactions."""

from __future__ import annotations

from typing import Any


class RocketChatClientError(Exception):
    """Base error for Rocket.Chat client failures."""


class TransportError(RocketChatClientError):
    """Socket-level failure reported by the websocket transport."""


class RocketChatTimeout(TransportError):
    """Timeout while communicating with the server."""


class RocketChatConnectionError(TransportError):
    """Network connection to the server failed."""


class RocketChatHandshakeError(TransportError):
    """WebSocket handshake failed."""


class ProtocolError(RocketChatClientError):
    """Frame could not be parsed or does not match the DDP contract."""


class NotConnectedError(RocketChatClientError):
    """A call was attempted while the session is not open."""


class AlreadyConnectedError(RocketChatClientError):
    """connect() was called on a session that is connecting or open."""


class ConnectionClosedError(RocketChatClientError):
    """The connection closed while the call was still pending."""


class DuplicateCorrelationIdError(RocketChatClientError):
    """A correlation id was registered twice."""

    def __init__(self, call_id: str) -> None:
        super().__init__(f"Correlation id {call_id!r} is already pending")
        self.call_id = call_id


class RocketChatApiError(RocketChatClientError):
    """Business error reported by the server for a single call."""

    def __init__(
        self,
        error: int | str | None,
        reason: str | None,
        message: str | None,
        error_type: str | None,
        *,
        details: Any = None,
    ) -> None:
        super().__init__(message or reason or str(error))
        self._error = error
        self._reason = reason
        self._message = message
        self._error_type = error_type
        self._details = details

    @property
    def error(self) -> int | str | None:
        """Numeric error code (e.g. 403)."""
        return self._error

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def message(self) -> str | None:
        return self._message

    @property
    def error_type(self) -> str | None:
        return self._error_type

    @property
    def details(self) -> Any:
        return self._details

    def __repr__(self) -> str:
        return (
            f"RocketChatApiError(error={self._error!r}, reason={self._reason!r}, "
            f"message={self._message!r}, error_type={self._error_type!r})"
        )
