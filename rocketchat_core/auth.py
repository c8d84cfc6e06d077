"""Login payload builders and login result parsing."""

from __future__ import annotations

import hashlib
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .errors import ProtocolError

LOGIN_METHOD = "login"
_MS_PER_DAY = 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class Token:
    """Credential returned by a successful login.

    expires_at is epoch milliseconds, or None when the token does not carry
    an expiry (resumed sessions).
    """

    auth_token: str
    user_id: str
    expires_at: int | None = None


def hash_password(password: str) -> str:
    """SHA-256 hex digest, the only password form the server accepts over DDP."""
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def build_password_login_params(username: str, password: str) -> dict[str, Any]:
    """Build login params for username (or email) and password."""
    if not username:
        raise ValueError("username is required")
    user: dict[str, str] = {"email": username} if "@" in username else {"username": username}
    return {
        "user": user,
        "password": {"digest": hash_password(password), "algorithm": "sha-256"},
    }


def build_resume_login_params(token: str) -> dict[str, Any]:
    if not token:
        raise ValueError("resume token is required")
    return {"resume": token}


def _timestamp_ms(value: Any) -> int | None:
    """Accept EJSON dates ({"$date": ms}) or plain epoch milliseconds."""
    if isinstance(value, Mapping):
        value = value.get("$date")
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as err:
            raise ProtocolError(f"Invalid token expiry: {value!r}") from err
    raise ProtocolError(f"Invalid token expiry: {value!r}")


def parse_login_result(payload: Any, *, resumed: bool = False) -> Token:
    """Convert a login result into a Token.

    Two shapes are accepted: the DDP form
    ``{"id", "token", "tokenExpires": {"$date": ms}}`` and the nested form
    ``{"id", "token": {"authToken", "userId", "expiresAt" | "expiresInDays"}}``.

    Raises:
        ProtocolError: If the payload has no token or no user id
    """
    if not isinstance(payload, Mapping):
        raise ProtocolError("Login result is not an object")

    raw_token = payload.get("token")
    expires_at: int | None

    if isinstance(raw_token, Mapping):
        auth_token = raw_token.get("authToken")
        user_id = raw_token.get("userId") or payload.get("id")
        if raw_token.get("expiresAt") is not None:
            expires_at = _timestamp_ms(raw_token.get("expiresAt"))
        elif raw_token.get("expiresInDays") is not None:
            days = raw_token["expiresInDays"]
            if not isinstance(days, (int, float)) or isinstance(days, bool):
                raise ProtocolError(f"Invalid expiresInDays: {days!r}")
            expires_at = int(time.time() * 1000) + int(days * _MS_PER_DAY)
        else:
            expires_at = None
    else:
        auth_token = raw_token
        user_id = payload.get("id")
        expires_at = _timestamp_ms(payload.get("tokenExpires"))

    if not isinstance(auth_token, str) or not auth_token:
        raise ProtocolError("Login result has no auth token")
    if not isinstance(user_id, str) or not user_id:
        raise ProtocolError("Login result has no user id")

    return Token(
        auth_token=auth_token,
        user_id=user_id,
        expires_at=None if resumed else expires_at,
    )
