"""Protocol helpers for Rocket.Chat DDP frames.

Outgoing frames are built as plain dicts and serialized with ``encode_frame``.
Incoming text frames are classified by ``decode_frame`` into one of the
frozen message types below. Decoding never raises: anything malformed or
unrecognized becomes ``Unknown`` so a single bad frame cannot take the
session down.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeGuard

from .errors import RocketChatApiError

DDP_VERSION = "1"
SUPPORTED_DDP_VERSIONS: tuple[str, ...] = ("1", "pre2", "pre1")


def _is_protocol_iterable(value: Any) -> TypeGuard[Iterable[Any]]:
    """Return True when value is a non-string, non-mapping iterable."""
    return not isinstance(value, (str, bytes, Mapping)) and isinstance(
        value, Iterable
    )


def _normalize_params(params: Any) -> list[Any]:
    """DDP params are always a JSON array."""
    if params is None:
        return []
    if _is_protocol_iterable(params):
        return list(params)
    return [params]


# --------------------------------------------------------------------------
# Outgoing frames
# --------------------------------------------------------------------------


def build_connect(
    *,
    version: str = DDP_VERSION,
    support: Iterable[str] = SUPPORTED_DDP_VERSIONS,
) -> dict[str, Any]:
    """Construct the DDP handshake sent right after the socket opens."""
    return {"msg": "connect", "version": version, "support": list(support)}


def build_method_call(method: str, params: Any, call_id: str) -> dict[str, Any]:
    """Build a method call frame.

    Args:
        method: Server method name (e.g. "login").
        params: A single param or an iterable of params.
        call_id: Correlation id echoed back in the matching result frame.

    Returns:
        ``{"msg": "method", "method": ..., "params": [...], "id": ...}``
    """
    if not method:
        raise ValueError("method name is required")
    return {
        "msg": "method",
        "method": method,
        "params": _normalize_params(params),
        "id": call_id,
    }


def build_subscription(name: str, params: Any, sub_id: str) -> dict[str, Any]:
    """Build a ``sub`` frame for a named stream."""
    if not name:
        raise ValueError("subscription name is required")
    return {"msg": "sub", "id": sub_id, "name": name, "params": _normalize_params(params)}


def build_unsubscription(sub_id: str) -> dict[str, Any]:
    return {"msg": "unsub", "id": sub_id}


def build_ping(ping_id: str | None = None) -> dict[str, Any]:
    frame: dict[str, Any] = {"msg": "ping"}
    if ping_id is not None:
        frame["id"] = ping_id
    return frame


def build_pong(ping_id: str | None = None) -> dict[str, Any]:
    """Answer a server ping, echoing its id when it carried one."""
    frame: dict[str, Any] = {"msg": "pong"}
    if ping_id is not None:
        frame["id"] = ping_id
    return frame


def encode_frame(payload: Mapping[str, Any]) -> str:
    """Serialize a frame to compact JSON text."""
    return json.dumps(payload, separators=(",", ":"))


# --------------------------------------------------------------------------
# Incoming frames
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class Connected:
    """Server accepted the DDP handshake."""

    session: str | None


@dataclass(frozen=True)
class Failed:
    """Server refused the DDP handshake."""

    version: str | None


@dataclass(frozen=True)
class Result:
    """Response to a method call."""

    id: str
    result: Any = None
    error: Any = None
    has_error: bool = False


@dataclass(frozen=True)
class Added:
    collection: str
    id: str | None
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Changed:
    collection: str
    id: str | None
    fields: dict[str, Any] = field(default_factory=dict)
    cleared: tuple[str, ...] = ()


@dataclass(frozen=True)
class Removed:
    collection: str
    id: str | None


@dataclass(frozen=True)
class Ready:
    subs: tuple[str, ...]


@dataclass(frozen=True)
class NoSub:
    id: str
    error: Any = None


@dataclass(frozen=True)
class Ping:
    id: str | None = None


@dataclass(frozen=True)
class Pong:
    id: str | None = None


@dataclass(frozen=True)
class Unknown:
    """Frame that could not be classified."""

    raw: Any
    reason: str


DecodedMessage = (
    Connected
    | Failed
    | Result
    | Added
    | Changed
    | Removed
    | Ready
    | NoSub
    | Ping
    | Pong
    | Unknown
)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _fields(data: Mapping[str, Any]) -> dict[str, Any]:
    fields = data.get("fields")
    return dict(fields) if isinstance(fields, Mapping) else {}


def decode_frame(raw: str | bytes | Mapping[str, Any]) -> DecodedMessage:
    """Classify a raw frame into a decoded message. Never raises."""
    if isinstance(raw, Mapping):
        data: Any = raw
    else:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as err:
            return Unknown(raw, f"invalid JSON: {err}")
        except RecursionError:
            return Unknown(raw, "JSON nested too deeply")

    if not isinstance(data, Mapping):
        return Unknown(raw, "frame is not a JSON object")

    msg = data.get("msg")
    if msg is None and "server_id" in data:
        # Pre-handshake banner some servers emit
        return Unknown(raw, "server banner")

    if msg == "connected":
        return Connected(session=_optional_str(data.get("session")))
    if msg == "failed":
        return Failed(version=_optional_str(data.get("version")))
    if msg == "ping":
        return Ping(id=_optional_str(data.get("id")))
    if msg == "pong":
        return Pong(id=_optional_str(data.get("id")))

    if msg == "result":
        call_id = data.get("id")
        if call_id is None:
            return Unknown(raw, "result frame without id")
        return Result(
            id=str(call_id),
            result=data.get("result"),
            error=data.get("error"),
            has_error="error" in data and data.get("error") is not None,
        )

    if msg in ("added", "changed", "removed"):
        collection = data.get("collection")
        if not isinstance(collection, str) or not collection:
            return Unknown(raw, f"{msg} frame without collection")
        doc_id = _optional_str(data.get("id"))
        if msg == "added":
            return Added(collection, doc_id, _fields(data))
        if msg == "changed":
            cleared = data.get("cleared")
            return Changed(
                collection,
                doc_id,
                _fields(data),
                tuple(str(c) for c in cleared) if _is_protocol_iterable(cleared) else (),
            )
        return Removed(collection, doc_id)

    if msg == "ready":
        subs = data.get("subs")
        if not _is_protocol_iterable(subs):
            return Unknown(raw, "ready frame without subs")
        return Ready(tuple(str(s) for s in subs))

    if msg == "nosub":
        sub_id = data.get("id")
        if sub_id is None:
            return Unknown(raw, "nosub frame without id")
        return NoSub(str(sub_id), data.get("error"))

    return Unknown(raw, f"unsupported msg type: {msg!r}")


def _error_code(value: Any) -> int | str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return value
    return None


def parse_error_payload(payload: Any) -> RocketChatApiError:
    """Extract a structured API error from a server error object.

    Missing fields default to None instead of raising.
    """
    if not isinstance(payload, Mapping):
        text = None if payload is None else str(payload)
        return RocketChatApiError(None, text, text, None, details=payload)

    return RocketChatApiError(
        error=_error_code(payload.get("error")),
        reason=_optional_str(payload.get("reason")),
        message=_optional_str(payload.get("message")),
        error_type=_optional_str(payload.get("errorType")),
        details=payload.get("details"),
    )
