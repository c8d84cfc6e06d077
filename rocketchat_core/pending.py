"""Registry of method calls awaiting their result frame."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .errors import DuplicateCorrelationIdError

_LOGGER = logging.getLogger(__name__)

SuccessCallback = Callable[[Any], None]
ErrorCallback = Callable[[BaseException], None]


@dataclass(slots=True)
class PendingCall:
    """Callback pair waiting on a single correlation id."""

    id: str
    on_success: SuccessCallback
    on_error: ErrorCallback
    method: str | None = None


class PendingCallRegistry:
    """Maps correlation ids to waiting callbacks.

    Every entry is removed before its callback runs, so each call resolves
    exactly once. The lock only guards the dict; callbacks run outside it
    and may safely register new calls.
    """

    def __init__(self) -> None:
        self._calls: dict[str, PendingCall] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._calls)

    def __contains__(self, call_id: object) -> bool:
        with self._lock:
            return call_id in self._calls

    def register(
        self,
        call_id: str,
        on_success: SuccessCallback,
        on_error: ErrorCallback,
        *,
        method: str | None = None,
    ) -> PendingCall:
        """Store a callback pair under call_id."""
        with self._lock:
            if call_id in self._calls:
                raise DuplicateCorrelationIdError(call_id)
            pending = PendingCall(call_id, on_success, on_error, method)
            self._calls[call_id] = pending
        return pending

    def _pop(self, call_id: str) -> PendingCall | None:
        with self._lock:
            return self._calls.pop(call_id, None)

    def resolve(self, call_id: str, payload: Any) -> bool:
        """Complete a call successfully. Unknown ids are dropped."""
        pending = self._pop(call_id)
        if pending is None:
            return False
        self._invoke(pending, pending.on_success, payload)
        return True

    def reject(self, call_id: str, error: BaseException) -> bool:
        """Fail a call. Unknown ids are dropped."""
        pending = self._pop(call_id)
        if pending is None:
            return False
        self._invoke(pending, pending.on_error, error)
        return True

    def drain_all(self, error: BaseException) -> int:
        """Fail every pending call with error; the registry is empty afterward."""
        with self._lock:
            drained = list(self._calls.values())
            self._calls.clear()

        for pending in drained:
            self._invoke(pending, pending.on_error, error)
        return len(drained)

    @staticmethod
    def _invoke(pending: PendingCall, callback: Callable[[Any], None], value: Any) -> None:
        try:
            callback(value)
        except Exception as err:
            _LOGGER.exception(
                "Callback for call %s (%s) failed: %s", pending.id, pending.method, err
            )
