"""Reconnection policy consulted by the session after a lost connection."""

from __future__ import annotations

# Doubling stops here; 2**1024 overflows a float
_MAX_EXPONENT = 32


class ReconnectionStrategy:
    """Exponential backoff with an optional attempt limit.

    Subclass and override :meth:`next_delay` for a different policy.
    Returning None from it stops reconnecting.
    """

    def __init__(
        self,
        max_attempts: int | None = 10,
        reconnect_interval: float = 5.0,
        max_reconnect_interval: float = 60.0,
    ) -> None:
        if reconnect_interval < 0:
            raise ValueError("reconnect_interval must not be negative")
        self.max_attempts = max_attempts
        self.reconnect_interval = reconnect_interval
        self.max_reconnect_interval = max(max_reconnect_interval, reconnect_interval)
        self._attempts = 0

    @property
    def attempts(self) -> int:
        return self._attempts

    def next_delay(self) -> float | None:
        """Return seconds to wait before the next attempt, or None to give up."""
        if self.max_attempts is not None and self._attempts >= self.max_attempts:
            return None
        delay = min(
            self.reconnect_interval * (2 ** min(self._attempts, _MAX_EXPONENT)),
            self.max_reconnect_interval,
        )
        self._attempts += 1
        return delay

    def reset(self) -> None:
        """Called once a connection is fully open again."""
        self._attempts = 0
