import time
from collections.abc import Callable
from typing import Any


class TTLCache:
    """A single cached value that expires ``ttl`` seconds after it was set."""

    def __init__(self, key: str, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.key = key
        self.ttl = ttl
        self._clock = clock
        self._value: Any = None
        self._stored_at: float | None = None

    def get(self) -> Any:
        if self._stored_at is None:
            return None
        if self._clock() - self._stored_at >= self.ttl:
            self.invalidate()
            return None
        return self._value

    def set(self, value: Any) -> None:
        self._value = value
        self._stored_at = self._clock()

    def invalidate(self) -> None:
        self._value = None
        self._stored_at = None

    def age(self) -> float | None:
        """Seconds since the value was stored, or None if nothing is cached."""
        if self._stored_at is None:
            return None
        return self._clock() - self._stored_at
