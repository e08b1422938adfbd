"""Per-key call throttling."""

from __future__ import annotations

import time
from collections.abc import Callable


class Throttle:
    """Allows an action at most once per ``interval`` seconds for each key.

    Not thread-safe: meant to be owned by one service on one event loop.

    Usage::

        throttle = Throttle(2.0)
        if throttle.try_acquire("fetch:u1"):
            ...  # do the expensive thing
    """

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._interval = interval
        self._clock = clock
        self._last: dict[str, float] = {}

    def try_acquire(self, key: str = "default") -> bool:
        """Record a call for ``key`` and return True if it is allowed now."""
        now = self._clock()
        last = self._last.get(key)
        if last is not None and now - last < self._interval:
            return False
        self._last[key] = now
        return True

    def reset(self, key: str | None = None) -> None:
        """Forget the last call for ``key`` (or for every key)."""
        if key is None:
            self._last.clear()
        else:
            self._last.pop(key, None)
