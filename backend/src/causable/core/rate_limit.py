"""Fixed-window, in-memory request rate limiting.

Per-process only; a multi-instance deployment needs a shared store.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from causable.core.exceptions import RateLimitedError


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    def __init__(
        self,
        *,
        window_seconds: float,
        max_requests: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window_seconds = window_seconds
        self._max_requests = max_requests
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._next_purge = clock() + window_seconds

    @property
    def tracked_clients(self) -> int:
        return len(self._windows)

    def check(self, identifier: str) -> dict[str, str]:
        """Count one request for ``identifier``.

        Returns the ``X-RateLimit-*`` headers for an allowed request and
        raises ``RateLimitedError`` (429) once the window is exhausted.
        """
        now = self._clock()
        if now >= self._next_purge:
            self._purge(now)

        window = self._windows.get(identifier)
        if window is None or now >= window.reset_at:
            window = _Window(count=0, reset_at=now + self._window_seconds)
            self._windows[identifier] = window

        if window.count >= self._max_requests:
            retry_after = max(1, math.ceil(window.reset_at - now))
            raise RateLimitedError(
                detail={"retry_after": retry_after},
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(self._max_requests),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(retry_after),
                },
            )

        window.count += 1
        return {
            "X-RateLimit-Limit": str(self._max_requests),
            "X-RateLimit-Remaining": str(self._max_requests - window.count),
            "X-RateLimit-Reset": str(max(0, math.ceil(window.reset_at - now))),
        }

    def _purge(self, now: float) -> None:
        expired = [key for key, window in self._windows.items() if now >= window.reset_at]
        for key in expired:
            del self._windows[key]
        self._next_purge = now + self._window_seconds
