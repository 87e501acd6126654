"""Per-client sliding-window rate limiting for the webhook endpoint.

Timestamps are kept in memory only. A restart resets every window, which is
acceptable for a burst guard.
"""

import logging
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict

logger = logging.getLogger(__name__)


class RateLimiter:
    """Sliding-window admission control keyed by client identity.

    A request at time T is allowed when fewer than ``max_requests``
    timestamps for the client fall within ``(T - window_seconds, T]``.
    Allowed requests are recorded; denied requests are not.

    Attributes:
        window_seconds: Length of the trailing window.
        max_requests: Requests permitted per client per window.
    """

    def __init__(
        self,
        window_seconds: float = 60.0,
        max_requests: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = defaultdict(deque)

    def _prune(self, timestamps: Deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()

    def is_allowed(self, client_key: str) -> bool:
        """Check and record a request for ``client_key``."""
        now = self._clock()
        timestamps = self._windows[client_key]
        self._prune(timestamps, now)

        if len(timestamps) >= self.max_requests:
            logger.warning(
                "Rate limit exceeded",
                extra={"client": client_key, "max_requests": self.max_requests},
            )
            return False

        timestamps.append(now)
        return True

    def remaining(self, client_key: str) -> int:
        """Return how many more requests ``client_key`` may make now."""
        timestamps = self._windows.get(client_key)
        if not timestamps:
            return self.max_requests
        self._prune(timestamps, self._clock())
        return max(0, self.max_requests - len(timestamps))

    def retry_after(self, client_key: str) -> int:
        """Seconds until the oldest recorded request leaves the window."""
        timestamps = self._windows.get(client_key)
        if not timestamps:
            return 0
        wait = timestamps[0] + self.window_seconds - self._clock()
        return max(1, int(wait + 0.999))

    def cleanup(self) -> int:
        """Drop clients whose whole history has aged out of the window.

        Returns:
            Number of client entries removed.
        """
        now = self._clock()
        stale = []
        for client_key, timestamps in self._windows.items():
            self._prune(timestamps, now)
            if not timestamps:
                stale.append(client_key)

        for client_key in stale:
            del self._windows[client_key]

        if stale:
            logger.debug("Rate limiter cleanup removed %d clients", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._windows)
