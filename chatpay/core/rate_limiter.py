"""Per-user fixed-window rate limiting for inbound chat messages."""

import time
from dataclasses import dataclass
from typing import Callable, Dict


@dataclass
class _Window:
    count: int
    started_at: float


class RateLimiter:
    """Allow at most ``max_requests`` per user within each ``window_seconds`` window."""

    def __init__(
        self,
        max_requests: int = 30,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[int, _Window] = {}

    def check(self, user_id: int) -> bool:
        """Count one request; return False if the user is over the limit."""
        now = self._clock()
        window = self._windows.get(user_id)

        if window is None or now - window.started_at > self.window_seconds:
            window = _Window(count=0, started_at=now)
            self._windows[user_id] = window

        if window.count >= self.max_requests:
            return False

        window.count += 1
        return True

    def remaining(self, user_id: int) -> int:
        window = self._windows.get(user_id)
        if window is None or self._clock() - window.started_at > self.window_seconds:
            return self.max_requests
        return max(0, self.max_requests - window.count)

    def reset_in(self, user_id: int) -> float:
        """Seconds until the user's current window resets."""
        window = self._windows.get(user_id)
        if window is None:
            return 0.0
        return max(0.0, self.window_seconds - (self._clock() - window.started_at))
