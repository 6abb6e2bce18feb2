"""In-process sliding-window rate limiter for the auth endpoints."""

import time
from collections import defaultdict, deque


class RateLimiter:
    def __init__(self, max_attempts: int, window_seconds: int):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._attempts: dict[str, deque] = defaultdict(deque)

    def _prune(self, key: str, now: float) -> deque:
        attempts = self._attempts[key]
        while attempts and now - attempts[0] >= self.window_seconds:
            attempts.popleft()
        return attempts

    def is_allowed(self, key: str) -> bool:
        """Record an attempt for ``key`` and report whether it is within the limit."""
        now = time.monotonic()
        attempts = self._prune(key, now)
        if len(attempts) >= self.max_attempts:
            return False
        attempts.append(now)
        return True

    def get_retry_after(self, key: str) -> int:
        """Seconds until the oldest attempt in the window expires (0 if not limited)."""
        now = time.monotonic()
        attempts = self._prune(key, now)
        if len(attempts) < self.max_attempts:
            return 0
        return max(1, int(self.window_seconds - (now - attempts[0])) + 1)

    def reset(self) -> None:
        self._attempts.clear()


# 10 attempts per IP per 5 minutes across register + login
auth_limiter = RateLimiter(max_attempts=10, window_seconds=300)
