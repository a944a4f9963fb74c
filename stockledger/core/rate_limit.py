import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from threading import Lock


@dataclass
class _Attempts:
    failures: deque[float] = field(default_factory=deque)
    locked_until: float = 0.0


class LoginRateLimiter:
    """Locks a login key (identifier + client ip) after repeated failures.

    State is per process; a multi-worker deployment gets one limiter per worker.
    """

    def __init__(
        self,
        *,
        max_attempts: int,
        window_seconds: int,
        lock_seconds: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.lock_seconds = lock_seconds
        self._clock = clock
        self._attempts: dict[str, _Attempts] = {}
        self._lock = Lock()

    def check(self, key: str) -> int:
        """Seconds until `key` may try again, 0 when it is not locked."""
        now = self._clock()
        with self._lock:
            attempts = self._attempts.get(key)
            if attempts is None:
                return 0
            if attempts.locked_until > now:
                return int(attempts.locked_until - now) + 1
            self._expire(attempts, now)
            if not attempts.failures:
                self._attempts.pop(key, None)
            return 0

    def register_failure(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            attempts = self._attempts.setdefault(key, _Attempts())
            self._expire(attempts, now)
            attempts.failures.append(now)
            if len(attempts.failures) >= self.max_attempts:
                attempts.locked_until = now + self.lock_seconds
                attempts.failures.clear()

    def register_success(self, key: str) -> None:
        with self._lock:
            self._attempts.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._attempts.clear()

    def _expire(self, attempts: _Attempts, now: float) -> None:
        cutoff = now - self.window_seconds
        while attempts.failures and attempts.failures[0] < cutoff:
            attempts.failures.popleft()
