import time
import asyncio


class RateLimiter:
    """
    Token bucket rate limiter for upstream API calls.

    Allows `calls_per_window` requests per `window_size` seconds, refilling
    proportionally to elapsed time. Callers share the bucket through `acquire`.
    """

    def __init__(self, calls_per_window: int, window_size: float):
        self._calls_per_window = calls_per_window
        self._window_size = window_size
        self._tokens = float(calls_per_window)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self, now: float) -> None:
        """Add tokens for the time elapsed since the last refill."""
        elapsed = now - self._last_refill
        if elapsed <= 0:
            return
        rate = self._calls_per_window / self._window_size
        self._tokens = min(float(self._calls_per_window), self._tokens + elapsed * rate)
        self._last_refill = now

    async def acquire(self) -> None:
        """Acquire a token, waiting until one becomes available."""
        async with self._lock:
            self._refill(time.monotonic())

            if self._tokens < 1:
                # Wait for the missing fraction of a token
                rate = self._calls_per_window / self._window_size
                await asyncio.sleep((1 - self._tokens) / rate)
                self._refill(time.monotonic())

            self._tokens = max(0.0, self._tokens - 1)
