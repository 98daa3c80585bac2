import time
from typing import Callable, Dict, Tuple


class RateLimiter:
    """
    Simple in-memory rate limiter using a fixed window algorithm.
    Tracks requests per client identifier (usually the remote IP).
    """

    def __init__(
        self,
        requests_per_window: int = 50,
        window_seconds: float = 15 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = requests_per_window
        self.window = window_seconds
        self._clock = clock
        # identifier -> (count, window_start_time)
        self.requests: Dict[str, Tuple[int, float]] = {}

    def is_allowed(self, identifier: str) -> bool:
        now = self._clock()
        count, start_time = self.requests.get(identifier, (0, now))

        if now - start_time >= self.window:
            # New window
            self.requests[identifier] = (1, now)
            return True

        if count >= self.limit:
            return False

        self.requests[identifier] = (count + 1, start_time)
        return True

    def cleanup(self) -> None:
        """Drop expired windows so idle clients do not accumulate."""
        now = self._clock()
        expired = [key for key, (_, start) in self.requests.items() if now - start >= self.window]
        for key in expired:
            del self.requests[key]

    def reset(self) -> None:
        self.requests.clear()
