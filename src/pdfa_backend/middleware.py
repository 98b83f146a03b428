import threading
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request

WINDOW_SECONDS = 60


def client_identity(request: Request) -> str:
    """The caller's network address; the identity every quota is keyed on."""
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class RateLimiter:
    """
    Simple in-memory rate limiter using a fixed window algorithm.
    Tracks requests per identity within a one minute window.
    """

    def __init__(self, requests_per_minute: int = 60, clock: Callable[[], float] = time.time):
        self.rpm = requests_per_minute
        self._clock = clock
        self._lock = threading.Lock()
        # identity -> (count, window_start_time)
        self.requests: Dict[str, Tuple[int, float]] = {}

    def is_allowed(self, identifier: str) -> bool:
        now = self._clock()
        with self._lock:
            count, start_time = self.requests.get(identifier, (0, now))

            if now - start_time >= WINDOW_SECONDS:
                self.requests[identifier] = (1, now)
                return True

            if count >= self.rpm:
                return False

            self.requests[identifier] = (count + 1, start_time)
            return True

    def cleanup(self) -> int:
        """Drop expired windows so idle identities do not accumulate."""
        now = self._clock()
        with self._lock:
            stale = [k for k, v in self.requests.items() if now - v[1] >= WINDOW_SECONDS]
            for k in stale:
                del self.requests[k]
        return len(stale)

    def __call__(self, request: Request) -> None:
        if not self.is_allowed(client_identity(request)):
            raise HTTPException(status_code=429, detail="Too many requests. Please slow down.")
