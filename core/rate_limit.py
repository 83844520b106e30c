"""
Per-client fixed-window rate limiting.

Two limiters run in the API: a global one over every /api/ route and a tighter
one on order creation. State is in-process; behind several workers each worker
enforces its own window.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass
class RateLimit:
    client: str
    request_count: int = 0
    window_start: float = 0.0


class RateLimiter:
    """
    Usage:
        limiter = RateLimiter(limit=5, window_seconds=60, message="Too many orders")
        retry_after = limiter.check(client_ip)
        if retry_after is not None:
            # 429
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        message: str = "Too many requests, please try again later.",
        clock: Callable[[], float] = time.time,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.message = message
        self._clock = clock
        self._clients: dict[str, RateLimit] = {}

    def check(self, client: str) -> Optional[int]:
        """Count one request. Returns seconds until the window resets if over limit, else None."""
        now = self._clock()
        if len(self._clients) > 10_000:
            self.cleanup()

        rl = self._clients.get(client)
        if rl is None or now - rl.window_start >= self.window_seconds:
            rl = RateLimit(client=client, window_start=now)
            self._clients[client] = rl

        rl.request_count += 1
        if rl.request_count > self.limit:
            return max(1, int(rl.window_start + self.window_seconds - now))
        return None

    def cleanup(self):
        """Drop clients whose window has expired."""
        cutoff = self._clock() - self.window_seconds
        expired = [c for c, rl in self._clients.items() if rl.window_start < cutoff]
        for client in expired:
            del self._clients[client]

    def get_stats(self) -> dict:
        return {
            "tracked_clients": len(self._clients),
            "limited_clients": len(
                [rl for rl in self._clients.values() if rl.request_count > self.limit]
            ),
        }
