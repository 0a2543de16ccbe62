"""Per-domain send rate limiter backed by the recorded send attempts."""

import time

from .errors import RateLimited
from .persistence import Persistence


class RateLimiter:
    """Sliding-window limiter built on top of :class:`Persistence`."""

    def __init__(self, persistence: Persistence, *, max_sends: int = 100, window_seconds: int = 60):
        """A non-positive ``max_sends`` disables the limiter."""
        self.persistence = persistence
        self.max_sends = int(max_sends)
        self.window_seconds = max(1, int(window_seconds))

    async def check(self, domain_id: str) -> None:
        """Raise :class:`RateLimited` when the domain used up its window."""
        if self.max_sends <= 0:
            return
        now = int(time.time())
        count = await self.persistence.count_attempts(domain_id=domain_id, since_ts=now - self.window_seconds)
        if count >= self.max_sends:
            retry_after = (now // self.window_seconds + 1) * self.window_seconds - now
            raise RateLimited(max(1, retry_after))
