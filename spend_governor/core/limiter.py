"""
Request rate limiting on a shared counter.

The counter lives in the governance store, so every service instance sees
the same count for a principal.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional

from spend_governor.storage.repository import GovernanceRepository


class RateLimiter:
    """Fixed-window request limiter backed by an atomic store counter."""

    def __init__(
        self,
        repository: GovernanceRepository,
        limit: int,
        window_seconds: int = 60,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._repository = repository
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def hit(self, principal: str) -> int:
        """Count one request and return the count in the current window."""
        return await asyncio.to_thread(
            self._repository.increment_counter,
            f"requests:{principal}",
            self.window_seconds,
            self._clock(),
        )

    async def allow(self, principal: str) -> bool:
        return await self.hit(principal) <= self.limit
