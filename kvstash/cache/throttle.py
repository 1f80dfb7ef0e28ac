"""Fixed-window request throttling on top of the cache counters."""

import hashlib
from dataclasses import dataclass
from typing import Optional

from kvstash.config import CacheSettings
from kvstash.utils.logger import log_warning
from .manager import CacheManager


@dataclass(frozen=True)
class ThrottleDecision:
    """Outcome of a single throttled hit."""

    allowed: bool
    count: int
    limit: int
    remaining: int
    retry_after: int  # seconds; 0 when allowed


class Throttle:
    """Bound the number of actions per client within a fixed window.

    Each hit atomically increments a counter that expires ``period`` seconds
    after the first hit of the window. Counting relies on the backend's
    atomic increment; an AtomicityError from the backend propagates instead
    of silently allowing the request.
    """

    def __init__(self, manager: CacheManager, limit: int = 60, period: int = 60,
                 prefix: str = "throttle_"):
        if limit < 1:
            raise ValueError("Throttle limit must be at least 1")
        if period <= 0:
            raise ValueError("Throttle period must be positive")

        self.manager = manager
        self.limit = limit
        self.period = period
        self.prefix = prefix

    @classmethod
    def from_settings(cls, manager: CacheManager,
                      settings: Optional[CacheSettings] = None) -> "Throttle":
        settings = settings or manager.settings
        return cls(manager, settings.throttle_limit, settings.throttle_period_seconds)

    def key_for(self, client_id: str, action: str) -> str:
        """Counter key for a client/action pair."""
        digest = hashlib.sha1(f"{client_id}|{action}".encode("utf-8")).hexdigest()
        return f"{self.prefix}{digest}"

    async def hit(self, client_id: str, action: str) -> ThrottleDecision:
        """Count one action and decide whether it is allowed."""
        count = await self.manager.increment(self.key_for(client_id, action), 1, ttl=self.period)
        allowed = count <= self.limit

        if not allowed:
            log_warning("Request throttled", action=action, count=count, limit=self.limit)

        return ThrottleDecision(
            allowed=allowed,
            count=count,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            retry_after=0 if allowed else self.period,
        )

    async def reset(self, client_id: str, action: str) -> bool:
        """Forget the window for a client/action pair."""
        return await self.manager.delete(self.key_for(client_id, action))
