"""Per-caller rate limiting for bid, deposit and settings mutations.

Fixed-window counters in Redis (``INCR`` + ``EXPIRE``), keyed by scope, caller
identity and window number. If Redis is unreachable the check fails open and
logs a warning.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from fastapi import Depends, Request
from gavel.config import Settings, get_settings

from api.errors import RateLimitedError

logger = logging.getLogger(__name__)


def default_limits(settings: Settings) -> dict[str, int]:
    return {
        "bid": settings.rate_limit_bid_requests,
        "deposit": settings.rate_limit_deposit_requests,
        "settings": settings.rate_limit_settings_requests,
    }


class RateLimiter:
    def __init__(
        self,
        limits: dict[str, int],
        *,
        window_seconds: int,
        redis_client: Any = None,
        redis_url: str = "",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.limits = dict(limits)
        self.window_seconds = max(1, int(window_seconds))
        self._redis = redis_client
        self._redis_url = redis_url
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> RateLimiter:
        return cls(
            default_limits(settings),
            window_seconds=settings.rate_limit_window_seconds,
            redis_url=settings.redis_url,
        )

    def _get_redis_client(self):
        if self._redis is None:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    async def hit(self, scope: str, identity: str) -> int:
        """Count one request; raise RateLimitedError once the window is exhausted."""
        limit = self.limits.get(scope, 0)
        if limit <= 0:
            return 0
        now = self._clock()
        window = int(now // self.window_seconds)
        key = f"ratelimit:{scope}:{identity}:{window}"
        try:
            r = self._get_redis_client()
            count = await r.incr(key)
            if count == 1:
                await r.expire(key, self.window_seconds)
        except Exception as e:
            logger.warning("Rate limit check failed: %s", e)
            return 0
        if count > limit:
            retry_after = max(1, int(self.window_seconds - (now % self.window_seconds)))
            raise RateLimitedError(
                "Rate limit exceeded",
                retry_after=retry_after,
                scope=scope,
            )
        return int(count)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def get_rate_limiter(request: Request) -> RateLimiter:
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        limiter = RateLimiter.from_settings(get_settings())
        request.app.state.rate_limiter = limiter
    return limiter


def rate_limited(scope: str, principal_dependency: Callable[..., Any]):
    """Dependency that resolves the caller, then charges one request to ``scope``."""

    async def _dependency(
        principal: Any = Depends(principal_dependency),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> Any:
        await limiter.hit(scope, str(principal.id))
        return principal

    return _dependency
