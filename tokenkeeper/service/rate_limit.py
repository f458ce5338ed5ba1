from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from tokenkeeper.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_seconds: int


class RateLimiter:
    """In-process token bucket keyed by caller.

    Buckets hold ``limit`` tokens and refill continuously over
    ``window_seconds``. State lives in this process only.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = asyncio.Lock()

    async def check(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        cost: int = 1,
    ) -> RateLimitDecision:
        """Consume ``cost`` tokens from the bucket for ``key``.

        A ``cost`` of zero reports the bucket state without consuming.
        """
        if limit <= 0:
            return RateLimitDecision(True, limit, 0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = 60
        now = self._clock()
        refill_rate = float(limit) / float(window_seconds)
        async with self._lock:
            tokens, last_ts = self._buckets.get(key, (float(limit), now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            needed = max(cost, 1)
            allowed = tokens >= needed
            if allowed and cost > 0:
                tokens -= cost
                self._buckets[key] = (tokens, now)
            reset_seconds = (
                int((needed - tokens) / refill_rate) + 1 if not allowed else 0
            )
            remaining = int(tokens)
        return RateLimitDecision(allowed, remaining, reset_seconds)

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._buckets.pop(key, None)
