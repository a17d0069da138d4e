# services/rate_limiter.py
# ============================================================================
# DRIVER TOP-UP BOT — PER-IDENTITY RATE LIMITER
# ============================================================================
# Fixed window counter keyed by identity:
#   - first request creates {count=1, window_start=now}
#   - now - window_start > window  -> reset to count=1 and allow
#   - count >= max_requests        -> deny, count untouched
#   - otherwise                    -> increment and allow
# Two adjacent windows can together admit 2 * max_requests; that is the
# accepted behaviour of this limiter.
# ============================================================================

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import structlog

from schemas.errors import RateLimited

logger = structlog.get_logger().bind(component="rate_limiter")

Clock = Callable[[], float]


@dataclass
class RateLimitRecord:
    count: int
    window_start: float


class RateLimiter:
    """
    Per-identity request counter.

    Every read-modify-write happens under one asyncio.Lock, so concurrent
    requests from the same identity see a consistent count.
    """

    def __init__(
        self,
        window_seconds: float = 300,
        max_requests: int = 3,
        clock: Optional[Clock] = None,
    ):
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._clock: Clock = clock or time.monotonic
        self._records: Dict[str, RateLimitRecord] = {}
        self._lock = asyncio.Lock()

    async def check_and_record(self, identity: str) -> bool:
        """Return True if the request is allowed (and counted), False if denied."""
        async with self._lock:
            now = self._clock()
            record = self._records.get(identity)

            if record is None:
                self._records[identity] = RateLimitRecord(count=1, window_start=now)
                return True

            if now - record.window_start > self.window_seconds:
                record.count = 1
                record.window_start = now
                return True

            if record.count >= self.max_requests:
                logger.info(
                    "rate_limit_denied",
                    identity=identity,
                    count=record.count,
                    window_age=round(now - record.window_start, 1),
                )
                return False

            record.count += 1
            return True

    async def enforce(self, identity: str) -> None:
        """check_and_record() that raises RateLimited on denial."""
        if not await self.check_and_record(identity):
            raise RateLimited(f"rate limit exceeded for {identity}")

    async def sweep_expired(self) -> int:
        """Drop records whose window has elapsed. Returns how many were evicted."""
        async with self._lock:
            now = self._clock()
            expired = [
                identity
                for identity, record in self._records.items()
                if now - record.window_start > self.window_seconds
            ]
            for identity in expired:
                del self._records[identity]

        if expired:
            logger.debug("rate_limit_swept", evicted=len(expired), remaining=len(self._records))
        return len(expired)

    def snapshot(self, identity: str) -> Optional[RateLimitRecord]:
        record = self._records.get(identity)
        if record is None:
            return None
        return RateLimitRecord(count=record.count, window_start=record.window_start)

    def __len__(self) -> int:
        return len(self._records)


__all__ = ["RateLimitRecord", "RateLimiter"]
