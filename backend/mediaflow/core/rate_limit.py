from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable

from fastapi import HTTPException, status

from mediaflow.core.redis_client import get_redis

logger = logging.getLogger(__name__)

RATE_LIMIT_DETAIL = "Too many uploads. Please try again later."


@dataclass(slots=True)
class _Window:
    count: int
    reset_at: float


def _too_many(retry_after_seconds: float) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail=RATE_LIMIT_DETAIL,
        headers={"Retry-After": str(max(1, int(math.ceil(retry_after_seconds))))},
    )


class UploadRateLimiter:
    """
    Fixed-window upload counter keyed by requester identifier (usually the client IP).

    The first accepted attempt opens a window of `window_seconds`; up to `limit` attempts
    are accepted inside it. Expired windows are replaced lazily on the next check and
    never swept. When REDIS_URL is configured the counter lives in Redis
    (INCR + EXPIRE per identifier) so several intake instances share one budget; on
    Redis errors the process-local map is used instead.
    """

    def __init__(
        self,
        *,
        limit: int,
        window_seconds: int,
        key: str = "upload",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.limit = int(limit)
        self.window_seconds = max(1, int(window_seconds))
        self.key = key
        self.clock = clock
        self.windows: dict[str, _Window] = {}

    def _check_local(self, identifier: str, now: float) -> None:
        window = self.windows.get(identifier)
        if window is None or now > window.reset_at:
            self.windows[identifier] = _Window(count=1, reset_at=now + self.window_seconds)
            return
        if window.count >= self.limit:
            raise _too_many(window.reset_at - now)
        window.count += 1

    async def _check_redis(self, identifier: str) -> bool:
        client = get_redis()
        if client is None:
            return False
        redis_key = f"rate_limit:{self.key}:{identifier}"
        try:
            # INCR and EXPIRE travel in one MULTI block; NX keeps the first window's deadline.
            async with client.pipeline(transaction=True) as pipe:
                pipe.incr(redis_key)
                pipe.expire(redis_key, self.window_seconds, nx=True)
                raw_count, _ = await pipe.execute()
            count = int(raw_count)
            if count > self.limit:
                ttl = await client.ttl(redis_key)
                raise _too_many(ttl if ttl and ttl > 0 else self.window_seconds)
            return True
        except HTTPException:
            raise
        except Exception as exc:
            logger.warning("redis_rate_limit_failed", extra={"error": str(exc)})
            return False

    async def check(self, identifier: str) -> None:
        """Consume one attempt for `identifier` or raise a 429 HTTPException."""
        ident = (identifier or "unknown").strip() or "unknown"
        if self.limit <= 0:
            raise _too_many(self.window_seconds)
        if await self._check_redis(ident):
            return
        self._check_local(ident, self.clock())

    def reset(self) -> None:
        """Helper for tests to clear limiter state."""
        self.windows.clear()
