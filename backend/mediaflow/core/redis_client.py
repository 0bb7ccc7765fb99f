from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, cast

from mediaflow.core.config import settings

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

_PING_TIMEOUT_SECONDS = 0.5
_shared: "Redis | None" = None


def redis_configured() -> bool:
    return bool((settings.redis_url or "").strip())


def get_redis() -> "Redis | None":
    """Shared client for REDIS_URL, or None when Redis is not configured."""
    global _shared
    if not redis_configured():
        return None
    if _shared is None:
        from redis.asyncio import Redis

        _shared = Redis.from_url(settings.redis_url.strip(), encoding="utf-8", decode_responses=True)
    return _shared


async def redis_ping() -> bool | None:
    """True/False for a configured Redis, None when there is nothing to check."""
    client = get_redis()
    if client is None:
        return None
    try:
        return bool(await asyncio.wait_for(cast(Awaitable[bool], client.ping()), timeout=_PING_TIMEOUT_SECONDS))
    except Exception as exc:
        logger.warning("redis_ping_failed", extra={"error": str(exc)})
        return False


async def close_redis() -> None:
    global _shared
    client, _shared = _shared, None
    if client is not None:
        try:
            await client.aclose()
        except Exception:
            logger.exception("redis_close_failed")
