"""
config/redis_client.py
Async Redis client shared by every instance behind the load balancer:
the public answer feed cache, the JWT deny-list, unauthenticated rate
limiting, and pub/sub ticks that wake live notification feeds.
"""

import json
from typing import Any, Optional
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from config.settings import settings


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None

RECENT_FEED_KEY = "questions:recent:{language}:{limit}"
RECENT_FEED_PATTERN = "questions:recent:*"


async def init_redis() -> None:
    """Open the connection pool and verify it with a PING."""
    global redis_client
    client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    try:
        await client.ping()
    except RedisError:
        await client.aclose()
        raise
    redis_client = client


async def close_redis() -> None:
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


def notification_channel(user_id: str) -> str:
    return f"notifications:{user_id}"


# ── Cache Helpers ─────────────────────────────────────────────
class RedisCache:
    """Typed helpers over the raw client. Callers decide how to handle RedisError."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def get_json(self, key: str) -> Optional[Any]:
        value = await self.client.get(key)
        return json.loads(value) if value is not None else None

    async def set_json(self, key: str, value: Any, ttl: int = settings.REDIS_CACHE_TTL) -> None:
        await self.client.setex(key, ttl, json.dumps(value, default=str))

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching pattern. SCAN, so large keyspaces don't block the server."""
        keys = [key async for key in self.client.scan_iter(match=pattern, count=500)]
        if keys:
            return await self.client.delete(*keys)
        return 0

    # ── Public Answer Feed ────────────────────────────────────
    async def get_recent_feed(self, language: str, limit: int) -> Optional[list]:
        return await self.get_json(RECENT_FEED_KEY.format(language=language, limit=limit))

    async def set_recent_feed(self, language: str, limit: int, items: list) -> None:
        await self.set_json(RECENT_FEED_KEY.format(language=language, limit=limit), items)

    async def invalidate_recent_feeds(self) -> int:
        """Drop every cached (language, limit) variant of the feed."""
        return await self.delete_pattern(RECENT_FEED_PATTERN)

    # ── JWT Deny List ─────────────────────────────────────────
    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        """Add JWT ID to deny list until it expires."""
        await self.client.setex(f"jwt_revoked:{jti}", ttl_seconds, "1")

    async def is_token_revoked(self, jti: str) -> bool:
        return await self.client.exists(f"jwt_revoked:{jti}") == 1

    # ── Live Notification Feed ────────────────────────────────
    async def publish_feed_tick(self, user_id: str) -> int:
        """Wake any open notification feeds for this recipient. Returns subscriber count."""
        return await self.client.publish(notification_channel(user_id), "tick")

    # ── Rate Limiting ─────────────────────────────────────────
    async def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """
        Fixed window counter keyed per client. The window starts at the first
        hit and later hits do not extend it.
        Returns True if request is allowed, False if rate limited.
        """
        current_count = await self.client.incr(key)
        if current_count == 1:
            await self.client.expire(key, window_seconds)
        return current_count <= limit
