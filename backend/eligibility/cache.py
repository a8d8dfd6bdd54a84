"""
Offer Page Cache — short-lived Redis cache for first-page offer listings.

Additive only: the relational store stays the source of truth, so a missing
or failing Redis degrades to "always miss" and never to an error. Entries
are not invalidated on writes; the TTL bounds how stale a page can be.
"""

import json

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from core.config import Settings
from eligibility.filters import OfferFilters

logger = structlog.get_logger()

KEY_PREFIX = "offers:v3"


def build_redis(settings: Settings) -> aioredis.Redis | None:
    """Create an async Redis client, or None when Redis is not configured."""
    if not settings.redis_url:
        return None
    return aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )


def _part(value: object) -> str:
    return "" if value is None else str(value)


def offer_page_cache_key(user_id: str, take: int, filters: OfferFilters) -> str:
    return (
        f"{KEY_PREFIX}:user:{user_id}:take:{take}"
        f":search:{_part(filters.search)}:cat:{_part(filters.category)}"
        f":min:{_part(filters.min_bps)}:max:{_part(filters.max_bps)}"
    )


class OfferPageCache:
    def __init__(self, redis: aioredis.Redis | None, ttl_seconds: int = 20):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    @property
    def enabled(self) -> bool:
        return self.redis is not None

    async def get(self, key: str) -> dict | None:
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(key)
        except RedisError as exc:
            logger.warning("offers.cache_get_failed", key=key, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("offers.cache_entry_corrupt", key=key)
            return None

    async def set(self, key: str, page: dict) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.setex(key, self.ttl_seconds, json.dumps(page))
        except RedisError as exc:
            logger.warning("offers.cache_set_failed", key=key, error=str(exc))
