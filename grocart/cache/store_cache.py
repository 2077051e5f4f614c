"""Redis-backed cache of store discovery results."""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis

from grocart import metrics
from grocart.config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "stores"


def _radius_key(radius: float) -> str:
    return f"{float(radius):g}"


class StoreCache:
    """
    get/set-with-TTL cache keyed by (chain, ZIP, radius).

    Redis errors are logged and treated as misses; discovery then falls
    through to the locator or the database.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        redis_client: Optional[redis.Redis] = None,
        ttl_seconds: Optional[int] = None,
    ):
        """
        Initialize store cache.

        Args:
            redis_url: Redis connection URL (defaults to settings)
            redis_client: Pre-built client (tests, shared connections)
            ttl_seconds: Entry lifetime (defaults to settings.store_cache_ttl_days)
        """
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = redis_client
        self._owns_redis = redis_client is None
        self.ttl_seconds = ttl_seconds or settings.store_cache_ttl_days * 86400
        self.hits = 0
        self.misses = 0
        self.errors = 0

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis and self._owns_redis:
            await self._redis.aclose()
            self._redis = None

    @staticmethod
    def make_key(chain: str, zip_code: str, radius: float) -> str:
        return f"{KEY_PREFIX}:{chain.lower()}:{zip_code}:{_radius_key(radius)}"

    async def get(self, chain: str, zip_code: str, radius: float) -> Optional[list[dict[str, Any]]]:
        """Cached store dicts, or None on miss/error."""
        key = self.make_key(chain, zip_code, radius)
        try:
            client = await self._get_redis()
            raw = await client.get(key)
        except Exception as e:
            self.errors += 1
            metrics.store_cache_requests_total.labels(result="error").inc()
            logger.warning(f"Store cache read failed for {key}: {e}")
            return None

        if raw is None:
            self.misses += 1
            metrics.store_cache_requests_total.labels(result="miss").inc()
            return None

        try:
            stores = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Discarding corrupt store cache entry {key}")
            self.misses += 1
            metrics.store_cache_requests_total.labels(result="miss").inc()
            return None

        self.hits += 1
        metrics.store_cache_requests_total.labels(result="hit").inc()
        return stores

    async def set(
        self,
        chain: str,
        zip_code: str,
        radius: float,
        stores: list[dict[str, Any]],
    ) -> bool:
        key = self.make_key(chain, zip_code, radius)
        try:
            client = await self._get_redis()
            await client.set(key, json.dumps(stores), ex=self.ttl_seconds)
            return True
        except Exception as e:
            self.errors += 1
            logger.warning(f"Store cache write failed for {key}: {e}")
            return False

    async def clear(self, chain: str, zip_code: str, radius: float) -> bool:
        """Drop one cache entry (e.g. after a store closes or moves)."""
        key = self.make_key(chain, zip_code, radius)
        try:
            client = await self._get_redis()
            deleted = await client.delete(key)
        except Exception as e:
            logger.error(f"Error clearing store cache {key}: {e}")
            return False
        logger.info(f"Cleared store cache for {chain} near {zip_code} ({radius} mi)")
        return bool(deleted)

    def get_stats(self) -> dict[str, Any]:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "hit_rate": round(self.hits / total, 3) if total else 0.0,
        }
