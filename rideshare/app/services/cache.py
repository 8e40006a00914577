"""
Caching service for geocoding and routing results.

Values are JSON-encoded into Redis with a TTL. The cache is best-effort:
any Redis failure is logged and treated as a miss, so callers behave the
same with the cache disabled.
"""

import json
import hashlib
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


def make_cache_key(namespace: str, *parts: Any) -> str:
    """Deterministic key from the request parameters."""
    raw = json.dumps(parts, sort_keys=True, default=str)
    digest = hashlib.md5(raw.encode("utf-8")).hexdigest()
    return f"geo:{namespace}:{digest}"


class CacheService:

    def __init__(self, client, ttl_seconds: int = 86400, enabled: bool = True):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled and client is not None

    async def get(self, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        try:
            raw = await self.client.get(key)
        except Exception as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            return None

        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    async def set(self, key: str, data: Any, ttl_seconds: Optional[int] = None):
        if not self.enabled:
            return
        try:
            await self.client.set(key, json.dumps(data), ex=ttl_seconds or self.ttl_seconds)
        except Exception as exc:
            logger.warning("Cache write failed for %s: %s", key, exc)

    async def remember(self, key: str, producer, ttl_seconds: Optional[int] = None) -> Any:
        """Return the cached value for key, or await producer() and cache it."""
        cached = await self.get(key)
        if cached is not None:
            return cached

        value = await producer()
        await self.set(key, value, ttl_seconds)
        return value
