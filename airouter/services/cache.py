"""Response cache with Redis backend

Identical requests from the same organization (same tier, prompt and generation
parameters) can be answered from cache without a model call. Only requests without
memory retrieval are cached, since memory content changes independently of the prompt.
"""

import hashlib
import json
from typing import Any

from redis.asyncio import Redis

from airouter.config import settings
from airouter.core.models.routing import AIResponse
from airouter.storage.redis_client import get_redis_client
from airouter.utils.logger import get_logger

logger = get_logger(__name__)


class ResponseCache:
    """Cached AIResponse payloads keyed by a hash of the request"""

    def __init__(self, client: Redis | None = None, ttl: int | None = None):
        """Initialize the response cache

        Args:
            client: Redis client (default: from the shared pool, created lazily)
            ttl: Time to live in seconds (default: settings.cache_ttl)
        """
        self._client = client
        self.ttl = ttl or settings.cache_ttl

    def _get_client(self) -> Redis:
        if self._client is None:
            self._client = get_redis_client()
        return self._client

    @staticmethod
    def response_key(
        org_id: str,
        tier_key: str,
        prompt: str,
        max_tokens: int | None,
        temperature: float | None,
    ) -> str:
        """Deterministic cache key for a routed request

        Returns:
            Key of the form "response:<org_id>:<sha256>"
        """
        params = json.dumps(
            {"tier": tier_key, "max_tokens": max_tokens, "temperature": temperature},
            sort_keys=True,
        )
        digest = hashlib.sha256(f"{prompt}:{params}".encode()).hexdigest()
        return f"response:{org_id}:{digest}"

    async def get_response(self, key: str) -> AIResponse | None:
        """Cached response, or None on a miss or when Redis is unreachable"""
        try:
            value = await self._get_client().get(key)
        except Exception as e:
            # Caching is optional; a broken cache must not fail the request
            logger.warning(f"Cache get failed for {key}: {e}")
            return None

        if value is None:
            return None

        try:
            return AIResponse.model_validate_json(value)
        except ValueError as e:
            logger.warning(f"Discarding unreadable cache entry {key}: {e}")
            return None

    async def set_response(self, key: str, response: AIResponse, ttl: int | None = None) -> bool:
        """Store a response; returns False when Redis is unreachable"""
        try:
            await self._get_client().setex(key, ttl or self.ttl, response.model_dump_json())
            return True
        except Exception as e:
            logger.warning(f"Cache set failed for {key}: {e}")
            return False

    async def invalidate_org(self, org_id: str) -> int:
        """Drop every cached response of an organization

        Returns:
            Number of keys deleted
        """
        client = self._get_client()
        keys: list[Any] = [key async for key in client.scan_iter(match=f"response:{org_id}:*")]
        if keys:
            return await client.delete(*keys)
        return 0


# Singleton instance
_response_cache: ResponseCache | None = None


def get_response_cache() -> ResponseCache | None:
    """Shared response cache, or None when caching is disabled"""
    global _response_cache

    if not settings.cache_enabled:
        return None

    if _response_cache is None:
        _response_cache = ResponseCache()

    return _response_cache
