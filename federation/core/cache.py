"""
Redis caching for client records.

Client lookups happen on every authorize and token request, so records are
cached read-through with a short TTL. Redis errors never fail a request: they
are logged and the caller falls back to the database.
"""

import json
import logging
from typing import Optional

import redis

from federation.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

CLIENT_CACHE_PREFIX = "cache:oauth_client"

_redis_client = None


def get_redis(settings: Optional[Settings] = None) -> redis.Redis:
    """Get the shared Redis client, creating its connection pool on first use."""
    global _redis_client
    if _redis_client is None:
        settings = settings or get_settings()
        _redis_client = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=1.0,
            socket_connect_timeout=1.0,
            retry_on_timeout=False,
        )
    return _redis_client


def close_redis():
    """Close Redis connections."""
    global _redis_client
    if _redis_client is not None:
        _redis_client.close()
        _redis_client = None
        logger.info("Redis connections closed")


class ClientCache:
    """Redis cache for serialized client records."""

    def __init__(self, client: Optional[redis.Redis] = None, ttl: int = None, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self._client = client
        self._settings = settings
        self.ttl = ttl or settings.client_cache_ttl_seconds

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = get_redis(self._settings)
        return self._client

    @staticmethod
    def _make_key(client_id: str) -> str:
        return f"{CLIENT_CACHE_PREFIX}:{client_id}"

    def get(self, client_id: str) -> Optional[dict]:
        try:
            cached = self.client.get(self._make_key(client_id))
        except redis.RedisError as e:
            logger.error(f"Error getting cached client {client_id}: {e}")
            return None
        if not cached:
            logger.debug(f"Cache MISS: client {client_id}")
            return None
        logger.debug(f"Cache HIT: client {client_id}")
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"Discarding undecodable cache entry for client {client_id}")
            return None

    def set(self, client_id: str, record: dict) -> bool:
        try:
            self.client.setex(self._make_key(client_id), self.ttl, json.dumps(record))
            return True
        except redis.RedisError as e:
            logger.error(f"Error caching client {client_id}: {e}")
            return False

    def invalidate(self, client_id: str) -> bool:
        try:
            self.client.delete(self._make_key(client_id))
            logger.debug(f"Invalidated cached client {client_id}")
            return True
        except redis.RedisError as e:
            logger.error(f"Error invalidating cached client {client_id}: {e}")
            return False


class NullClientCache:
    """Cache used when client caching is disabled."""

    def get(self, client_id: str) -> Optional[dict]:
        return None

    def set(self, client_id: str, record: dict) -> bool:
        return False

    def invalidate(self, client_id: str) -> bool:
        return False


def build_client_cache(settings: Optional[Settings] = None):
    settings = settings or get_settings()
    if not settings.client_cache_enabled:
        return NullClientCache()
    return ClientCache(settings=settings)
