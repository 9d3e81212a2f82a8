"""
Centralized Cache
=================
Single aiocache-backed store shared by the dataset cache and the chunk
reassembler. Redis in production, in-process memory for development and tests.

Usage:
    from core_infrastructure.centralized_cache import get_cache, initialize_cache

    # Initialize once at startup
    cache = initialize_cache()

    # Use in any module
    cache = get_cache()
    await cache.set("key", value, ttl=3600)
    result = await cache.get("key")

Backend failures never propagate: reads degrade to misses, writes to False,
and after repeated failures a circuit breaker short-circuits calls for a while.
"""

import os
import time
import structlog
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from aiocache import Cache
from aiocache.serializers import JsonSerializer

from core_infrastructure.config_manager import get_cache_config

logger = structlog.get_logger(__name__)

# Global cache instance
_cache_instance: Optional["CentralizedCache"] = None

CIRCUIT_BREAKER_THRESHOLD = 5  # Open circuit after 5 failures
CIRCUIT_BREAKER_TIMEOUT = 60  # Reset after 60 seconds


def _parse_redis_url(redis_url: str) -> Dict[str, Any]:
    """Parse a Redis URL into aiocache connection kwargs."""
    parsed = urlparse(redis_url)

    return {
        'endpoint': parsed.hostname or 'localhost',
        'port': parsed.port or 6379,
        'password': parsed.password or os.environ.get('REDIS_PASSWORD'),
        'db': int(parsed.path.lstrip('/')) if parsed.path and parsed.path != '/' else 0,
    }


class CentralizedCache:
    """
    aiocache wrapper with metrics and an in-process circuit breaker.

    Features:
    - Redis or memory backend
    - JSON serialization
    - Configurable TTL
    - Metrics tracking
    """

    def __init__(self, backend: Optional[str] = None, redis_url: Optional[str] = None,
                 namespace: Optional[str] = None, default_ttl: Optional[int] = None):
        config = get_cache_config()
        self.backend = (backend or config.backend).lower()
        self.namespace = namespace or config.namespace
        self.default_ttl = default_ttl or config.ttl_seconds
        self.redis_url = None

        if self.backend == "memory":
            self.cache = Cache(Cache.MEMORY, serializer=JsonSerializer(), namespace=self.namespace)
        else:
            self.redis_url = (redis_url or config.redis_url or os.environ.get('REDIS_URL')
                              or 'redis://localhost:6379')
            cache_config = {
                **_parse_redis_url(self.redis_url),
                'serializer': JsonSerializer(),
                'namespace': self.namespace,
                'timeout': 5,
                'pool_max_size': int(os.environ.get('REDIS_POOL_MAX', '50')),
            }
            if not cache_config['password']:
                cache_config.pop('password')
            self.cache = Cache(Cache.REDIS, **cache_config)

        self._failure_count = 0
        self._opened_at: Optional[float] = None

        # Metrics
        self.metrics = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'deletes': 0,
            'errors': 0
        }

        logger.info("centralized_cache_initialized", backend=self.backend,
                    namespace=self.namespace, default_ttl=self.default_ttl)

    @property
    def circuit_open(self) -> bool:
        if self._opened_at is None:
            return False
        if time.monotonic() - self._opened_at > CIRCUIT_BREAKER_TIMEOUT:
            logger.info("circuit_breaker_timeout_reset")
            self._opened_at = None
            self._failure_count = 0
            return False
        return True

    def _record_failure(self, operation: str, key: str, error: Exception) -> None:
        self.metrics['errors'] += 1
        self._failure_count += 1
        if self._failure_count >= CIRCUIT_BREAKER_THRESHOLD and self._opened_at is None:
            self._opened_at = time.monotonic()
            logger.error("circuit_breaker_opened", failures=self._failure_count)
        logger.error("cache_operation_failed", operation=operation, key=key,
                     failures=self._failure_count, error=str(error))

    def _record_success(self) -> None:
        self._failure_count = 0

    async def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache with circuit breaker protection.

        Returns:
            Cached value or None if not found (or the backend is unavailable)
        """
        if self.circuit_open:
            logger.warning("circuit_breaker_open_rejecting_request", key=key)
            return None

        try:
            value = await self.cache.get(key)
        except Exception as e:
            self._record_failure("get", key, e)
            return None

        self._record_success()
        if value is not None:
            self.metrics['hits'] += 1
            logger.debug("cache_hit", key=key)
        else:
            self.metrics['misses'] += 1
            logger.debug("cache_miss", key=key)
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """
        Set value in cache with circuit breaker protection.

        Returns:
            True if successful, False otherwise
        """
        if self.circuit_open:
            logger.warning("circuit_breaker_open_rejecting_set", key=key)
            return False

        try:
            await self.cache.set(key, value, ttl=ttl or self.default_ttl)
        except Exception as e:
            self._record_failure("set", key, e)
            return False

        self._record_success()
        self.metrics['sets'] += 1
        logger.debug("cache_set", key=key, ttl=ttl or self.default_ttl)
        return True

    async def delete(self, key: str) -> bool:
        """
        Delete value from cache.

        Returns:
            True if the backend accepted the delete (missing keys included)
        """
        try:
            await self.cache.delete(key)
        except Exception as e:
            self._record_failure("delete", key, e)
            return False

        self.metrics['deletes'] += 1
        logger.debug("cache_delete", key=key)
        return True

    async def exists(self, key: str) -> bool:
        try:
            return await self.cache.exists(key)
        except Exception as e:
            logger.error("cache_exists_error", key=key, error=str(e))
            return False

    async def clear(self) -> bool:
        """Clear every entry in this cache's namespace."""
        try:
            await self.cache.clear(namespace=self.namespace)
            logger.info("cache_cleared", namespace=self.namespace)
            return True
        except Exception as e:
            logger.error("cache_clear_error", namespace=self.namespace, error=str(e))
            return False

    def get_metrics(self) -> dict:
        """Get cache metrics."""
        total_requests = self.metrics['hits'] + self.metrics['misses']
        hit_rate = (self.metrics['hits'] / total_requests * 100) if total_requests > 0 else 0

        return {
            **self.metrics,
            'total_requests': total_requests,
            'hit_rate_percent': round(hit_rate, 2),
            'circuit_breaker_open': self.circuit_open,
        }

    async def close(self):
        """Close cache connections."""
        try:
            await self.cache.close()
            logger.info("cache_closed")
        except Exception as e:
            logger.error("cache_close_error", error=str(e))


def initialize_cache(backend: Optional[str] = None, redis_url: Optional[str] = None,
                     default_ttl: Optional[int] = None) -> CentralizedCache:
    """
    Initialize the global cache instance.

    Args:
        backend: "redis" or "memory" (defaults to CACHE_BACKEND)
        redis_url: Redis connection URL (defaults to CACHE_REDIS_URL / REDIS_URL)
        default_ttl: Default time-to-live in seconds
    """
    global _cache_instance
    _cache_instance = CentralizedCache(backend=backend, redis_url=redis_url, default_ttl=default_ttl)
    return _cache_instance


def get_cache() -> CentralizedCache:
    """
    Get global cache instance.

    Raises:
        RuntimeError: If cache not initialized
    """
    if _cache_instance is None:
        raise RuntimeError("Cache not initialized. Call initialize_cache() first.")
    return _cache_instance


def safe_get_cache() -> Optional[CentralizedCache]:
    """Get the cache instance or None if not initialized."""
    return _cache_instance


async def health_check() -> dict:
    """Round-trip a probe value through the cache."""
    cache = safe_get_cache()
    if cache is None:
        return {
            'status': 'unavailable',
            'initialized': False,
            'error': 'Cache not initialized'
        }

    test_key = 'health_check_test'
    await cache.set(test_key, 'ok', ttl=10)
    result = await cache.get(test_key)
    await cache.delete(test_key)

    return {
        'status': 'healthy' if result == 'ok' else 'degraded',
        'initialized': True,
        'backend': cache.backend,
        'metrics': cache.get_metrics(),
    }
