"""
Redis-backed JSON cache shared by the weather provider and the stats layer.

Key families:
    weather:<lat>:<lon>:<yyyymmddhh>      one WeatherKit snapshot per grid cell and hour
    ruck_stats:<scope>:...               aggregates, dropped whenever a session is finalized

Every helper degrades to a no-op when no Redis URL is configured or the
server stops answering, so callers never have to branch on cache health.
"""
import os
import json
import redis
import logging
from datetime import date, datetime
from typing import Any, Optional

logger = logging.getLogger(__name__)

SOCKET_TIMEOUT_S = 2


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


class RedisCacheService:
    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or os.environ.get('REDIS_URL') or os.environ.get('REDIS_TLS_URL')
        self.redis_client = self._connect() if self.redis_url else None
        if not self.redis_url:
            logger.info("[CACHE] No REDIS_URL configured, caching disabled")

    def _connect(self):
        options = {'decode_responses': True, 'socket_timeout': SOCKET_TIMEOUT_S}
        if self.redis_url.startswith('rediss://'):
            options['ssl_cert_reqs'] = None
        try:
            client = redis.from_url(self.redis_url, **options)
            client.ping()
        except redis.RedisError as e:
            logger.error(f"[CACHE] Could not reach Redis: {e}")
            return None
        logger.info("[CACHE] Connected to Redis")
        return client

    def is_connected(self) -> bool:
        if self.redis_client is None:
            return False
        try:
            return bool(self.redis_client.ping())
        except redis.RedisError:
            return False

    def set(self, key: str, value: Any, expire_seconds: int = 3600) -> bool:
        if not self.is_connected():
            return False
        try:
            payload = json.dumps(value, default=_json_default)
            stored = self.redis_client.setex(key, int(expire_seconds), payload)
        except (redis.RedisError, TypeError) as e:
            logger.error(f"[CACHE] Failed to store '{key}': {e}")
            return False
        logger.debug(f"[CACHE] Stored '{key}' for {expire_seconds}s")
        return bool(stored)

    def get(self, key: str) -> Optional[Any]:
        if not self.is_connected():
            return None
        try:
            payload = self.redis_client.get(key)
        except redis.RedisError as e:
            logger.error(f"[CACHE] Failed to read '{key}': {e}")
            return None
        if payload is None:
            return None
        try:
            return json.loads(payload)
        except json.JSONDecodeError:
            logger.warning(f"[CACHE] Dropping non-JSON entry at '{key}'")
            return None

    def delete_pattern(self, pattern: str) -> int:
        """Remove every key matching a glob such as 'ruck_stats:*'. Returns the number removed."""
        if not self.is_connected():
            return 0
        removed = 0
        try:
            batch = []
            for key in self.redis_client.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) == 500:
                    removed += self.redis_client.delete(*batch)
                    batch = []
            if batch:
                removed += self.redis_client.delete(*batch)
        except redis.RedisError as e:
            logger.error(f"[CACHE] Failed to invalidate '{pattern}': {e}")
            return removed
        if removed:
            logger.info(f"[CACHE] Invalidated {removed} keys matching '{pattern}'")
        return removed


_cache_instance = None


def get_cache_service() -> RedisCacheService:
    global _cache_instance
    if _cache_instance is None:
        _cache_instance = RedisCacheService()
    return _cache_instance


def cache_set(key: str, value: Any, expire_seconds: int = 3600) -> bool:
    return get_cache_service().set(key, value, expire_seconds)


def cache_get(key: str) -> Optional[Any]:
    return get_cache_service().get(key)


def cache_delete_pattern(pattern: str) -> int:
    return get_cache_service().delete_pattern(pattern)
