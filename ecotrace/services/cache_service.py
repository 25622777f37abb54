"""
Redis Cache Service
Stores snapshots of slow-to-build reference data (the geographic index) so a
restarted process can skip the bulk download. Every operation degrades to a
no-op when Redis is disabled or unreachable.
"""

import json
import logging
from typing import Any, Optional

from redis import Redis
from redis.exceptions import RedisError

from ecotrace.core.config import settings

logger = logging.getLogger(__name__)


class RedisCacheService:
    """Redis-backed JSON cache with TTL"""

    def __init__(self, redis_url: str = None, enabled: bool = None, client: Redis = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self.enabled = settings.REDIS_ENABLED if enabled is None else enabled
        self.redis_client = client
        self.is_connected = client is not None
        self._connection_failed = False

    def connect(self) -> bool:
        """Initialize Redis connection"""
        if not self.enabled:
            return False
        if self.is_connected:
            return True
        if self._connection_failed:
            return False

        try:
            self.redis_client = Redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30,
            )
            self.redis_client.ping()
            self.is_connected = True
            logger.info("Redis connection established successfully")
        except RedisError as e:
            logger.error(f"Redis connection failed: {str(e)}")
            self.is_connected = False
            self._connection_failed = True
            self.redis_client = None

        return self.is_connected

    def set_with_ttl(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """Set cache value with TTL"""
        if not self.connect():
            logger.debug("Redis not connected, skipping cache set")
            return False

        try:
            ttl = ttl_seconds or settings.REDIS_EXPIRE_SECONDS
            payload = json.dumps(value, default=str, ensure_ascii=False)
            result = self.redis_client.setex(key, ttl, payload)
            logger.debug(f"Cache set: {key} (TTL: {ttl}s)")
            return bool(result)
        except (RedisError, TypeError, ValueError) as e:
            logger.error(f"Redis set error: {str(e)}")
            return False

    def get(self, key: str) -> Optional[Any]:
        """Get cache value"""
        if not self.connect():
            logger.debug("Redis not connected, skipping cache get")
            return None

        try:
            value = self.redis_client.get(key)
            if value is None:
                return None
            return json.loads(value)
        except json.JSONDecodeError as e:
            logger.error(f"Cached value for {key} is not valid JSON: {str(e)}")
            return None
        except RedisError as e:
            logger.error(f"Redis get error: {str(e)}")
            return None

    def delete(self, key: str) -> bool:
        if not self.connect():
            return False

        try:
            return bool(self.redis_client.delete(key))
        except RedisError as e:
            logger.error(f"Redis delete error: {str(e)}")
            return False
