import json
import logging
from typing import Optional, Dict, Any
import redis
from redis.exceptions import RedisError, ConnectionError as RedisConnectionError
from app.core.config import settings

logger = logging.getLogger(__name__)


class RedisCache:
    """
    Redis-backed cache for rate-limit counters, advisory subscription status
    snapshots and the subscription change channel.

    Every operation degrades to a no-op (or None) when Redis is unreachable;
    nothing stored here is authoritative.
    """

    def __init__(self, redis_url: str = None, password: str = None):
        """Initialize Redis cache (lazy connection)"""
        self._redis_url = redis_url or settings.redis_url
        self._password = password if password is not None else settings.redis_password
        self._client: Optional[redis.Redis] = None
        self._connected = False

    def _connect(self):
        """Connect to Redis server"""
        client_kwargs: Dict[str, Any] = {
            'decode_responses': False,
            'socket_connect_timeout': 2,
            'socket_timeout': 2,
            'retry_on_timeout': False,
            'health_check_interval': 0,
        }
        # settings.redis_password takes precedence over a password in the URL
        if self._password:
            client_kwargs['password'] = self._password

        try:
            self._client = redis.from_url(self._redis_url, **client_kwargs)
            self._client.ping()
            self._connected = True
            logger.info("RedisCache: Connected to Redis")
        except RedisConnectionError as e:
            logger.warning(f"RedisCache: Failed to connect to Redis - {e}")
            self._connected = False
            self._client = None
        except RedisError as e:
            error_msg = str(e)
            if 'auth' in error_msg.lower() or 'password' in error_msg.lower():
                logger.error(f"RedisCache: Authentication failed - {error_msg}. Check REDIS_PASSWORD or the password in REDIS_URL.")
            else:
                logger.error(f"RedisCache: Redis error during connection - {error_msg}")
            self._connected = False
            self._client = None

    def _ensure_connected(self) -> bool:
        """Ensure Redis connection is established, returns False when unavailable"""
        if not self._connected or self._client is None:
            self._connect()
        return self._client is not None

    def _reset(self, action: str, key: str, error: Exception):
        logger.error(f"RedisCache: Error during {action} for {key}: {error}")
        self._connected = False
        self._client = None

    def get(self, key: str) -> Optional[Dict]:
        """Get cached JSON value if present"""
        if not self._ensure_connected():
            logger.warning(f"RedisCache: Cannot get key {key} - Redis not available")
            return None

        try:
            data = self._client.get(key)
            if data is None:
                logger.debug(f"Cache miss: {key}")
                return None

            try:
                decoded = json.loads(data.decode('utf-8'))
                logger.debug(f"Cache hit: {key}")
                return decoded
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning(f"RedisCache: Failed to decode value for key {key}: {e}")
                self._client.delete(key)
                return None
        except RedisError as e:
            self._reset("get", key, e)
            return None

    def set(self, key: str, value: Dict, ttl_minutes: int):
        """Set cache value as JSON with TTL in minutes"""
        if not self._ensure_connected():
            logger.warning(f"RedisCache: Cannot set key {key} - Redis not available")
            return

        try:
            serialized = json.dumps(value, default=str).encode('utf-8')
            self._client.setex(key, ttl_minutes * 60, serialized)
            logger.debug(f"Cache set: {key}, TTL: {ttl_minutes} minutes")
        except RedisError as e:
            self._reset("set", key, e)

    def delete(self, key: str):
        """Delete cache entry"""
        if not self._ensure_connected():
            logger.warning(f"RedisCache: Cannot delete key {key} - Redis not available")
            return

        try:
            self._client.delete(key)
            logger.debug(f"Cache deleted: {key}")
        except RedisError as e:
            self._reset("delete", key, e)

    def incr(self, key: str, amount: int = 1, ttl_seconds: int = None) -> Optional[int]:
        """
        Atomically increment a counter.

        Args:
            key: The key to increment
            amount: Amount to increment by (default 1)
            ttl_seconds: Expiry applied when the counter is first created

        Returns:
            The new value after increment, or None if Redis unavailable
        """
        if not self._ensure_connected():
            logger.warning(f"RedisCache: Cannot increment key {key} - Redis not available")
            return None

        try:
            new_value = self._client.incrby(key, amount)
            if ttl_seconds and new_value == amount:
                self._client.expire(key, ttl_seconds)
            return new_value
        except RedisError as e:
            self._reset("incr", key, e)
            return None

    def publish(self, channel: str, message: Dict) -> int:
        """Publish a JSON message, returns the number of receivers (0 if unavailable)"""
        if not self._ensure_connected():
            logger.warning(f"RedisCache: Cannot publish to {channel} - Redis not available")
            return 0

        try:
            return self._client.publish(channel, json.dumps(message, default=str).encode('utf-8'))
        except RedisError as e:
            self._reset("publish", channel, e)
            return 0
