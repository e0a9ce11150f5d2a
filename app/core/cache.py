import logging
from typing import Optional, Dict
from app.core.config import settings
from app.core.redis_cache import RedisCache

logger = logging.getLogger(__name__)


# Global cache instance
_cache_instance: Optional[RedisCache] = None


def get_cache() -> RedisCache:
    """Get global Redis cache instance"""
    global _cache_instance
    if _cache_instance is None:
        _cache_instance = RedisCache()
    return _cache_instance


def _status_cache_key(user_id: str) -> str:
    return f"subscription_status:{user_id}"


def get_cached_status(user_id: str) -> Optional[Dict]:
    """
    Last known display snapshot of a user's subscription.
    Advisory only: never consult this to grant a paid feature.
    """
    return get_cache().get(_status_cache_key(user_id))


def set_cached_status(user_id: str, snapshot: Dict, ttl_minutes: int = None):
    get_cache().set(
        _status_cache_key(user_id),
        snapshot,
        ttl_minutes or settings.subscription_cache_ttl_minutes
    )


def delete_cached_status(user_id: str):
    get_cache().delete(_status_cache_key(user_id))
