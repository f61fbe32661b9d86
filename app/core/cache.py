# app/core/cache.py
from typing import Any, Optional, Dict, Tuple
import time
import logging
import asyncio

logger = logging.getLogger(__name__)

PROFILE_TTL_SECONDS = 300


def profile_cache_key(user_id: str) -> str:
    return f"profile:{user_id}"


class InMemoryCache:
    """Simple in-memory cache with TTL support"""

    def __init__(self):
        self._cache: Dict[str, Tuple[Any, float]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache if not expired"""
        async with self._lock:
            if key in self._cache:
                value, expiry = self._cache[key]
                if time.time() < expiry:
                    logger.debug(f"Cache hit for key: {key}")
                    return value
                del self._cache[key]
                logger.debug(f"Cache expired for key: {key}")
            return None

    async def set(self, key: str, value: Any, ttl: int = PROFILE_TTL_SECONDS):
        """Set value in cache with TTL (default 5 minutes)"""
        async with self._lock:
            self._cache[key] = (value, time.time() + ttl)

    async def delete(self, key: str):
        """Delete key from cache"""
        async with self._lock:
            self._cache.pop(key, None)

    async def clear(self):
        """Clear all cache entries"""
        async with self._lock:
            self._cache.clear()

    async def cleanup_expired(self):
        """Remove all expired entries"""
        async with self._lock:
            current_time = time.time()
            expired_keys = [
                key for key, (_, expiry) in self._cache.items()
                if current_time >= expiry
            ]
            for key in expired_keys:
                del self._cache[key]
            if expired_keys:
                logger.debug(f"Cleaned up {len(expired_keys)} expired cache entries")

# Profile snapshots keyed by profile_cache_key(); any credit or profile
# write must invalidate the entry
profile_cache = InMemoryCache()

# Background task to periodically clean up expired entries
async def cache_cleanup_task():
    """Periodically clean up expired cache entries"""
    while True:
        try:
            await asyncio.sleep(600)  # Run every 10 minutes
            await profile_cache.cleanup_expired()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in cache cleanup task: {str(e)}")

__all__ = ["profile_cache", "profile_cache_key", "cache_cleanup_task", "InMemoryCache"]
