from typing import Any, Dict, Optional
from datetime import datetime, timedelta
from advanced_config import CACHE_SETTINGS


class CacheManager:
    """In-memory TTL cache for read-mostly API responses."""

    def __init__(self, max_size: int = CACHE_SETTINGS['max_size']):
        self.memory_cache: Dict[str, Any] = {}
        self.max_size = max_size
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> Optional[Any]:
        """Get value from memory cache"""
        if not CACHE_SETTINGS['enabled']:
            return None
        if key in self.memory_cache:
            data = self.memory_cache[key]
            if datetime.utcnow() < data['expire_time']:
                self.hits += 1
                return data['value']
            else:
                del self.memory_cache[key]
        self.misses += 1
        return None

    async def set(self, key: str, value: Any, expire_seconds: int = None):
        """Set value in memory cache"""
        if not CACHE_SETTINGS['enabled']:
            return
        if not expire_seconds:
            expire_seconds = CACHE_SETTINGS['expire_time']

        self.memory_cache[key] = {
            'value': value,
            'expire_time': datetime.utcnow() + timedelta(seconds=expire_seconds)
        }

        # Cleanup if cache is too large
        if len(self.memory_cache) > self.max_size:
            oldest_key = min(
                self.memory_cache.items(),
                key=lambda x: x[1]['expire_time']
            )[0]
            del self.memory_cache[oldest_key]

    async def delete(self, *keys: str):
        for key in keys:
            self.memory_cache.pop(key, None)

    async def delete_prefix(self, prefix: str):
        for key in [k for k in self.memory_cache if k.startswith(prefix)]:
            del self.memory_cache[key]

    async def invalidate_user(self, phone: str):
        """Drop every cached view derived from one user's row"""
        await self.delete(f"vip_status_{phone}", "all_users")

    async def clear(self):
        self.memory_cache.clear()

    async def clear_expired(self):
        """Clear expired cache entries"""
        now = datetime.utcnow()
        expired_keys = [
            key for key, data in self.memory_cache.items()
            if data['expire_time'] < now
        ]
        for key in expired_keys:
            del self.memory_cache[key]
        return len(expired_keys)

    def stats(self) -> Dict[str, int]:
        return {'keys': len(self.memory_cache), 'hits': self.hits, 'misses': self.misses}
