"""
Performance caching utilities
Short-lived in-memory caching for platform settings and other hot reads
"""

import logging
import time
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

class SimpleCache:
    """Simple in-memory cache with TTL support"""

    def __init__(self, default_ttl: float = 300):
        self.cache: Dict[str, Dict[str, Any]] = {}
        self.default_ttl = default_ttl

    def get(self, key: str) -> Optional[Any]:
        """Get cached value, or None when missing or expired"""
        entry = self.cache.get(key)
        if entry is None:
            return None
        if entry['expires'] > time.monotonic():
            return entry['value']
        # Expired, remove it
        self.cache.pop(key, None)
        return None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Set cached value; a ttl of 0 disables caching for this entry"""
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            self.cache.pop(key, None)
            return
        now = time.monotonic()
        self.cache[key] = {
            'value': value,
            'expires': now + ttl,
            'created': now
        }

    def delete(self, key: str) -> None:
        self.cache.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        """Delete every entry whose key starts with prefix"""
        doomed = [key for key in self.cache if key.startswith(prefix)]
        for key in doomed:
            del self.cache[key]
        return len(doomed)

    def clear(self) -> None:
        self.cache.clear()

    def cleanup_expired(self) -> int:
        """Remove expired entries"""
        current_time = time.monotonic()
        expired_keys = [
            key for key, entry in self.cache.items()
            if entry['expires'] <= current_time
        ]
        for key in expired_keys:
            del self.cache[key]
        return len(expired_keys)

# Global cache instance
_cache = SimpleCache()

def get_cached(key: str) -> Optional[Any]:
    """Get value from global cache"""
    return _cache.get(key)

def set_cached(key: str, value: Any, ttl: Optional[float] = None) -> None:
    """Set value in global cache"""
    _cache.set(key, value, ttl)

def cache_invalidate_category(category: str) -> int:
    """Invalidate all cached entries in a category"""
    count = _cache.delete_prefix(category)
    if count:
        logger.debug(f"🔧 Invalidated {count} cached entries for '{category}'")
    return count

def clear_cache() -> None:
    """Clear global cache"""
    _cache.clear()

def cache_stats() -> Dict[str, Any]:
    """Get cache statistics"""
    return {
        'total_entries': len(_cache.cache),
        'cleanup_count': _cache.cleanup_expired()
    }
