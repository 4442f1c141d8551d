"""
Caching layer for prompt construction.
Caches retrieval results, template listings and finished traces.
"""

import hashlib
import logging
import threading
import time
from typing import Any, Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class Cache(Protocol):
    """Generic cache collaborator: get/set with TTL and insert-if-absent."""

    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None: ...

    def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> Any: ...

    def delete(self, key: str) -> None: ...


class InMemoryCache:
    """
    Thread-safe in-memory cache with TTL.

    Reads take the lock only briefly; writers use `set_if_absent` so that
    concurrent requests computing the same entry keep the first value.
    """

    def __init__(self, default_ttl: int = 3600, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: dict = {}
        self._expires: dict = {}

    def _is_expired(self, key: str) -> bool:
        """Check if a key has expired. Caller holds the lock."""
        expires_at = self._expires.get(key)
        return expires_at is None or self._clock() > expires_at

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        with self._lock:
            if key in self._cache and not self._is_expired(key):
                logger.debug(f"Cache hit: {key[:50]}...")
                return self._cache[key]

            # Clean up expired entry
            if key in self._cache:
                del self._cache[key]
                del self._expires[key]

        return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set value in cache with TTL."""
        ttl = ttl or self.default_ttl
        with self._lock:
            self._cache[key] = value
            self._expires[key] = self._clock() + ttl

    def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> Any:
        """Insert unless a live entry exists; return the value now cached."""
        ttl = ttl or self.default_ttl
        with self._lock:
            if key in self._cache and not self._is_expired(key):
                return self._cache[key]
            self._cache[key] = value
            self._expires[key] = self._clock() + ttl
            return value

    def delete(self, key: str) -> None:
        """Delete a key from cache."""
        with self._lock:
            self._cache.pop(key, None)
            self._expires.pop(key, None)

    def clear(self) -> None:
        """Clear all cache entries."""
        with self._lock:
            self._cache.clear()
            self._expires.clear()

    def stats(self) -> dict:
        """Get cache statistics."""
        with self._lock:
            valid_count = sum(1 for k in self._cache if not self._is_expired(k))
            total = len(self._cache)
        return {
            "total_keys": total,
            "valid_keys": valid_count,
            "expired_keys": total - valid_count,
        }


def normalize_question(question: str) -> str:
    """Lowercase and collapse whitespace so trivially different phrasings share a key."""
    return " ".join(question.lower().split())


def make_cache_key(*args, **kwargs) -> str:
    """
    Create a deterministic cache key from arguments.
    """
    key_parts = [str(arg) for arg in args]
    key_parts.extend(f"{k}={v}" for k, v in sorted(kwargs.items()))
    key_string = "|".join(key_parts)
    return hashlib.md5(key_string.encode()).hexdigest()
