"""
Commit hash caching functionality.
"""

from typing import Callable, Dict, Optional, Protocol
from dataclasses import dataclass
from contextlib import contextmanager
import threading
import time
import logging

logger = logging.getLogger(__name__)

COMMIT_KEY_PREFIX = "commit:"


def commit_cache_key(version: str) -> str:
    """Cache key under which the commit hash for ``version`` is stored."""
    return f"{COMMIT_KEY_PREFIX}{version}"


class Cache(Protocol):
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None when missing or expired."""

    async def set(self, key: str, value: str) -> None:
        """Insert or overwrite ``key``."""


@dataclass
class CacheEntry:
    value: str
    expires_at: float


class MemoryCache:
    """In-memory key/value store with a fixed time-to-live per entry.

    Expired entries are dropped lazily, the next time they are read. The
    backing dict is only mutated while holding ``_lock``; nothing awaits under
    the lock, so the cache is safe to share between asyncio tasks and threads.
    """

    def __init__(
        self, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic
    ):
        if ttl_seconds < 0:
            raise ValueError(f"ttl_seconds must not be negative, got {ttl_seconds}")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._store: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    @contextmanager
    def _locked(self):
        """Exclusive access to the backing store"""
        with self._lock:
            yield self._store

    def __len__(self) -> int:
        return len(self._store)

    async def get(self, key: str) -> Optional[str]:
        entry = self._store.get(key)
        if entry is None:
            return None

        if self._clock() > entry.expires_at:
            with self._locked() as store:
                # Only drop the entry we saw; a concurrent set may have replaced it
                if store.get(key) is entry:
                    del store[key]
            logger.debug(f"Cache entry expired: {key}")
            return None

        return entry.value

    async def set(self, key: str, value: str) -> None:
        entry = CacheEntry(value=value, expires_at=self._clock() + self.ttl_seconds)
        with self._locked() as store:
            store[key] = entry

    def purge_expired(self) -> int:
        """Remove all expired entries and return how many were dropped."""
        now = self._clock()
        with self._locked() as store:
            expired = [key for key, entry in store.items() if now > entry.expires_at]
            for key in expired:
                del store[key]
        if expired:
            logger.debug(f"Purged {len(expired)} expired cache entries")
        return len(expired)
