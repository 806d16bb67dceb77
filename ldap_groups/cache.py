"""
Search result caching for LDAP Groups Sync.

Directory searches are memoized by their filter string for a time-to-live so
that repeated lookups (the same account, or the per-group chain queries) do not
hit the directory on every sync. The storage itself is an injected backend so
a shared cache service can replace the in-process default.
"""

import time
import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Callable, List, Optional

from ldap_groups.config import DEFAULT_CACHE_TTL

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = 'ldapgroups:'


class CacheBackend(ABC):
    """Key-value store with per-entry time-to-live."""
    
    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None if absent or expired."""
        pass
    
    @abstractmethod
    def set(self, key: str, value: Any, ttl: int) -> None:
        """Store a value for ttl seconds."""
        pass
    
    def purge_expired(self) -> int:
        """Drop expired entries and return how many were removed."""
        return 0


class MemoryCache(CacheBackend):
    """
    Thread-safe in-process cache backend.
    
    Entries expire after their TTL. When max_entries is set, the least
    recently used entry is evicted once the bound is reached.
    """
    
    def __init__(self, max_entries: Optional[int] = None, clock: Callable[[], float] = time.monotonic):
        self.max_entries = max_entries or None
        self._clock = clock
        self._data = OrderedDict()
        self._lock = threading.Lock()
    
    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at <= self._clock():
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return value
    
    def set(self, key: str, value: Any, ttl: int) -> None:
        with self._lock:
            self._data[key] = (value, self._clock() + ttl)
            self._data.move_to_end(key)
            if self.max_entries:
                while len(self._data) > self.max_entries:
                    evicted, _ = self._data.popitem(last=False)
                    logger.debug(f"Evicted cached search: {evicted}")
    
    def purge_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._data.items() if expires_at <= now]
            for key in expired:
                del self._data[key]
        return len(expired)
    
    def __len__(self):
        with self._lock:
            return len(self._data)


class SearchCache:
    """
    Memoizes directory search results by filter string.
    
    The key is the exact filter text, so callers must build filters in a
    canonical form. Empty results are cached like any other result. Errors
    raised by the backend are logged and treated as cache misses.
    """
    
    def __init__(self, backend: Optional[CacheBackend] = None, default_ttl: int = DEFAULT_CACHE_TTL):
        self.backend = backend if backend is not None else MemoryCache()
        self.default_ttl = default_ttl
        self.hits = 0
        self.misses = 0
    
    def key_for(self, search_filter: str) -> str:
        return CACHE_KEY_PREFIX + search_filter
    
    def get_or_compute(self, search_filter: str, compute_fn: Callable[[], List[Any]],
                       ttl: Optional[int] = None) -> List[Any]:
        """
        Return cached entries for a filter, running compute_fn on a miss.
        
        Args:
            search_filter: Filter string used as the cache key
            compute_fn: Zero-argument callable performing the directory search
            ttl: Seconds to keep the result (defaults to default_ttl)
            
        Returns:
            The search result entries
        """
        key = self.key_for(search_filter)
        ttl = self.default_ttl if ttl is None else ttl
        
        try:
            entries = self.backend.get(key)
        except Exception as e:
            logger.warning(f"Cache lookup failed for '{search_filter}', querying directory: {e}")
            entries = None
        
        if entries is not None:
            self.hits += 1
            logger.debug(f"Cache hit for LDAP search '{search_filter}'")
            return entries
        
        self.misses += 1
        run_time = -time.monotonic()
        entries = compute_fn()
        run_time += time.monotonic()
        logger.debug(f"Ran LDAP search for '{search_filter}' in {run_time:.3f} seconds")
        
        try:
            self.backend.set(key, entries, ttl)
        except Exception as e:
            logger.warning(f"Failed to cache result for '{search_filter}': {e}")
        
        return entries
    
    def purge_expired(self) -> int:
        """Drop expired entries from the backend; backend errors are logged."""
        try:
            purged = self.backend.purge_expired()
        except Exception as e:
            logger.warning(f"Failed to purge expired cache entries: {e}")
            return 0
        if purged:
            logger.debug(f"Purged {purged} expired cached searches")
        return purged
    
    def get_stats(self):
        return {'hits': self.hits, 'misses': self.misses}
