"""
Per-process TTL cache

Holds per-user scheduler settings between requests in a warm container.
Entries expire after ``ttl_seconds``; writers invalidate explicitly.

Cache structure: {key: (value, stored_at)}
"""

import logging
import threading
import time

logger = logging.getLogger(__name__)


class TTLCache:

    def __init__(self, ttl_seconds=300, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key, default=None):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return default
            value, stored_at = entry
            age = self.clock() - stored_at
            if age > self.ttl_seconds:
                logger.debug(f"Cache expired for {key} (age: {age:.1f}s, TTL: {self.ttl_seconds}s)")
                del self._entries[key]
                self.misses += 1
                return default
            self.hits += 1
            return value

    def set(self, key, value):
        with self._lock:
            self._entries[key] = (value, self.clock())

    def invalidate(self, key):
        with self._lock:
            self._entries.pop(key, None)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def stats(self):
        total = self.hits + self.misses
        return {
            'size': len(self._entries),
            'hits': self.hits,
            'misses': self.misses,
            'hit_rate': self.hits / total if total else 0.0,
        }
