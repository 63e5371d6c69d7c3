"""Generic TTL cache."""
import time
import threading


class TTLCache:
    """Thread-safe key-value cache with per-key TTL and hit/miss accounting."""

    def __init__(self):
        self._store = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key):
        """Get value if exists and not expired."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self.misses += 1
                return None
            if time.monotonic() > entry["expires"]:
                del self._store[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry["value"]

    def set(self, key, value, ttl=300):
        """Set key with TTL in seconds."""
        with self._lock:
            self._store[key] = {
                "value": value,
                "expires": time.monotonic() + ttl,
            }

    def get_or_set(self, key, factory, ttl=300):
        """Return the cached value, computing and storing it on a miss."""
        value = self.get(key)
        if value is None:
            value = factory()
            self.set(key, value, ttl)
        return value

    def hit_rate(self):
        """Percentage of lookups served from the cache."""
        with self._lock:
            total = self.hits + self.misses
            return (self.hits / total) * 100 if total else 0.0

    def invalidate(self, key):
        """Remove a specific key."""
        with self._lock:
            self._store.pop(key, None)

    def clear(self):
        """Remove all entries."""
        with self._lock:
            self._store.clear()
