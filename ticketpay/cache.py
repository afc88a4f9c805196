import threading
import time
from collections import OrderedDict


class TTLCache:
    """Process-wide key/value store with per-entry expiry and a size cap.

    State lives in this process only; every deployed instance keeps its own
    copy.
    """

    def __init__(self, ttl_seconds: float, max_entries: int = 1024, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._items: OrderedDict = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key, default=None):
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                return default
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._items[key]
                return default
            return value

    def set(self, key, value, ttl_seconds: float | None = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._items[key] = (self._clock() + ttl, value)
            self._items.move_to_end(key)
            self._evict()

    def incr(self, key) -> int:
        """Increment a counter whose window starts at its first hit."""
        with self._lock:
            now = self._clock()
            entry = self._items.get(key)
            if entry is None or entry[0] <= now:
                self._items[key] = (now + self.ttl_seconds, 1)
                self._evict()
                return 1
            expires_at, count = entry
            self._items[key] = (expires_at, count + 1)
            return count + 1

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def _evict(self) -> None:
        now = self._clock()
        for key in [k for k, (exp, _) in self._items.items() if exp <= now]:
            del self._items[key]
        while len(self._items) > self.max_entries:
            self._items.popitem(last=False)


class RateLimiter:
    def __init__(self, window_seconds: float = 60, max_keys: int = 10_000):
        self._counters = TTLCache(window_seconds, max_entries=max_keys)

    def hit(self, identifier: str, limit: int) -> bool:
        """Record one request; False once ``limit`` is exceeded in the window."""
        return self._counters.incr(identifier) <= limit

    def reset(self) -> None:
        self._counters.clear()
