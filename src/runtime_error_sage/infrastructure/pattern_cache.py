"""Size- and age-bounded cache owned by the pattern store.

Entries are kept in least-recently-used order.  Inserting past ``max_size``
evicts the least recently used entry; reading an entry older than
``max_age`` seconds drops it and reports a miss.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable

from runtime_error_sage.domain.entities import ErrorPattern

CacheKey = tuple[str, str]


class PatternCache:
    """Thread-safe LRU cache of :class:`ErrorPattern` keyed by natural key."""

    def __init__(
        self,
        max_size: int = 1000,
        max_age: float = 86400.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 0:
            raise ValueError(f"max_size must be >= 0, got {max_size}")
        if max_age <= 0:
            raise ValueError(f"max_age must be > 0, got {max_age}")
        self._max_size = max_size
        self._max_age = max_age
        self._clock = clock
        self._entries: OrderedDict[CacheKey, tuple[float, ErrorPattern]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: CacheKey) -> ErrorPattern | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            stored_at, pattern = entry
            if self._clock() - stored_at > self._max_age:
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return ErrorPattern.from_dict(pattern.to_dict())

    def put(self, pattern: ErrorPattern) -> None:
        if self._max_size == 0:
            return
        # store a private copy so callers cannot mutate cached state
        snapshot = ErrorPattern.from_dict(pattern.to_dict())
        with self._lock:
            self._entries[pattern.key] = (self._clock(), snapshot)
            self._entries.move_to_end(pattern.key)
            while len(self._entries) > self._max_size:
                self._entries.popitem(last=False)

    def invalidate(self, key: CacheKey) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def purge_expired(self) -> int:
        """Drop every entry older than ``max_age``; return how many."""
        now = self._clock()
        with self._lock:
            stale = [k for k, (t, _) in self._entries.items() if now - t > self._max_age]
            for key in stale:
                del self._entries[key]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries
