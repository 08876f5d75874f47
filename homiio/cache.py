"""Process-wide TTL cache for API reads.

One instance is built at startup and handed to whoever needs it, instead of
each module keeping its own dict of ``{"data": ..., "timestamp": ...}``.
"""

import os
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

from dotenv import load_dotenv

load_dotenv()

CACHE_TTL = float(os.getenv("HOMIIO_CACHE_TTL", "30"))  # seconds
CACHE_MAXSIZE = int(os.getenv("HOMIIO_CACHE_MAXSIZE", "128"))


class TTLCache:
    """Bounded mapping whose entries expire ``ttl`` seconds after being set.

    When full, the least recently used entry is evicted.
    """

    def __init__(
        self,
        ttl: float = CACHE_TTL,
        maxsize: int = CACHE_MAXSIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.ttl = ttl
        self.maxsize = maxsize
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        # Bumped by every invalidate so in-flight reads can tell they are stale
        self.generation = 0

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return default
        self._entries.move_to_end(key)
        return value

    def set(self, key: str, value: Any, generation: int | None = None) -> bool:
        """Store ``value``.

        With ``generation`` (read before the value was fetched) the write is
        skipped if an invalidation happened since. Returns whether it was stored.
        """
        if generation is not None and generation != self.generation:
            return False
        self._entries[key] = (self._clock() + self.ttl, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.maxsize:
            self._entries.popitem(last=False)
        return True

    def invalidate(self, prefix: str = "") -> int:
        """Drop every key starting with ``prefix`` (all keys by default)."""
        self.generation += 1
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def __contains__(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        return len(self._entries)


_MISSING = object()
