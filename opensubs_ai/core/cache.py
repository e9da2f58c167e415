"""In-memory TTL cache for catalog and account data.

WHY: Language catalogs, service descriptions, and recent-media lists
change rarely but are requested by every screen. Caching them for a day
avoids hammering the service; submitting a new job invalidates the
recent-media entry.

HOW: A dict of key → (expires_at, value). Expired entries are dropped
lazily on read. The clock is injectable so tests do not wait.

RULES:
- Default TTL is CATALOG_CACHE_TTL_SECONDS (24 hours)
- get() returns None for missing or expired keys (never raises)
- Cached values are returned as stored (callers must not mutate them)
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Tuple

from opensubs_ai.config import CATALOG_CACHE_TTL_SECONDS


class TTLCache:
    """Small expiring key/value store."""

    def __init__(
        self,
        ttl_seconds: float = CATALOG_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._items: Dict[str, Tuple[float, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        item = self._items.get(key)
        if item is None:
            return None
        expires_at, value = item
        if self._clock() > expires_at:
            del self._items[key]
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        self._items[key] = (self._clock() + self._ttl_seconds, value)

    def remove(self, key: str) -> None:
        self._items.pop(key, None)

    def clear(self) -> None:
        self._items.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None
