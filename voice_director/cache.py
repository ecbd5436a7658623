"""Bounded in-memory cache with per-entry expiry.

Entries carry their insertion timestamp and are checked on read; an expired
entry is evicted the moment it is looked up.  When the cache is full the
oldest entry is dropped on insert.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Optional

log = logging.getLogger(__name__)


class TTLCache:
    def __init__(
        self,
        max_entries: int = 512,
        ttl_s: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        inserted_at, value = entry
        if self._clock() - inserted_at >= self.ttl_s:
            del self._entries[key]
            log.debug("Cache entry expired: %s", key[:16])
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        if key in self._entries:
            del self._entries[key]
        self._entries[key] = (self._clock(), value)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            log.debug("Cache full, evicted %s", evicted[:16])

    def clear(self) -> None:
        self._entries.clear()


def make_key(*parts: Any) -> str:
    """Stable hash key for a tuple of JSON-serialisable parts."""
    payload = json.dumps(parts, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
