"""
Advisory in-process cache for materialized availability.

Entries live for the debounce window, so repeated requests for the same
(clinician, range, refresh trigger) inside it are answered without touching
the database. Only complete results are ever stored.
"""
import logging
import time
from collections import OrderedDict
from threading import Lock
from typing import Any, Callable, Optional

from practice_calendar.core import config

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str, int]


def range_signature(start_date, end_date, zone_name: Optional[str]) -> str:
    return f"{start_date.isoformat()}..{end_date.isoformat()}@{zone_name or 'clinician'}"


class MaterializationCache:
    """TTL + LRU cache keyed by (clinician_id, range_signature, refresh_trigger)."""

    def __init__(
        self,
        ttl_seconds: float | None = None,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = config.CACHE_DEBOUNCE_SECONDS if ttl_seconds is None else ttl_seconds
        self.max_entries = max_entries or config.CACHE_MAX_ENTRIES
        self._clock = clock
        self._entries: OrderedDict[CacheKey, tuple[float, Any]] = OrderedDict()
        self._lock = Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: CacheKey) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                logger.debug("Cache MISS: %s", key)
                return None

            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                self.misses += 1
                logger.debug("Cache EXPIRED: %s", key)
                return None

            self._entries.move_to_end(key)
            self.hits += 1
            logger.debug("Cache HIT: %s", key)
            return value

    def set(self, key: CacheKey, value: Any) -> None:
        if self.ttl_seconds <= 0:
            return

        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Cache EVICT: %s", evicted)

    def invalidate_clinician(self, clinician_id: str) -> int:
        with self._lock:
            stale = [key for key in self._entries if key[0] == clinician_id]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("Cache INVALIDATE: %s (%s entries)", clinician_id, len(stale))
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)
