"""
state_cache.py

Time-bounded, invalidate-on-write cache of per-list size.

Entries older than the freshness window, or invalidated by a mutation, read
as absent; callers treat None as "go to remote". Only the execution engine
invalidates. The last known value is kept so read-only callers can serve it
flagged degraded while the remote store is unavailable.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Set

from .models import ListHandle, ListMetadata

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StateCache:
    def __init__(self, freshness_seconds: float = 3600, clock: Callable[[], datetime] = utcnow):
        self.freshness = timedelta(seconds=freshness_seconds)
        self._clock = clock
        self._entries: Dict[ListHandle, ListMetadata] = {}
        self._invalidated: Set[ListHandle] = set()
        self._lock = threading.Lock()

    def get(self, handle: ListHandle) -> Optional[ListMetadata]:
        """Fresh metadata, or None if absent, invalidated or older than the window"""
        with self._lock:
            entry = self._entries.get(handle)
            invalidated = handle in self._invalidated
        if entry is None or invalidated:
            return None
        if self._clock() - entry.last_synced_at > self.freshness:
            return None
        return entry

    def get_stale(self, handle: ListHandle) -> Optional[ListMetadata]:
        """Last known metadata regardless of age, flagged degraded"""
        with self._lock:
            entry = self._entries.get(handle)
        if entry is None:
            return None
        return ListMetadata(entry.list_handle, entry.size, entry.last_synced_at, degraded=True)

    def put(self, handle: ListHandle, size: int) -> ListMetadata:
        entry = ListMetadata(handle, int(size), self._clock())
        with self._lock:
            self._entries[handle] = entry
            self._invalidated.discard(handle)
        return entry

    def invalidate(self, handle: ListHandle):
        with self._lock:
            self._invalidated.add(handle)
        logger.debug(f"🧹 Invalidated cached state for {handle.value}")

    def invalidate_all(self):
        with self._lock:
            self._invalidated.update(self._entries)
