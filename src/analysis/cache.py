"""Per-location cache of analysis results.

Entries are evicted when fresh scraping data lands for their location; the TTL
bounds staleness when an eviction notification is lost.
"""

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from src.scraping.notifications import DataUpdated

logger = logging.getLogger(__name__)


class AnalysisCache:
    """Thread-safe TTL cache keyed by (location_id, key)."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, location_id: str, key: str = "analysis") -> Any | None:
        with self._lock:
            entry = self._entries.get((location_id, key))
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[(location_id, key)]
                return None
            return value

    def put(self, location_id: str, value: Any, key: str = "analysis") -> None:
        with self._lock:
            self._entries[(location_id, key)] = (self._clock() + self._ttl, value)

    def evict_location(self, location_id: str) -> int:
        """Drop every entry for a location. Returns how many were removed."""
        with self._lock:
            keys = [k for k in self._entries if k[0] == location_id]
            for k in keys:
                del self._entries[k]
        if keys:
            logger.debug("Evicted %d cached analyses for location %s", len(keys), location_id)
        return len(keys)

    def on_data_updated(self, event: DataUpdated) -> None:
        self.evict_location(event.location_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
