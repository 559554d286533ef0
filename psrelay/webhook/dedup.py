"""In-memory LRU set for webhook delivery deduplication.

GitHub delivers at least once and retries with the same ``X-GitHub-Delivery``
id. The cache only has to cover the retransmission window; a process restart
clears it and may let a retried delivery through again.
"""

from __future__ import annotations

import enum
import logging
import threading

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 256


class DedupVerdict(enum.Enum):
    FRESH = "fresh"
    DUPLICATE = "duplicate"


class DeliveryDeduplicator:
    """Fixed-capacity LRU set of delivery ids.

    The cache keeps recency order in a dict (insertion order) so the least
    recently used id is always first.  ``check_and_record`` holds a lock across
    the lookup and the insert, so two concurrent deliveries of the same id
    cannot both come out `DedupVerdict.FRESH`.
    """

    __slots__ = ("_cache", "_capacity", "_lock")

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._capacity = max(1, capacity)
        self._cache: dict[str, None] = {}
        self._lock = threading.Lock()

    def check_and_record(self, delivery_id: str) -> DedupVerdict:
        """Record *delivery_id* and report whether it was seen before.

        A duplicate only refreshes the id's recency.
        """
        with self._lock:
            if delivery_id in self._cache:
                del self._cache[delivery_id]
                self._cache[delivery_id] = None
                logger.debug("Dedup hit delivery=%s", delivery_id)
                return DedupVerdict.DUPLICATE

            self._cache[delivery_id] = None
            while len(self._cache) > self._capacity:
                oldest = next(iter(self._cache))
                del self._cache[oldest]
            return DedupVerdict.FRESH

    def clear(self) -> None:
        """Drop all entries."""
        with self._lock:
            self._cache.clear()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        """Number of ids currently remembered."""
        return len(self._cache)

    def __contains__(self, delivery_id: object) -> bool:
        return delivery_id in self._cache
