"""Bounded response cache with frequency based admission and lazy TTL expiry.

``TinyLfuCache`` keeps at most ``capacity`` units of weight. A count-min
sketch estimates how often each key was asked for, and a Bloom filter
doorkeeper soaks up keys seen only once. When the cache is full a new key
only gets in if it is more popular than the entry it would push out.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Optional

from pybloom_live import BloomFilter

from app.models import ResolvedResponse
from logger_config import setup_logger

logger = setup_logger()

SKETCH_DEPTH = 4
MAX_COUNT = 15
SAMPLE_FACTOR = 10
DOORKEEPER_ERROR_RATE = 0.01


class FrequencySketch:
    """Count-min sketch with small saturating counters."""

    def __init__(self, width: int):
        size = 16
        while size < width:
            size <<= 1
        self._mask = size - 1
        self._rows = [[0] * size for _ in range(SKETCH_DEPTH)]

    def _indexes(self, key: Hashable):
        for seed in range(SKETCH_DEPTH):
            yield seed, hash((seed, key)) & self._mask

    def estimate(self, key: Hashable) -> int:
        return min(self._rows[row][index] for row, index in self._indexes(key))

    def increment(self, key: Hashable) -> None:
        # Conservative update, only the smallest counters grow
        slots = list(self._indexes(key))
        current = min(self._rows[row][index] for row, index in slots)
        if current >= MAX_COUNT:
            return
        for row, index in slots:
            if self._rows[row][index] == current:
                self._rows[row][index] = current + 1

    def halve(self) -> None:
        for row in self._rows:
            for i, value in enumerate(row):
                row[i] = value >> 1


class TinyLfuCache:
    """Thread safe bounded mapping with TinyLFU admission."""

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._sample_size = capacity * SAMPLE_FACTOR
        self._sketch = FrequencySketch(capacity * SKETCH_DEPTH)
        self._doorkeeper = self._new_doorkeeper()
        self._additions = 0
        self._entries: "OrderedDict[Hashable, Any]" = OrderedDict()
        self._weights = {}
        self._total_weight = 0
        self._lock = threading.Lock()

    def _new_doorkeeper(self) -> BloomFilter:
        return BloomFilter(capacity=self._sample_size, error_rate=DOORKEEPER_ERROR_RATE)

    def _record(self, key: Hashable) -> None:
        self._additions += 1
        if self._additions >= self._sample_size:
            self._sketch.halve()
            self._doorkeeper = self._new_doorkeeper()
            self._additions = 0

        doorkey = repr(key)
        if doorkey in self._doorkeeper:
            self._sketch.increment(key)
        else:
            self._doorkeeper.add(doorkey)

    def _frequency(self, key: Hashable) -> int:
        bonus = 1 if repr(key) in self._doorkeeper else 0
        return self._sketch.estimate(key) + bonus

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            self._record(key)
            if key not in self._entries:
                return None
            self._entries.move_to_end(key)
            return self._entries[key]

    def put(self, key: Hashable, value: Any, weight: int = 1) -> bool:
        """Insert or replace ``key``. Returns False when admission is refused."""
        if weight > self.capacity:
            return False

        with self._lock:
            self._record(key)

            if key in self._entries:
                self._total_weight -= self._weights[key]
                del self._entries[key]
                del self._weights[key]

            candidate = self._frequency(key)
            victims = []
            freed = 0
            for victim in self._entries:
                if self._total_weight - freed + weight <= self.capacity:
                    break
                if self._frequency(victim) >= candidate:
                    return False
                victims.append(victim)
                freed += self._weights[victim]

            for victim in victims:
                del self._entries[victim]
                self._total_weight -= self._weights.pop(victim)

            self._entries[key] = value
            self._weights[key] = weight
            self._total_weight += weight
            return True

    def remove(self, key: Hashable) -> None:
        with self._lock:
            if key in self._entries:
                del self._entries[key]
                self._total_weight -= self._weights.pop(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries


@dataclass(frozen=True)
class CacheEntry:
    expires_at: float
    response: ResolvedResponse


class ResponseCache:
    """TTL cache of buffered responses keyed by resolved path.

    A capacity of 0 turns the cache off: ``get`` always misses and ``put``
    does nothing.
    """

    def __init__(self, capacity: int, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.capacity = capacity
        self.ttl = ttl
        self._clock = clock
        self._store = TinyLfuCache(capacity) if capacity > 0 else None

    @property
    def enabled(self) -> bool:
        return self._store is not None

    def get(self, key: str) -> Optional[ResolvedResponse]:
        if self._store is None:
            return None
        entry = self._store.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            # Expired entries stay until replaced or evicted
            return None
        return entry.response

    def put(self, key: str, response: ResolvedResponse, weight: int = 1) -> bool:
        if self._store is None:
            return False
        if not response.is_buffered:
            raise ValueError("only buffered responses can be cached")
        entry = CacheEntry(expires_at=self._clock() + self.ttl, response=response)
        admitted = self._store.put(key, entry, weight)
        if not admitted:
            logger.debug(f"Cache admission refused for {key}")
        return admitted

    def __len__(self) -> int:
        return 0 if self._store is None else len(self._store)
