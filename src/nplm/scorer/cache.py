"""
Direct-mapped cache of n-gram scores.

Each n-gram maps to exactly one slot (hash modulo capacity). A new key evicts
whatever lives in its slot; a different key in the slot is simply a miss.
"""

from typing import Optional, Sequence

import numpy as np

_MASK = 0xFFFFFFFFFFFFFFFF
_GOLDEN = 0x9E3779B9

EMPTY_KEY = -1


def hash_ngram(ngram: Sequence[int]) -> int:
    """boost::hash_range style combine over the token indices, 64-bit."""
    seed = 0
    for value in ngram:
        seed ^= (int(value) + _GOLDEN + (seed << 6) + (seed >> 2)) & _MASK
    return seed


class DirectMappedCache:
    """
    Fixed-capacity table of (key, value, valid) slots.

    Attributes:
        capacity: Number of slots, 0 when disabled
        width: Length of every key (the n-gram size)
        lookups: Number of lookups since the last reset
        hits: Number of lookups that found their key
    """

    def __init__(self, width: int = 1, capacity: int = 0):
        self.reset(width, capacity)

    def reset(self, width: int, capacity: Optional[int] = None) -> None:
        """Reallocate for a key width (and capacity); clears all entries and counters."""
        if capacity is None:
            capacity = self.capacity
        if capacity < 0:
            raise ValueError(f"cache capacity must be non-negative, got {capacity}")
        self.width = width
        self.capacity = capacity
        self.keys = np.full((capacity, width), EMPTY_KEY, dtype=np.int64)
        self.values = np.zeros(capacity, dtype=np.float64)
        self.valid = np.zeros(capacity, dtype=bool)
        self.lookups = 0
        self.hits = 0

    @property
    def enabled(self) -> bool:
        return self.capacity > 0

    def slot(self, ngram: Sequence[int]) -> int:
        return hash_ngram(ngram) % self.capacity

    def get(self, ngram: Sequence[int]) -> Optional[float]:
        """Probe the cache; counts a lookup and, on an exact key match, a hit."""
        slot = self.slot(ngram)
        self.lookups += 1
        if self.valid[slot] and np.array_equal(self.keys[slot], ngram):
            self.hits += 1
            return float(self.values[slot])
        return None

    def put(self, ngram: Sequence[int], value: float) -> None:
        slot = self.slot(ngram)
        self.keys[slot] = ngram
        self.values[slot] = value
        self.valid[slot] = True

    def hit_rate(self) -> float:
        if self.lookups == 0:
            raise ValueError("cache hit rate is undefined before any cached lookup")
        return self.hits / self.lookups
