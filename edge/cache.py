# =============================================================================
# Fundus Edge Demo - Bounded Tensor Cache
# =============================================================================
# Provides TensorCache, an LRU store of decoded embedding tensors keyed by
# sample identity. Recency is the position in an OrderedDict: the first key
# is the least recently used, the last key the most recently used.
# =============================================================================

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 5


@dataclass
class CacheEntry:
    """
    A cached tensor with the ground-truth label of its sample.

    Attributes:
        tensor:             Decoded tensor, shape (1, N), float32.
        ground_truth_index: Remapped class index of the sample.
    """

    tensor: np.ndarray
    ground_truth_index: int


class TensorCache:
    """
    Bounded least-recently-used cache of tensors.

    ``get`` refreshes recency, ``set`` evicts exactly one least-recently-used
    entry when the cache is already full, and ``clear`` drops every buffer.

    Args:
        capacity: Maximum number of entries held at once (K).
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError(f"Cache capacity must be at least 1, got {capacity}")
        self._capacity = capacity
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        # Membership checks do not count as an access
        return key in self._entries

    def keys(self) -> List[str]:
        """Cached keys from least to most recently used."""
        return list(self._entries.keys())

    def get(self, key: str) -> Optional[CacheEntry]:
        """
        Look up an entry and mark it most recently used.

        Returns:
            The CacheEntry, or None when the key is not cached.
        """
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            logger.debug("Cache miss: %s", key)
            return None

        self._entries.move_to_end(key)
        self._hits += 1
        logger.debug("Cache hit: %s", key)
        return entry

    def set(self, key: str, tensor: np.ndarray, ground_truth_index: int) -> None:
        """
        Insert or replace an entry as the most recently used.

        When a new key arrives while the cache holds ``capacity`` entries,
        the single least-recently-used entry is evicted first.
        """
        if key in self._entries:
            self._entries[key] = CacheEntry(tensor, ground_truth_index)
            self._entries.move_to_end(key)
            return

        if len(self._entries) >= self._capacity:
            evicted_key, _ = self._entries.popitem(last=False)
            self._evictions += 1
            logger.debug("Cache evicted %s (capacity=%d)", evicted_key, self._capacity)

        self._entries[key] = CacheEntry(tensor, ground_truth_index)
        logger.debug("Cached tensor for %s (%d/%d)", key, len(self._entries), self._capacity)

    def clear(self) -> None:
        """Drop every entry, releasing the tensor buffers."""
        count = len(self._entries)
        self._entries.clear()
        logger.debug("Cache cleared (%d entries released)", count)

    def stats(self) -> dict:
        """Hit, miss and eviction counters plus the current size."""
        return {
            "size": len(self._entries),
            "capacity": self._capacity,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
        }
