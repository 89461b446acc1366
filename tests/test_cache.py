"""Tests for the bounded LRU tensor cache."""

import numpy as np
import pytest

from edge.cache import TensorCache


def _tensor(value):
    return np.full((1, 256), value, dtype=np.float32)


class TestTensorCache:
    def test_get_missing_returns_none(self):
        cache = TensorCache(capacity=2)
        assert cache.get("missing") is None
        assert cache.stats()["misses"] == 1

    def test_set_then_get(self):
        cache = TensorCache(capacity=2)
        cache.set("a", _tensor(1.0), 3)

        entry = cache.get("a")
        assert entry.ground_truth_index == 3
        np.testing.assert_array_equal(entry.tensor, _tensor(1.0))

    def test_overflow_evicts_exactly_one_lru_entry(self):
        capacity = 5
        cache = TensorCache(capacity=capacity)
        for index in range(capacity + 1):
            cache.set(f"k{index}", _tensor(index), index % 4)

        assert len(cache) == capacity
        assert "k0" not in cache
        assert cache.keys() == ["k1", "k2", "k3", "k4", "k5"]
        assert cache.stats()["evictions"] == 1

    def test_get_protects_key_from_eviction(self):
        cache = TensorCache(capacity=3)
        cache.set("a", _tensor(0), 0)
        cache.set("b", _tensor(1), 1)
        cache.set("c", _tensor(2), 2)

        cache.get("a")
        cache.set("d", _tensor(3), 3)

        assert "a" in cache
        assert "b" not in cache
        assert cache.keys() == ["c", "a", "d"]

    def test_membership_does_not_refresh_recency(self):
        cache = TensorCache(capacity=2)
        cache.set("a", _tensor(0), 0)
        cache.set("b", _tensor(1), 1)

        assert "a" in cache
        cache.set("c", _tensor(2), 2)
        assert "a" not in cache

    def test_resetting_existing_key_replaces_without_eviction(self):
        cache = TensorCache(capacity=2)
        cache.set("a", _tensor(0), 0)
        cache.set("b", _tensor(1), 1)
        cache.set("a", _tensor(9), 2)

        assert len(cache) == 2
        assert cache.keys() == ["b", "a"]
        assert cache.get("a").ground_truth_index == 2
        assert cache.stats()["evictions"] == 0

    def test_sequential_overflow_evicts_one_per_insert(self):
        cache = TensorCache(capacity=2)
        for index in range(6):
            cache.set(str(index), _tensor(index), 0)
            assert len(cache) == min(index + 1, 2)
        assert cache.stats()["evictions"] == 4

    def test_clear(self):
        cache = TensorCache()
        cache.set("a", _tensor(0), 0)
        cache.set("b", _tensor(1), 1)
        cache.clear()

        assert len(cache) == 0
        assert cache.get("a") is None

    def test_default_capacity(self):
        assert TensorCache().capacity == 5

    @pytest.mark.parametrize("capacity", [0, -1])
    def test_invalid_capacity(self, capacity):
        with pytest.raises(ValueError):
            TensorCache(capacity=capacity)
