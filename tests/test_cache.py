"""ResultCache のユニットテスト"""

import pytest
from energy_sync.cache import MISS, ResultCache
from energy_sync.clock import ManualClock
from energy_sync.models import CacheEntry


def test_entry_requires_positive_lifetime() -> None:
    with pytest.raises(ValueError):
        CacheEntry(key="k", value=1, stored_at=10.0, expires_at=10.0)


async def test_entry_is_fresh_until_expiry(clock: ManualClock) -> None:
    cache = ResultCache(clock, default_ttl_ms=30_000)
    cache.set("balance", {"units": 12})

    await clock.advance(29.0)
    assert cache.get("balance") == {"units": 12}
    await clock.advance(1.0)
    assert cache.get("balance") is MISS


def test_values_are_copied_on_write_and_read(clock: ManualClock) -> None:
    cache = ResultCache(clock)
    value = {"readings": [1, 2]}
    cache.set("k", value)
    value["readings"].append(3)

    first = cache.get("k")
    first["readings"].append(4)
    assert cache.get("k") == {"readings": [1, 2]}


def test_ttl_is_capped(clock: ManualClock) -> None:
    cache = ResultCache(clock, default_ttl_ms=30_000, max_ttl_ms=60_000)
    entry = cache.set("k", 1, ttl_ms=3_600_000)
    assert entry.expires_at - entry.stored_at == 60.0


def test_invalidate_and_stats(clock: ManualClock) -> None:
    cache = ResultCache(clock)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1
    assert cache.invalidate("a")
    assert not cache.invalidate("a")
    assert cache.get("a") is MISS

    stats = cache.stats()
    assert stats.entries == 1
    assert stats.hits == 1
    assert stats.misses == 1

    cache.clear()
    assert len(cache) == 0
