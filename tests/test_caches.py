import asyncio
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from caches import PredictionCache, SnapshotCache, TTLStore, normalize_plate  # noqa: E402


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_normalize_plate_strips_punctuation_and_uppercases():
    assert normalize_plate("abc-1d23") == "ABC1D23"
    assert normalize_plate(" ABC 1234 ") == "ABC1234"
    assert normalize_plate(None) == ""


def test_prediction_hit_within_ttl_and_miss_after():
    clock = FakeClock()
    cache = PredictionCache(ttl=300, clock=clock)
    cache.set("ABC1234", {"horario": "09:10"})

    clock.advance(299)
    assert cache.get("ABC1234") == {"horario": "09:10"}

    clock.advance(2)
    assert cache.get("ABC1234") is None


def test_record_arrival_normalizes_plate():
    cache = PredictionCache(ttl=300, clock=FakeClock())
    cache.record_arrival("abc-1234", "09:10")
    assert cache.arrival_for("ABC1234") == "09:10"
    assert cache.get("ABC1234")["horario"] == "09:10"
    assert "written_at" in cache.get("ABC1234")


def test_writes_replace_and_refresh_expiry():
    clock = FakeClock()
    store = TTLStore(10, clock=clock)
    store.set("k", 1)
    clock.advance(8)
    store.set("k", 2)
    clock.advance(8)
    assert store.get("k") == 2
    assert len(store) == 1


def test_purge_expired_removes_only_stale_entries():
    clock = FakeClock()
    store = TTLStore(10, clock=clock)
    store.set("old", 1)
    clock.advance(6)
    store.set("new", 2)
    clock.advance(5)
    assert store.purge_expired() == 1
    assert "new" in store and "old" not in store


def test_snapshot_cache_singleflight():
    calls = 0

    async def fetcher():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return {"linhasAndamento": []}

    async def run():
        cache = SnapshotCache(30)
        results = await asyncio.gather(*(cache.get(fetcher) for _ in range(10)))
        again = await cache.get(fetcher)
        return results, again

    results, again = asyncio.run(run())
    assert calls == 1
    assert all(r == {"linhasAndamento": []} for r in results)
    assert again == {"linhasAndamento": []}


def test_snapshot_cache_does_not_cache_failures():
    attempts = 0

    async def flaky():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise RuntimeError("upstream down")
        return {"ok": True}

    async def run():
        cache = SnapshotCache(30)
        with pytest.raises(RuntimeError):
            await cache.get(flaky)
        return await cache.get(flaky)

    assert asyncio.run(run()) == {"ok": True}
    assert attempts == 2


def test_snapshot_cache_expires():
    clock = FakeClock()
    calls = 0

    async def fetcher():
        nonlocal calls
        calls += 1
        return calls

    async def run():
        cache = SnapshotCache(30, clock=clock)
        first = await cache.get(fetcher)
        clock.advance(31)
        second = await cache.get(fetcher)
        return first, second

    assert asyncio.run(run()) == (1, 2)


def test_empty_store_is_truthy():
    store = PredictionCache(ttl=300, clock=FakeClock())
    assert len(store) == 0
    assert store
    assert (store or None) is store
