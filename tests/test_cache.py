import asyncio

import pytest

from duel_indexer.cache import STORAGE_KEYS, CacheKind, CacheStore, SqliteCacheStorage
from duel_indexer.config import DEFAULT_CACHE_TTL


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return CacheStore(DEFAULT_CACHE_TTL, clock=clock)


def test_entry_expires_at_ttl(cache, clock):
    cache.set(CacheKind.WALLET_STATS, "0xabc", {"wins": 1})
    clock.now += 299
    assert cache.get(CacheKind.WALLET_STATS, "0xabc") == {"wins": 1}
    clock.now += 1
    assert cache.get(CacheKind.WALLET_STATS, "0xabc") is None


def test_each_kind_has_its_own_ttl(cache, clock):
    cache.set(CacheKind.DUEL_HISTORY, "k", [])
    cache.set(CacheKind.DUEL_TRANSACTIONS, "5", [])
    clock.now += 121
    assert cache.get(CacheKind.DUEL_HISTORY, "k") is None
    assert cache.get(CacheKind.DUEL_TRANSACTIONS, "5") == []


def test_live_feed_is_a_single_slot(cache):
    cache.set(CacheKind.LIVE_FEED, "liveFeed-20", ["a"])
    cache.set(CacheKind.LIVE_FEED, "liveFeed-5", ["b"])
    assert cache.get(CacheKind.LIVE_FEED, "liveFeed-20") is None
    assert cache.get(CacheKind.LIVE_FEED, "liveFeed-5") == ["b"]
    cache.invalidate(CacheKind.LIVE_FEED, "anything")
    assert cache.get(CacheKind.LIVE_FEED, "liveFeed-5") is None


def test_history_invalidation_removes_every_page_of_an_address(cache):
    for key in ("0xAlice-50-1", "0xAlice-50-2", "0xAlice-10-1", "0xBob-50-1"):
        cache.set(CacheKind.DUEL_HISTORY, key, {"duels": []})
    cache.invalidate(CacheKind.DUEL_HISTORY, "0xAlice")
    assert cache.get(CacheKind.DUEL_HISTORY, "0xAlice-50-1") is None
    assert cache.get(CacheKind.DUEL_HISTORY, "0xAlice-10-1") is None
    assert cache.get(CacheKind.DUEL_HISTORY, "0xBob-50-1") == {"duels": []}


def test_stats_invalidation_is_exact_key(cache):
    cache.set(CacheKind.WALLET_STATS, "0xAlice", {})
    cache.set(CacheKind.WALLET_STATS, "0xAlice2", {})
    cache.invalidate(CacheKind.WALLET_STATS, "0xAlice")
    assert cache.get(CacheKind.WALLET_STATS, "0xAlice2") == {}


def test_invalidate_without_key_clears_kind(cache):
    cache.set(CacheKind.DUEL_TRANSACTIONS, "1", [])
    cache.set(CacheKind.DUEL_TRANSACTIONS, "2", [])
    cache.set(CacheKind.WALLET_STATS, "0xAlice", {})
    cache.invalidate(CacheKind.DUEL_TRANSACTIONS)
    assert len(cache) == 1


def test_cache_survives_restart(tmp_path, clock):
    db_path = str(tmp_path / "cache.db")
    first = CacheStore(DEFAULT_CACHE_TTL, storage=SqliteCacheStorage(db_path), clock=clock)
    first.set(CacheKind.WALLET_STATS, "0xAlice", {"wins": 3})
    first.set(CacheKind.LIVE_FEED, "liveFeed-20", [{"id": "1"}])
    first.flush()
    first.storage.close()

    second = CacheStore(DEFAULT_CACHE_TTL, storage=SqliteCacheStorage(db_path), clock=clock)
    second.load()
    assert second.get(CacheKind.WALLET_STATS, "0xAlice") == {"wins": 3}
    assert second.get(CacheKind.LIVE_FEED, "liveFeed-20") == [{"id": "1"}]
    clock.now += 31
    assert second.get(CacheKind.LIVE_FEED, "liveFeed-20") is None


def test_corrupt_storage_is_discarded(tmp_path, clock, capsys):
    storage = SqliteCacheStorage(str(tmp_path / "cache.db"))
    storage.set_items({STORAGE_KEYS[CacheKind.DUEL_HISTORY]: "{not json"})
    cache = CacheStore(DEFAULT_CACHE_TTL, storage=storage, clock=clock)
    cache.load()
    assert len(cache) == 0
    assert storage.get_item(STORAGE_KEYS[CacheKind.DUEL_HISTORY]) is None
    assert "WARN" in capsys.readouterr().err


def test_writes_are_coalesced_inside_event_loop(tmp_path, clock):
    class CountingStorage(SqliteCacheStorage):
        writes = 0

        def set_items(self, items):
            CountingStorage.writes += 1
            super().set_items(items)

    storage = CountingStorage(str(tmp_path / "cache.db"))
    cache = CacheStore(DEFAULT_CACHE_TTL, storage=storage, clock=clock, persist_delay=0.01)

    async def scenario():
        cache.set(CacheKind.WALLET_STATS, "a", {})
        cache.set(CacheKind.WALLET_STATS, "b", {})
        cache.invalidate(CacheKind.LIVE_FEED)
        await asyncio.sleep(0.05)

    asyncio.run(scenario())
    assert CountingStorage.writes == 1
    assert '"b"' in storage.get_item(STORAGE_KEYS[CacheKind.WALLET_STATS])


def test_storage_failure_does_not_break_writes(clock, capsys):
    class BrokenStorage:
        db_path = ":broken:"

        def set_items(self, items):
            raise OSError("disk full")

    cache = CacheStore(DEFAULT_CACHE_TTL, storage=BrokenStorage(), clock=clock)
    cache.set(CacheKind.WALLET_STATS, "a", {"wins": 0})
    assert cache.get(CacheKind.WALLET_STATS, "a") == {"wins": 0}
    assert "Error saving cache" in capsys.readouterr().err


def test_expired_entries_are_dropped_on_write(cache, clock):
    for page in range(1000):
        cache.set(CacheKind.DUEL_HISTORY, f"0xAlice-50-{page}", {"duels": []})
    cache.set(CacheKind.LIVE_FEED, "liveFeed-20", [])
    clock.now += 600
    cache.set(CacheKind.WALLET_STATS, "0xBob", {"wins": 0})
    assert len(cache) == 1


def test_expired_entries_are_not_persisted(tmp_path, clock):
    storage = SqliteCacheStorage(str(tmp_path / "cache.db"))
    cache = CacheStore(DEFAULT_CACHE_TTL, storage=storage, clock=clock)
    cache.set(CacheKind.DUEL_HISTORY, "0xAlice-50-1", {"duels": []})
    cache.set(CacheKind.DUEL_TRANSACTIONS, "9", [])
    clock.now += 121
    cache.flush()
    assert storage.get_item(STORAGE_KEYS[CacheKind.DUEL_HISTORY]) == "{}"
    assert '"9"' in storage.get_item(STORAGE_KEYS[CacheKind.DUEL_TRANSACTIONS])
