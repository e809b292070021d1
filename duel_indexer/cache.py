"""Per-kind TTL cache for reconstructed duel data.

Entries are wire-shaped (plain JSON values) so the whole cache can be written
to local storage and read back on the next start. ``liveFeed`` is a single
slot rather than a map: only the latest feed is kept.
"""

import asyncio
import json
import sqlite3
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .utils import _json_dumps, _log


class CacheKind(str, Enum):
    WALLET_STATS = "walletStats"
    DUEL_HISTORY = "duelHistory"
    LIVE_FEED = "liveFeed"
    DUEL_TRANSACTIONS = "duelTransactions"


STORAGE_KEYS = {
    CacheKind.WALLET_STATS: "duelWalletStatsCache",
    CacheKind.DUEL_HISTORY: "duelHistoryCache",
    CacheKind.LIVE_FEED: "duelLiveFeedCache",
    CacheKind.DUEL_TRANSACTIONS: "duelTransactionsCache",
}

MAP_KINDS = (CacheKind.WALLET_STATS, CacheKind.DUEL_HISTORY, CacheKind.DUEL_TRANSACTIONS)


class SqliteCacheStorage:
    """Key/value storage for persisted cache kinds."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS cache_store (
                name TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        self.conn.commit()

    def get_item(self, name: str) -> Optional[str]:
        row = self.conn.execute("SELECT value FROM cache_store WHERE name = ?", (name,)).fetchone()
        return row["value"] if row else None

    def set_items(self, items: Dict[str, str]) -> None:
        cur = self.conn.cursor()
        try:
            cur.executemany(
                "INSERT OR REPLACE INTO cache_store (name, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)",
                list(items.items()),
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def remove_items(self, names) -> None:
        self.conn.executemany("DELETE FROM cache_store WHERE name = ?", [(n,) for n in names])
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()


class CacheStore:
    def __init__(
        self,
        ttls: Dict[str, float],
        storage: Optional[SqliteCacheStorage] = None,
        clock: Callable[[], float] = time.time,
        persist_delay: float = 0.1,
    ):
        self.ttls = {CacheKind(kind): float(ttl) for kind, ttl in ttls.items()}
        self.storage = storage
        self.clock = clock
        self.persist_delay = persist_delay
        self._maps: Dict[CacheKind, Dict[str, Dict[str, Any]]] = {kind: {} for kind in MAP_KINDS}
        self._live_feed: Optional[Dict[str, Any]] = None
        self._persist_handle: Optional[asyncio.TimerHandle] = None

    def ttl(self, kind: CacheKind) -> float:
        return self.ttls[CacheKind(kind)]

    def _entry(self, kind: CacheKind, key: str) -> Optional[Dict[str, Any]]:
        if kind == CacheKind.LIVE_FEED:
            slot = self._live_feed
            if slot is None or slot.get("key") != key:
                return None
            return slot
        return self._maps[kind].get(key)

    def _expired(self, kind: CacheKind, entry: Dict[str, Any], now: float) -> bool:
        return now - entry["timestamp"] >= self.ttl(kind)

    def get(self, kind: CacheKind, key: str) -> Optional[Any]:
        kind = CacheKind(kind)
        entry = self._entry(kind, key)
        if entry is None or self._expired(kind, entry, self.clock()):
            return None
        return entry["data"]

    def set(self, kind: CacheKind, key: str, data: Any) -> None:
        kind = CacheKind(kind)
        self.prune()
        entry = {"data": data, "timestamp": self.clock()}
        if kind == CacheKind.LIVE_FEED:
            self._live_feed = dict(entry, key=key)
        else:
            self._maps[kind][key] = entry
        self._schedule_persist()

    def prune(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self.clock()
        removed = 0
        for kind, entries in self._maps.items():
            for key in [k for k, entry in entries.items() if self._expired(kind, entry, now)]:
                del entries[key]
                removed += 1
        if self._live_feed is not None and self._expired(CacheKind.LIVE_FEED, self._live_feed, now):
            self._live_feed = None
            removed += 1
        return removed

    def invalidate(self, kind: CacheKind, key: Optional[str] = None) -> None:
        kind = CacheKind(kind)
        if kind == CacheKind.LIVE_FEED:
            self._live_feed = None
        elif key is None:
            self._maps[kind].clear()
        else:
            entries = self._maps[kind]
            entries.pop(key, None)
            if kind == CacheKind.DUEL_HISTORY:
                for cache_key in [k for k in entries if k.startswith(key)]:
                    del entries[cache_key]
        self._schedule_persist()

    def __len__(self) -> int:
        return sum(len(m) for m in self._maps.values()) + (1 if self._live_feed else 0)

    def load(self) -> None:
        if self.storage is None:
            return
        try:
            maps: Dict[CacheKind, Dict[str, Dict[str, Any]]] = {kind: {} for kind in MAP_KINDS}
            for kind in MAP_KINDS:
                raw = self.storage.get_item(STORAGE_KEYS[kind])
                if raw is None:
                    continue
                parsed = json.loads(raw)
                for key, entry in parsed.items():
                    maps[kind][key] = {"data": entry["data"], "timestamp": float(entry["timestamp"])}

            live_feed = None
            raw = self.storage.get_item(STORAGE_KEYS[CacheKind.LIVE_FEED])
            if raw is not None:
                live_feed = json.loads(raw)
                if live_feed is not None:
                    live_feed = {
                        "key": str(live_feed["key"]),
                        "data": live_feed["data"],
                        "timestamp": float(live_feed["timestamp"]),
                    }
        except Exception as exc:
            _log(f"WARN: Discarding persisted cache, failed to load: {exc}")
            self._wipe_storage()
            return

        self._maps = maps
        self._live_feed = live_feed
        self.prune()
        _log(f"Cache loaded from {self.storage.db_path} ({len(self)} entries)")

    def _wipe_storage(self) -> None:
        try:
            self.storage.remove_items(STORAGE_KEYS.values())
        except Exception as exc:
            _log(f"WARN: Failed to wipe persisted cache: {exc}")

    def _schedule_persist(self) -> None:
        if self.storage is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.persist()
            return
        if self._persist_handle is None:
            self._persist_handle = loop.call_later(self.persist_delay, self.persist)

    def persist(self) -> None:
        self._persist_handle = None
        if self.storage is None:
            return
        self.prune()
        try:
            items = {STORAGE_KEYS[kind]: _json_dumps(self._maps[kind]) for kind in MAP_KINDS}
            items[STORAGE_KEYS[CacheKind.LIVE_FEED]] = _json_dumps(self._live_feed)
            self.storage.set_items(items)
        except Exception as exc:
            _log(f"WARN: Error saving cache: {exc}")

    def flush(self) -> None:
        if self._persist_handle is not None:
            self._persist_handle.cancel()
        self.persist()

    def close(self) -> None:
        self.flush()
        if self.storage is not None:
            self.storage.close()
            self.storage = None
