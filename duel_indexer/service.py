"""Duel query service.

Every read goes cache -> delegate API (when the session probe found one) ->
direct chain reconstruction, and the answer is cached on the way out. Empty
and zero answers are cached as well so known-absent data is not rescanned
until it expires.
"""

from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from .abis import load_abi
from .cache import CacheKind, CacheStore, SqliteCacheStorage
from .config import BATTLE_CONTRACT, ESCROW_CONTRACT, ConfigError, TrackerConfig
from .events import EventLogClient
from .live import EventBus, LiveEventKind, LogSubscriber, SubscriptionLostPayload, payload_for
from .models import Duel, DuelPage, EventRecord, TransactionRecord, WalletStats
from .reconstruct import DUEL_COMPLETED, DUEL_INITIATED, DUEL_JOINED, DUEL_NULLIFIED, PROCEEDS_CLAIMED
from .sources import ChainSource, DelegateError, DelegateSource, DuelDataSource
from .utils import _log, _parse_int, _to_checksum

T = TypeVar("T")


class DuelQueryService:
    def __init__(
        self,
        config: TrackerConfig,
        client: Any,
        cache: Optional[CacheStore] = None,
        delegate: Optional[DelegateSource] = None,
        bus: Optional[EventBus] = None,
    ):
        self.config = config
        self.client = client
        self.cache = cache or CacheStore(config.cache_ttl)
        self.delegate = delegate
        self.bus = bus or EventBus()
        self.fee_fraction = Decimal(str(config.fee_fraction))
        self.chain = ChainSource(
            client,
            config.fee_fraction,
            block_window=config.block_window,
            start_block=config.start_block,
        )
        self.use_delegate = False
        self._subscriber: Optional[LogSubscriber] = None

    @classmethod
    def from_config(cls, config: TrackerConfig, use_delegate: bool = True) -> "DuelQueryService":
        if not config.rpc_http:
            raise ConfigError("rpc_http is required")
        battle = config.contract(BATTLE_CONTRACT)
        if battle is None:
            raise ConfigError(f"contracts.{BATTLE_CONTRACT} is required")

        client = EventLogClient.from_url(
            config.rpc_http, timeout=config.rpc_timeout, batch_size=config.log_batch_size
        )
        client.register_contract(battle.name, battle.address, load_abi(battle.name, battle.abi, config.abi_dir))
        escrow = config.contract(ESCROW_CONTRACT)
        if escrow is not None:
            client.register_contract(escrow.name, escrow.address, load_abi(escrow.name, escrow.abi, config.abi_dir))

        storage = SqliteCacheStorage(config.db_path) if config.db_path else None
        cache = CacheStore(config.cache_ttl, storage=storage)
        delegate = None
        if use_delegate and config.delegate_enabled and config.delegate_url:
            delegate = DelegateSource(config.delegate_url, timeout=config.delegate_timeout)
        return cls(config, client, cache=cache, delegate=delegate)

    async def initialize(self) -> None:
        self.cache.load()
        if self.config.chain_id is not None:
            try:
                chain_id = await self.client.get_chain_id()
                if chain_id != self.config.chain_id:
                    _log(f"WARN: RPC reports chain id {chain_id}, expected {self.config.chain_id}")
            except Exception as exc:
                _log(f"WARN: Could not read chain id: {exc}")
        if self.delegate is not None:
            self.use_delegate = await self.delegate.probe()

    async def close(self) -> None:
        if self._subscriber is not None:
            self._subscriber.stop()
        self.cache.close()
        if self.delegate is not None:
            await self.delegate.close()
        await self.client.close()

    async def _fetch(self, fetch: Callable[[DuelDataSource], Awaitable[T]]) -> T:
        if self.use_delegate and self.delegate is not None:
            try:
                return await fetch(self.delegate)
            except DelegateError as exc:
                _log(f"Delegate API error, falling back to direct chain query: {exc}")
        return await fetch(self.chain)

    async def get_wallet_stats(self, address: str) -> WalletStats:
        address = _to_checksum(address)
        cached = self.cache.get(CacheKind.WALLET_STATS, address)
        if cached is not None:
            _log(f"Using cached wallet stats for {address}")
            return WalletStats.from_dict(cached)

        try:
            stats = await self._fetch(lambda source: source.wallet_stats(address))
        except Exception as exc:
            _log(f"No stats found for wallet {address} or contract error: {exc}")
            stats = WalletStats.zero(address)
        self.cache.set(CacheKind.WALLET_STATS, address, stats.to_dict())
        return stats

    async def get_duel_history(self, address: str, limit: int = 50, page: int = 1) -> DuelPage:
        address = _to_checksum(address)
        if limit < 1 or page < 1:
            raise ValueError("limit and page must be >= 1")
        cache_key = f"{address}-{limit}-{page}"
        cached = self.cache.get(CacheKind.DUEL_HISTORY, cache_key)
        if cached is not None:
            _log(f"Using cached duel history for {address} (page {page})")
            return DuelPage.from_dict(cached)

        try:
            result = await self._fetch(lambda source: source.duel_history(address, limit, page))
        except Exception as exc:
            _log(f"Error fetching duel history for {address} or no history found: {exc}")
            result = DuelPage(duels=[], has_more=False)
        self.cache.set(CacheKind.DUEL_HISTORY, cache_key, result.to_dict())
        return result

    async def get_recent_duel_activity(self, limit: int = 20) -> List[Duel]:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        cache_key = f"liveFeed-{limit}"
        cached = self.cache.get(CacheKind.LIVE_FEED, cache_key)
        if cached is not None:
            _log("Using cached live feed data")
            return [Duel.from_dict(d) for d in cached]

        try:
            duels = await self._fetch(lambda source: source.live_feed(limit))
        except Exception as exc:
            _log(f"Error fetching duel activity: {exc}")
            return []
        self.cache.set(CacheKind.LIVE_FEED, cache_key, [d.to_dict() for d in duels])
        return duels

    async def get_duel_transactions(self, duel_id: Any) -> List[TransactionRecord]:
        duel_id = str(_parse_int(duel_id))
        cached = self.cache.get(CacheKind.DUEL_TRANSACTIONS, duel_id)
        if cached is not None:
            _log(f"Using cached transactions for duel {duel_id}")
            return [TransactionRecord.from_dict(t) for t in cached]

        try:
            transactions = await self._fetch(lambda source: source.duel_transactions(duel_id))
        except Exception as exc:
            _log(f"Error fetching transactions for duel {duel_id}: {exc}")
            return []
        self.cache.set(CacheKind.DUEL_TRANSACTIONS, duel_id, [t.to_dict() for t in transactions])
        return transactions

    async def get_ecosystem_stats(self) -> Dict[str, Any]:
        try:
            return await self.chain.ecosystem_stats()
        except Exception as exc:
            _log(f"Error fetching ecosystem stats: {exc}")
            return {"totalFees": Decimal(0)}

    def subscribe(self, kind: LiveEventKind, callback: Callable[[Any], Any]) -> Callable[[], None]:
        return self.bus.subscribe(kind, callback)

    def invalidate_for(self, record: EventRecord) -> None:
        """Drop every cache entry the event could have changed."""
        args = record.args
        name = record.event_name
        duel_id = record.duel_id

        def history(*addresses: Optional[str]) -> None:
            for addr in addresses:
                if addr:
                    self.cache.invalidate(CacheKind.DUEL_HISTORY, _to_checksum(addr))

        def stats(*addresses: Optional[str]) -> None:
            for addr in addresses:
                if addr:
                    self.cache.invalidate(CacheKind.WALLET_STATS, _to_checksum(addr))

        self.cache.invalidate(CacheKind.LIVE_FEED)
        if duel_id is not None:
            self.cache.invalidate(CacheKind.DUEL_TRANSACTIONS, duel_id)
        if name == DUEL_INITIATED:
            history(args.get("player1"), args.get("player2"))
        elif name == DUEL_COMPLETED:
            history(args.get("winner"), args.get("loser"))
            stats(args.get("winner"), args.get("loser"))
        elif name in (DUEL_JOINED, DUEL_NULLIFIED, PROCEEDS_CLAIMED):
            # counterparty is not in the event
            self.cache.invalidate(CacheKind.DUEL_HISTORY)
            if name == PROCEEDS_CLAIMED:
                stats(args.get("winner"))

    async def handle_live_event(self, record: EventRecord) -> None:
        _log(f"{record.event_name}: duel {record.duel_id} (block {record.block_number})")
        self.invalidate_for(record)
        if record.removed:
            _log(f"WARN: {record.event_name} for duel {record.duel_id} removed by reorg")
            return
        normalized = payload_for(record, self.fee_fraction)
        if normalized is not None:
            kind, payload = normalized
            await self.bus.publish(kind, payload)

    async def handle_raw_log(self, log: Dict[str, Any]) -> None:
        record = self.client.decode_log(log)
        if record is not None:
            await self.handle_live_event(record)

    async def _on_disconnect(self, exc: Exception, reconnect_in: float) -> None:
        await self.bus.publish(
            LiveEventKind.SUBSCRIPTION_LOST,
            SubscriptionLostPayload(reason=str(exc) or exc.__class__.__name__, reconnect_in=reconnect_in),
        )

    async def watch(self) -> None:
        if not self.config.rpc_ws:
            raise ConfigError("rpc_ws is required for live events")
        battle = self.client.contract(BATTLE_CONTRACT)
        self._subscriber = LogSubscriber(
            self.config.rpc_ws,
            [battle.address],
            on_log=self.handle_raw_log,
            on_disconnect=self._on_disconnect,
            reconnect_delay=self.config.reconnect_delay,
        )
        await self._subscriber.run()
