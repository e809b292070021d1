"""Where duel data comes from.

Two tiers share one interface so the query service can swap them freely:
`DelegateSource` asks a remote tracker API, `ChainSource` reconstructs the same
shapes directly from contract events. Both raise on failure; fallbacks are the
service's job.
"""

import abc
import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from .config import BATTLE_CONTRACT, ESCROW_CONTRACT
from .models import Duel, DuelPage, TransactionRecord, WalletStats
from .reconstruct import (
    BATTLE_EVENTS,
    DUEL_COMPLETED,
    DUEL_INITIATED,
    DUEL_JOINED,
    DUEL_NULLIFIED,
    ESCROW_EVENTS,
    PROCEEDS_CLAIMED,
    DuelReconstructor,
    to_transactions,
)
from .utils import _log, _parse_int, wei_to_eth


class DelegateError(Exception):
    pass


class DuelDataSource(abc.ABC):
    name = "source"

    @abc.abstractmethod
    async def wallet_stats(self, address: str) -> WalletStats:
        ...

    @abc.abstractmethod
    async def duel_history(self, address: str, limit: int, page: int) -> DuelPage:
        ...

    @abc.abstractmethod
    async def live_feed(self, limit: int) -> List[Duel]:
        ...

    @abc.abstractmethod
    async def duel_transactions(self, duel_id: str) -> List[TransactionRecord]:
        ...


def history_window(latest: int, page: int, window: int) -> Optional[Tuple[int, int]]:
    """Block range for a history page; page 1 ends at the chain head.

    Returns None once the page lies entirely before genesis.
    """
    if page < 1:
        raise ValueError("page must be >= 1")
    if page == 1:
        return max(0, latest - window), latest
    end = latest - window * (page - 1) - 1
    if end < 0:
        return None
    return max(0, end - window + 1), end


class ChainSource(DuelDataSource):
    name = "chain"

    def __init__(self, client: Any, fee_fraction: float, block_window: int = 10000, start_block: int = 0):
        self.client = client
        self.fee_fraction = Decimal(str(fee_fraction))
        self.block_window = block_window
        self.start_block = start_block
        self.reconstructor = DuelReconstructor(fee_fraction)

    def build_wallet_stats(
        self, address: str, total_duels: int, wins: int, total_wagered_wei: int, total_profit_wei: int
    ) -> WalletStats:
        total_duels = _parse_int(total_duels or 0)
        wins = _parse_int(wins or 0)
        total_profit = wei_to_eth(total_profit_wei)
        win_rate = f"{wins / total_duels * 100:.1f}" if total_duels > 0 else "0.0"
        return WalletStats(
            address=address,
            total_duels=total_duels,
            wins=wins,
            losses=total_duels - wins,
            total_wagered=wei_to_eth(total_wagered_wei),
            total_eth_won=total_profit,
            total_profit=total_profit,
            net_profit=total_profit * (1 - self.fee_fraction),
            win_rate=win_rate,
        )

    async def wallet_stats(self, address: str) -> WalletStats:
        total_duels, wins, total_wagered, total_profit = await self.client.call(
            BATTLE_CONTRACT, "getPlayerStats", address
        )
        return self.build_wallet_stats(address, total_duels, wins, total_wagered, total_profit)

    async def duel_history(self, address: str, limit: int, page: int) -> DuelPage:
        latest = await self.client.get_block_number()
        window = history_window(latest, page, self.block_window)
        if window is None:
            return DuelPage(duels=[], has_more=False)
        start, end = window
        _log(f"Querying blocks {start} to {end} for wallet {address}")

        query = self.client.query_events
        as_player1, as_player2, joined, completed, nullified, claimed = await asyncio.gather(
            query(BATTLE_CONTRACT, DUEL_INITIATED, {"player1": address}, start, end),
            query(BATTLE_CONTRACT, DUEL_INITIATED, {"player2": address}, start, end),
            query(BATTLE_CONTRACT, DUEL_JOINED, None, start, latest),
            query(BATTLE_CONTRACT, DUEL_COMPLETED, None, start, latest),
            query(BATTLE_CONTRACT, DUEL_NULLIFIED, None, start, latest),
            query(BATTLE_CONTRACT, PROCEEDS_CLAIMED, None, start, latest),
        )
        initiated = list(as_player1) + list(as_player2)
        if not initiated:
            return DuelPage(duels=[], has_more=False)

        duels = self.reconstructor.reconstruct(
            initiated, joined, completed, nullified, claimed, current_player=address
        )
        return self.reconstructor.paginate(duels, limit)

    async def live_feed(self, limit: int) -> List[Duel]:
        latest = await self.client.get_block_number()
        from_block = max(0, latest - self.block_window)

        query = self.client.query_events
        initiated, joined, completed, nullified, claimed = await asyncio.gather(
            *(query(BATTLE_CONTRACT, name, None, from_block, latest) for name in BATTLE_EVENTS)
        )
        duels = self.reconstructor.reconstruct(initiated, joined, completed, nullified, claimed)
        return duels[:limit]

    async def duel_transactions(self, duel_id: str) -> List[TransactionRecord]:
        scope = {"duelId": _parse_int(duel_id)}
        query = self.client.query_events
        queries = [query(BATTLE_CONTRACT, name, scope, self.start_block, "latest") for name in BATTLE_EVENTS]
        if self.client.has_contract(ESCROW_CONTRACT):
            queries.extend(
                query(ESCROW_CONTRACT, name, scope, self.start_block, "latest") for name in ESCROW_EVENTS
            )
        results = await asyncio.gather(*queries)
        return to_transactions(event for events in results for event in events)

    async def ecosystem_stats(self) -> Dict[str, Any]:
        total_fees = await self.client.call(ESCROW_CONTRACT, "getTotalFees")
        return {"totalFees": wei_to_eth(total_fees)}


class DelegateSource(DuelDataSource):
    name = "delegate"

    def __init__(self, base_url: str, timeout: float = 10, session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        session = await self._get_session()
        try:
            async with session.get(url, params=params, headers={"Accept": "application/json"}) as resp:
                if resp.status != 200:
                    raise DelegateError(f"{url} returned HTTP {resp.status}")
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise DelegateError(f"{url} failed: {exc}") from exc

    async def probe(self) -> bool:
        try:
            await self._get_json("/live-feed", {"limit": 1})
        except DelegateError as exc:
            _log(f"Delegate API not available, using direct chain queries ({exc})")
            return False
        _log(f"Delegate API available at {self.base_url}")
        return True

    @staticmethod
    def _parse(parser, body: Any) -> Any:
        try:
            return parser(body)
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            raise DelegateError(f"Unexpected delegate response: {exc}") from exc

    async def wallet_stats(self, address: str) -> WalletStats:
        body = await self._get_json(f"/wallet/{address}")
        return self._parse(WalletStats.from_dict, body)

    async def duel_history(self, address: str, limit: int, page: int) -> DuelPage:
        body = await self._get_json(f"/duels/{address}", {"limit": limit, "page": page})
        return self._parse(DuelPage.from_dict, body)

    async def live_feed(self, limit: int) -> List[Duel]:
        body = await self._get_json("/live-feed", {"limit": limit})
        return self._parse(lambda b: [Duel.from_dict(d) for d in b], body)

    async def duel_transactions(self, duel_id: str) -> List[TransactionRecord]:
        body = await self._get_json(f"/duel/{duel_id}/transactions")
        return self._parse(lambda b: [TransactionRecord.from_dict(t) for t in b], body)
