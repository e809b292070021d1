"""Live duel events: typed payloads, observer bus and the websocket log feed."""

import asyncio
import inspect
import json
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import websockets

from .models import DuelStatus, EventRecord
from .reconstruct import DUEL_COMPLETED, DUEL_INITIATED, DUEL_JOINED, DUEL_NULLIFIED, PROCEEDS_CLAIMED
from .utils import _log, wei_to_eth


class LiveEventKind(str, Enum):
    DUEL_INITIATED = "duelInitiated"
    DUEL_JOINED = "duelJoined"
    DUEL_COMPLETED = "duelCompleted"
    DUEL_NULLIFIED = "duelNullified"
    PROCEEDS_CLAIMED = "proceedsClaimed"
    SUBSCRIPTION_LOST = "subscriptionLost"


@dataclass
class DuelInitiatedPayload:
    duel_id: str
    player1: str
    player2: str
    wager: Decimal
    status: DuelStatus = DuelStatus.PENDING
    block_number: int = 0
    transaction_hash: str = ""


@dataclass
class DuelJoinedPayload:
    duel_id: str
    player2: str
    status: DuelStatus = DuelStatus.ACTIVE
    block_number: int = 0
    transaction_hash: str = ""


@dataclass
class DuelCompletedPayload:
    duel_id: str
    winner: str
    loser: str
    total_winnings: Decimal
    fee: Decimal
    net_profit: Decimal
    status: DuelStatus = DuelStatus.COMPLETED
    block_number: int = 0
    transaction_hash: str = ""


@dataclass
class DuelNullifiedPayload:
    duel_id: str
    player: str
    refund_amount: Decimal
    status: DuelStatus = DuelStatus.CANCELLED
    block_number: int = 0
    transaction_hash: str = ""


@dataclass
class ProceedsClaimedPayload:
    duel_id: str
    winner: str
    amount: Decimal
    fee: Decimal
    block_number: int = 0
    transaction_hash: str = ""


@dataclass
class SubscriptionLostPayload:
    reason: str
    reconnect_in: float


def payload_for(record: EventRecord, fee_fraction: Decimal) -> Optional[Tuple[LiveEventKind, Any]]:
    """Normalize a decoded battle event into its observer payload."""
    args = record.args
    where = {"block_number": record.block_number, "transaction_hash": record.transaction_hash}
    name = record.event_name
    if name == DUEL_INITIATED:
        return LiveEventKind.DUEL_INITIATED, DuelInitiatedPayload(
            duel_id=record.duel_id,
            player1=args.get("player1"),
            player2=args.get("player2"),
            wager=wei_to_eth(args.get("wager")),
            **where,
        )
    if name == DUEL_JOINED:
        return LiveEventKind.DUEL_JOINED, DuelJoinedPayload(
            duel_id=record.duel_id, player2=args.get("player2"), **where
        )
    if name == DUEL_COMPLETED:
        total_winnings = wei_to_eth(args.get("totalWinnings"))
        return LiveEventKind.DUEL_COMPLETED, DuelCompletedPayload(
            duel_id=record.duel_id,
            winner=args.get("winner"),
            loser=args.get("loser"),
            total_winnings=total_winnings,
            fee=wei_to_eth(args.get("fee")),
            net_profit=total_winnings * (1 - fee_fraction),
            **where,
        )
    if name == DUEL_NULLIFIED:
        return LiveEventKind.DUEL_NULLIFIED, DuelNullifiedPayload(
            duel_id=record.duel_id,
            player=args.get("player"),
            refund_amount=wei_to_eth(args.get("refundAmount")),
            **where,
        )
    if name == PROCEEDS_CLAIMED:
        return LiveEventKind.PROCEEDS_CLAIMED, ProceedsClaimedPayload(
            duel_id=record.duel_id,
            winner=args.get("winner"),
            amount=wei_to_eth(args.get("amount")),
            fee=wei_to_eth(args.get("fee")),
            **where,
        )
    return None


Observer = Callable[[Any], Any]


class EventBus:
    def __init__(self):
        self._observers: Dict[LiveEventKind, List[Observer]] = defaultdict(list)

    def subscribe(self, kind: LiveEventKind, callback: Observer) -> Callable[[], None]:
        kind = LiveEventKind(kind)
        self._observers[kind].append(callback)

        def _unsubscribe() -> None:
            self.unsubscribe(kind, callback)

        return _unsubscribe

    def unsubscribe(self, kind: LiveEventKind, callback: Observer) -> None:
        observers = self._observers.get(LiveEventKind(kind), [])
        if callback in observers:
            observers.remove(callback)

    async def publish(self, kind: LiveEventKind, payload: Any) -> int:
        """Deliver to every observer of `kind`; returns how many succeeded."""
        delivered = 0
        for callback in list(self._observers.get(kind, [])):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as exc:
                _log(f"WARN: Observer {getattr(callback, '__name__', callback)!s} failed on {kind.value}: {exc}")
        return delivered


class LogSubscriber:
    """Streams contract logs over a websocket ``eth_subscribe`` feed.

    Each raw log goes to `on_log`. When the connection drops, `on_disconnect`
    is told why and how long until the next attempt; reconnects back off
    exponentially up to `max_backoff` seconds.
    """

    def __init__(
        self,
        rpc_ws: str,
        addresses: List[str],
        on_log: Callable[[Dict[str, Any]], Awaitable[None]],
        on_disconnect: Callable[[Exception, float], Awaitable[None]],
        reconnect_delay: int = 5,
        max_backoff: int = 60,
    ):
        self.rpc_ws = rpc_ws
        self.addresses = addresses
        self.on_log = on_log
        self.on_disconnect = on_disconnect
        self.reconnect_delay = max(reconnect_delay, 1)
        self.max_backoff = max_backoff
        self._ws_id = 0
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        backoff = self.reconnect_delay
        while not self._stop.is_set():
            try:
                async with websockets.connect(self.rpc_ws, ping_interval=20, ping_timeout=20) as ws:
                    _log("Websocket connected, subscribing to logs...")
                    sub_id = await self._subscribe(ws)
                    _log(f"Subscribed: {sub_id}")
                    backoff = self.reconnect_delay

                    async for message in ws:
                        if self._stop.is_set():
                            return
                        await self._dispatch(json.loads(message))
                raise ConnectionError("websocket closed by peer")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if self._stop.is_set():
                    return
                _log(f"Websocket error: {exc}")
                await self.on_disconnect(exc, backoff)
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=backoff)
                except asyncio.TimeoutError:
                    pass
                backoff = min(backoff * 2, self.max_backoff)

    async def _subscribe(self, ws: Any) -> str:
        self._ws_id += 1
        req_id = self._ws_id
        payload = {
            "jsonrpc": "2.0",
            "id": req_id,
            "method": "eth_subscribe",
            "params": ["logs", {"address": self.addresses}],
        }
        await ws.send(json.dumps(payload))

        while True:
            data = json.loads(await ws.recv())
            if data.get("id") == req_id:
                if "result" in data:
                    return data["result"]
                raise RuntimeError(f"Subscribe failed: {data}")
            await self._dispatch(data)

    async def _dispatch(self, payload: Dict[str, Any]) -> None:
        if payload.get("method") == "eth_subscription":
            log = payload.get("params", {}).get("result")
            if log:
                await self.on_log(log)
        elif payload.get("id") is not None and payload.get("error"):
            _log(f"WS error: {payload}")
