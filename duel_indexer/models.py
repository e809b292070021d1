from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .utils import _same_address, to_decimal


class DuelStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class EventRecord:
    """A decoded contract log."""

    event_name: str
    block_number: int
    transaction_hash: str
    log_index: int = 0
    address: Optional[str] = None
    args: Dict[str, Any] = field(default_factory=dict)
    removed: bool = False

    @property
    def duel_id(self) -> Optional[str]:
        value = self.args.get("duelId")
        return str(value) if value is not None else None


@dataclass
class Duel:
    """One duel as seen from chain events.

    `payout` is what the winner receives. `net_profit` is signed and taken from
    `current_player`'s side when one is set (payout or -wager); without a
    current player it is the winner's payout.
    """

    id: str
    player1: str
    player2: str
    wager: Decimal
    status: DuelStatus
    block_number: int
    transaction_hash: str
    winner: Optional[str] = None
    loser: Optional[str] = None
    net_profit: Decimal = Decimal(0)
    current_player: Optional[str] = None
    payout: Decimal = Decimal(0)

    def profit_for(self, address: str) -> Decimal:
        if self.status != DuelStatus.COMPLETED:
            return Decimal(0)
        if _same_address(address, self.winner):
            return self.payout
        if _same_address(address, self.loser):
            return -self.wager
        return Decimal(0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "player1": self.player1,
            "player2": self.player2,
            "wager": float(self.wager),
            "winner": self.winner,
            "loser": self.loser,
            "currentPlayer": self.current_player,
            "netProfit": float(self.net_profit),
            "payout": float(self.payout),
            "status": self.status.value,
            "timestamp": self.block_number,
            "transactionHash": self.transaction_hash,
            "blockNumber": self.block_number,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Duel":
        net_profit = to_decimal(data.get("netProfit"))
        if data.get("payout") is not None:
            payout = to_decimal(data["payout"])
        else:
            payout = net_profit if net_profit > 0 else Decimal(0)
        return cls(
            id=str(data["id"]),
            player1=data["player1"],
            player2=data["player2"],
            wager=to_decimal(data.get("wager")),
            status=DuelStatus(data.get("status", DuelStatus.PENDING.value)),
            block_number=int(data.get("blockNumber") or 0),
            transaction_hash=data.get("transactionHash") or "",
            winner=data.get("winner"),
            loser=data.get("loser"),
            net_profit=net_profit,
            current_player=data.get("currentPlayer"),
            payout=payout,
        )


@dataclass
class DuelPage:
    duels: List[Duel]
    has_more: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"duels": [d.to_dict() for d in self.duels], "hasMore": self.has_more}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DuelPage":
        return cls(
            duels=[Duel.from_dict(d) for d in data.get("duels") or []],
            has_more=bool(data.get("hasMore")),
        )


@dataclass
class WalletStats:
    address: str
    total_duels: int = 0
    wins: int = 0
    losses: int = 0
    total_wagered: Decimal = Decimal(0)
    total_eth_won: Decimal = Decimal(0)
    total_profit: Decimal = Decimal(0)
    net_profit: Decimal = Decimal(0)
    win_rate: str = "0.0"

    @classmethod
    def zero(cls, address: str) -> "WalletStats":
        return cls(address=address)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "totalDuels": self.total_duels,
            "wins": self.wins,
            "losses": self.losses,
            "totalWagered": float(self.total_wagered),
            "totalETHWon": float(self.total_eth_won),
            "totalProfit": float(self.total_profit),
            "netProfit": float(self.net_profit),
            "winRate": self.win_rate,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WalletStats":
        return cls(
            address=data["address"],
            total_duels=int(data.get("totalDuels") or 0),
            wins=int(data.get("wins") or 0),
            losses=int(data.get("losses") or 0),
            total_wagered=to_decimal(data.get("totalWagered")),
            total_eth_won=to_decimal(data.get("totalETHWon")),
            total_profit=to_decimal(data.get("totalProfit")),
            net_profit=to_decimal(data.get("netProfit")),
            win_rate=str(data.get("winRate") or "0.0"),
        )


@dataclass
class TransactionRecord:
    type: str
    type_class: str
    duel_id: str
    block_number: int
    transaction_hash: str
    description: str
    log_index: int = 0
    fields: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "type": self.type,
            "typeClass": self.type_class,
            "transactionHash": self.transaction_hash,
            "blockNumber": self.block_number,
            "duelId": self.duel_id,
            "description": self.description,
        }
        for key, value in self.fields.items():
            out[key] = float(value) if isinstance(value, Decimal) else value
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransactionRecord":
        known = {"type", "typeClass", "transactionHash", "blockNumber", "duelId", "description"}
        return cls(
            type=data["type"],
            type_class=data.get("typeClass", ""),
            duel_id=str(data.get("duelId")),
            block_number=int(data.get("blockNumber") or 0),
            transaction_hash=data.get("transactionHash") or "",
            description=data.get("description", ""),
            fields={k: v for k, v in data.items() if k not in known},
        )
