"""Duel state reconstruction from contract events.

A duel exists once its initiation event is seen. Every other event kind is
indexed by duel id and consulted in state-machine order: a nullification is
terminal and wins over everything, a join moves the duel to active, and a
completion only counts once the duel was joined.
"""

from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Set

from .models import Duel, DuelPage, DuelStatus, EventRecord, TransactionRecord
from .utils import _log, format_address, format_eth, wei_to_eth


DUEL_INITIATED = "DuelInitiated"
DUEL_JOINED = "DuelJoined"
DUEL_COMPLETED = "DuelCompleted"
DUEL_NULLIFIED = "DuelNullified"
PROCEEDS_CLAIMED = "ProceedsClaimed"

FUNDS_ESCROWED = "FundsEscrowed"
FUNDS_RELEASED = "FundsReleased"
FEE_COLLECTED = "FeeCollected"

BATTLE_EVENTS = (DUEL_INITIATED, DUEL_JOINED, DUEL_COMPLETED, DUEL_NULLIFIED, PROCEEDS_CLAIMED)
ESCROW_EVENTS = (FUNDS_ESCROWED, FUNDS_RELEASED, FEE_COLLECTED)


def index_by_duel(records: Iterable[EventRecord]) -> Dict[str, EventRecord]:
    out: Dict[str, EventRecord] = {}
    for record in records:
        duel_id = record.duel_id
        if duel_id is not None:
            out[duel_id] = record
    return out


class DuelReconstructor:
    def __init__(self, fee_fraction: float):
        self.fee_fraction = Decimal(str(fee_fraction))

    def winner_payout(self, wager: Decimal) -> Decimal:
        return wager * 2 * (1 - self.fee_fraction)

    def reconstruct(
        self,
        initiated: Iterable[EventRecord],
        joined: Iterable[EventRecord] = (),
        completed: Iterable[EventRecord] = (),
        nullified: Iterable[EventRecord] = (),
        claimed: Iterable[EventRecord] = (),
        current_player: Optional[str] = None,
    ) -> List[Duel]:
        """Build one `Duel` per initiation event, newest first."""
        joined_by_id = index_by_duel(joined)
        completed_by_id = index_by_duel(completed)
        nullified_by_id = index_by_duel(nullified)
        claimed_by_id = index_by_duel(claimed)

        ordered = sorted(initiated, key=lambda r: (r.block_number, r.log_index), reverse=True)
        duels: List[Duel] = []
        seen: Set[str] = set()
        for event in ordered:
            duel_id = event.duel_id
            if duel_id is None or duel_id in seen:
                continue
            seen.add(duel_id)
            duels.append(
                self._build(
                    event,
                    joined_by_id.get(duel_id),
                    completed_by_id.get(duel_id),
                    nullified_by_id.get(duel_id),
                    claimed_by_id.get(duel_id),
                    current_player,
                )
            )
        return duels

    def _build(
        self,
        event: EventRecord,
        joined: Optional[EventRecord],
        completed: Optional[EventRecord],
        nullified: Optional[EventRecord],
        claimed: Optional[EventRecord],
        current_player: Optional[str],
    ) -> Duel:
        args = event.args
        duel = Duel(
            id=event.duel_id,
            player1=args.get("player1"),
            player2=args.get("player2"),
            wager=wei_to_eth(args.get("wager")),
            status=DuelStatus.PENDING,
            block_number=event.block_number,
            transaction_hash=event.transaction_hash,
            current_player=current_player,
        )

        if nullified is not None:
            duel.status = DuelStatus.CANCELLED
            duel.transaction_hash = nullified.transaction_hash
            return duel

        if joined is None:
            if completed is not None:
                _log(
                    f"WARN: Duel {duel.id} has a completion event "
                    f"({completed.transaction_hash}) but no join event; leaving it {duel.status.value}"
                )
            return duel

        duel.status = DuelStatus.ACTIVE
        duel.transaction_hash = joined.transaction_hash
        if completed is None:
            return duel

        duel.status = DuelStatus.COMPLETED
        duel.winner = completed.args.get("winner")
        duel.loser = completed.args.get("loser")
        duel.payout = self.winner_payout(duel.wager)
        duel.net_profit = duel.profit_for(current_player) if current_player else duel.payout
        duel.transaction_hash = (claimed or completed).transaction_hash
        return duel

    @staticmethod
    def paginate(duels: List[Duel], limit: int) -> DuelPage:
        return DuelPage(duels=duels[:limit], has_more=len(duels) > limit)


def _initiated(event: EventRecord) -> TransactionRecord:
    args = event.args
    return TransactionRecord(
        type="Duel Initiated",
        type_class="duel-initiated",
        duel_id=event.duel_id,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
        log_index=event.log_index,
        fields={
            "player1": args.get("player1"),
            "player2": args.get("player2"),
            "wager": wei_to_eth(args.get("wager")),
        },
        description=(
            f"Player {format_address(args.get('player1'))} initiated duel "
            f"with {format_address(args.get('player2'))}"
        ),
    )


def _joined(event: EventRecord) -> TransactionRecord:
    player2 = event.args.get("player2")
    return TransactionRecord(
        type="Duel Joined",
        type_class="duel-joined",
        duel_id=event.duel_id,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
        log_index=event.log_index,
        fields={"player2": player2},
        description=f"Player {format_address(player2)} joined the duel",
    )


def _completed(event: EventRecord) -> TransactionRecord:
    args = event.args
    return TransactionRecord(
        type="Duel Completed",
        type_class="duel-completed",
        duel_id=event.duel_id,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
        log_index=event.log_index,
        fields={
            "winner": args.get("winner"),
            "loser": args.get("loser"),
            "totalWinnings": wei_to_eth(args.get("totalWinnings")),
            "fee": wei_to_eth(args.get("fee")),
        },
        description=f"Duel completed - Winner: {format_address(args.get('winner'))}",
    )


def _nullified(event: EventRecord) -> TransactionRecord:
    args = event.args
    refund = wei_to_eth(args.get("refundAmount"))
    return TransactionRecord(
        type="Duel Nullified",
        type_class="duel-nullified",
        duel_id=event.duel_id,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
        log_index=event.log_index,
        fields={"player": args.get("player"), "refundAmount": refund},
        description=f"Duel nullified by {format_address(args.get('player'))} - Refund: {format_eth(refund)} ETH",
    )


def _claimed(event: EventRecord) -> TransactionRecord:
    args = event.args
    amount = wei_to_eth(args.get("amount"))
    fee = wei_to_eth(args.get("fee"))
    return TransactionRecord(
        type="Proceeds Claimed",
        type_class="proceeds-claimed",
        duel_id=event.duel_id,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
        log_index=event.log_index,
        fields={"winner": args.get("winner"), "amount": amount, "fee": fee},
        description=(
            f"Proceeds claimed by winner {format_address(args.get('winner'))} - "
            f"Amount: {format_eth(amount)} ETH, Fee: {format_eth(fee)} ETH"
        ),
    )


def _escrowed(event: EventRecord) -> TransactionRecord:
    amount = wei_to_eth(event.args.get("amount"))
    return TransactionRecord(
        type="Funds Escrowed",
        type_class="funds-escrowed",
        duel_id=event.duel_id,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
        log_index=event.log_index,
        fields={"amount": amount},
        description=f"{format_eth(amount)} ETH escrowed for the duel",
    )


def _released(event: EventRecord) -> TransactionRecord:
    args = event.args
    amount = wei_to_eth(args.get("amount"))
    fee = wei_to_eth(args.get("fee"))
    return TransactionRecord(
        type="Funds Released",
        type_class="funds-released",
        duel_id=event.duel_id,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
        log_index=event.log_index,
        fields={"winner": args.get("winner"), "amount": amount, "fee": fee},
        description=f"Funds released to winner {format_address(args.get('winner'))}",
    )


def _fee_collected(event: EventRecord) -> TransactionRecord:
    fee = wei_to_eth(event.args.get("feeAmount"))
    return TransactionRecord(
        type="Fee Collected",
        type_class="fee-collected",
        duel_id=event.duel_id,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
        log_index=event.log_index,
        fields={"feeAmount": fee},
        description=f"Platform fee of {format_eth(fee)} ETH collected",
    )


TRANSACTION_BUILDERS: Dict[str, Callable[[EventRecord], TransactionRecord]] = {
    DUEL_INITIATED: _initiated,
    DUEL_JOINED: _joined,
    DUEL_COMPLETED: _completed,
    DUEL_NULLIFIED: _nullified,
    PROCEEDS_CLAIMED: _claimed,
    FUNDS_ESCROWED: _escrowed,
    FUNDS_RELEASED: _released,
    FEE_COLLECTED: _fee_collected,
}


def to_transactions(events: Iterable[EventRecord]) -> List[TransactionRecord]:
    """Convert duel-scoped events to an audit trail, oldest first."""
    out: List[TransactionRecord] = []
    for event in events:
        builder = TRANSACTION_BUILDERS.get(event.event_name)
        if builder is None:
            _log(f"WARN: No transaction mapping for event {event.event_name}")
            continue
        out.append(builder(event))
    out.sort(key=lambda t: (t.block_number, t.log_index))
    return out
