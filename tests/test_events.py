import asyncio
from types import SimpleNamespace

import pytest
from eth_abi import encode
from eth_utils import event_abi_to_log_topic
from fakes import ALICE, BATTLE_ADDRESS, BOB

from duel_indexer.abis import BATTLE_ABI, load_abi
from duel_indexer.config import BATTLE_CONTRACT
from duel_indexer.events import ContractHandle, EventLogClient, build_topics

HANDLE = ContractHandle(BATTLE_CONTRACT, BATTLE_ADDRESS, BATTLE_ABI)


def _word(abi_type, value):
    return "0x" + encode([abi_type], [value]).hex()


def _topic0(name):
    return "0x" + event_abi_to_log_topic(HANDLE.event_abi(name)).hex()


def test_topics_for_duel_id_filter():
    topics = build_topics(HANDLE.event_abi("DuelJoined"), {"duelId": "42"})
    assert topics == [_topic0("DuelJoined"), _word("uint256", 42)]


def test_unfiltered_positions_are_wildcards():
    topics = build_topics(HANDLE.event_abi("DuelInitiated"), {"player2": ALICE.lower()})
    assert topics == [_topic0("DuelInitiated"), None, None, _word("address", ALICE)]


def test_trailing_wildcards_are_dropped():
    topics = build_topics(HANDLE.event_abi("DuelInitiated"), {"player1": ALICE})
    assert topics == [_topic0("DuelInitiated"), None, _word("address", ALICE)]
    assert build_topics(HANDLE.event_abi("DuelInitiated")) == [_topic0("DuelInitiated")]


def test_list_values_match_any():
    topics = build_topics(HANDLE.event_abi("DuelJoined"), {"duelId": [1, 2]})
    assert topics[1] == [_word("uint256", 1), _word("uint256", 2)]


def test_filter_on_non_indexed_argument_rejected():
    with pytest.raises(ValueError):
        build_topics(HANDLE.event_abi("DuelInitiated"), {"wager": 1})


def test_unknown_event_rejected():
    with pytest.raises(ValueError):
        HANDLE.event_abi("DuelExploded")


def test_decode_subscription_log():
    client = EventLogClient.from_url("http://127.0.0.1:8545")
    client.register_contract(BATTLE_CONTRACT, BATTLE_ADDRESS, BATTLE_ABI)
    raw = {
        "address": BATTLE_ADDRESS.lower(),
        "topics": [_topic0("DuelJoined"), _word("uint256", 7), _word("address", BOB)],
        "data": "0x",
        "blockNumber": "0x10",
        "blockHash": "0x" + "cd" * 32,
        "transactionHash": "0x" + "ab" * 32,
        "transactionIndex": "0x0",
        "logIndex": "0x2",
        "removed": False,
    }
    record = client.decode_log(raw)
    assert record.event_name == "DuelJoined"
    assert record.duel_id == "7"
    assert record.args["player2"] == BOB
    assert record.block_number == 16
    assert record.log_index == 2
    assert record.transaction_hash == "0x" + "ab" * 32
    assert record.removed is False


def test_decode_ignores_foreign_contract():
    client = EventLogClient.from_url("http://127.0.0.1:8545")
    client.register_contract(BATTLE_CONTRACT, BATTLE_ADDRESS, BATTLE_ABI)
    raw = {"address": ALICE, "topics": [_topic0("DuelJoined")], "data": "0x"}
    assert client.decode_log(raw) is None


def test_load_abi_from_hardhat_artifact(tmp_path):
    artifact = tmp_path / "DuelArenaBattle.json"
    artifact.write_text('{"contractName": "DuelArenaBattle", "abi": [{"type": "event", "name": "X", "inputs": []}]}')
    abi = load_abi(BATTLE_CONTRACT, None, str(tmp_path))
    assert abi[0]["name"] == "X"
    assert load_abi(BATTLE_CONTRACT, None, None) == BATTLE_ABI


class SplittingEth:
    """Node stub that refuses log ranges wider than `max_span` blocks."""

    def __init__(self, head, max_span, logs=()):
        self.head = head
        self.max_span = max_span
        self.logs = list(logs)
        self.ranges = []

    @property
    def block_number(self):
        async def _head():
            return self.head

        return _head()

    async def get_logs(self, params):
        start, end = params["fromBlock"], params["toBlock"]
        self.ranges.append((start, end))
        if end - start + 1 > self.max_span:
            raise ValueError("query returned more than 10000 results")
        return [log for log in self.logs if start <= int(log["blockNumber"], 16) <= end]


def _splitting_client(eth, batch_size):
    codec = EventLogClient.from_url("http://127.0.0.1:8545").w3.codec
    client = EventLogClient(SimpleNamespace(eth=eth, codec=codec), batch_size=batch_size)
    client.contracts[BATTLE_CONTRACT] = HANDLE
    return client


def _joined_log(duel_id, block):
    return {
        "address": BATTLE_ADDRESS,
        "topics": [_topic0("DuelJoined"), _word("uint256", duel_id), _word("address", BOB)],
        "data": "0x",
        "blockNumber": hex(block),
        "transactionHash": "0x" + f"{duel_id:064x}",
        "logIndex": "0x0",
    }


def test_log_queries_are_split_and_shrunk_on_oversized_ranges(capsys):
    eth = SplittingEth(head=25000, max_span=5000, logs=[_joined_log(1, 3), _joined_log(2, 24000)])
    client = _splitting_client(eth, batch_size=10000)

    records = asyncio.run(client.query_events(BATTLE_CONTRACT, "DuelJoined", None, 0, "latest"))

    assert eth.ranges == [
        (0, 9999),
        (0, 4999),
        (5000, 9999),
        (10000, 14999),
        (15000, 19999),
        (20000, 24999),
        (25000, 25000),
    ]
    assert [r.duel_id for r in records] == ["1", "2"]
    assert "reducing batch size to 5000" in capsys.readouterr().err


def test_other_log_errors_propagate():
    class BrokenEth(SplittingEth):
        async def get_logs(self, params):
            raise ValueError("invalid params")

    client = _splitting_client(BrokenEth(head=10, max_span=10), batch_size=100)
    with pytest.raises(ValueError):
        asyncio.run(client.query_events(BATTLE_CONTRACT, "DuelJoined", None, 0, 10))
