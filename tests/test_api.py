import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer
from fakes import ALICE, BOB, WEI, FakeEventClient, completed, initiated, joined, make_config

from duel_indexer.api import create_app
from duel_indexer.service import DuelQueryService
from duel_indexer.sources import DelegateError, DelegateSource


def _request(client, path):
    service = DuelQueryService(make_config(), client)

    async def scenario():
        async with TestClient(TestServer(create_app(service))) as http:
            resp = await http.get(path)
            return resp.status, await resp.json()

    return asyncio.run(scenario())


def test_wallet_endpoint():
    status, body = _request(FakeEventClient(player_stats={ALICE: (4, 1, 4 * WEI, WEI)}), f"/api/wallet/{ALICE}")
    assert status == 200
    assert body["totalDuels"] == 4
    assert body["winRate"] == "25.0"
    assert body["netProfit"] == 0.95


def test_wallet_endpoint_rejects_bad_address():
    status, body = _request(FakeEventClient(), "/api/wallet/0x123")
    assert status == 400
    assert "error" in body


def test_duels_endpoint_pages():
    events = [
        initiated(1, ALICE, BOB, block=19000),
        joined(1, BOB, block=19001),
        completed(1, ALICE, BOB, block=19002),
    ]
    status, body = _request(FakeEventClient(events), f"/api/duels/{ALICE}?limit=10&page=1")
    assert status == 200
    assert body["hasMore"] is False
    (duel,) = body["duels"]
    assert duel["status"] == "completed"
    assert duel["winner"] == ALICE
    assert duel["netProfit"] == 1.9
    assert duel["currentPlayer"] == ALICE


def test_duels_endpoint_rejects_bad_limit():
    status, body = _request(FakeEventClient(), f"/api/duels/{ALICE}?limit=abc")
    assert status == 400


def test_live_feed_endpoint():
    status, body = _request(FakeEventClient([initiated(5, ALICE, BOB, block=19000)]), "/api/live-feed?limit=5")
    assert status == 200
    assert [d["id"] for d in body] == ["5"]
    assert body[0]["status"] == "pending"


def test_transactions_endpoint():
    events = [initiated(8, ALICE, BOB, block=10), joined(8, BOB, block=11)]
    status, body = _request(FakeEventClient(events), "/api/duel/8/transactions")
    assert status == 200
    assert [t["type"] for t in body] == ["Duel Initiated", "Duel Joined"]
    assert body[0]["wager"] == 1.0


def test_stats_endpoint():
    status, body = _request(FakeEventClient(total_fees=WEI // 2), "/api/stats")
    assert status == 200
    assert body == {"totalFees": 0.5}


def test_delegate_source_reads_tracker_api():
    service = DuelQueryService(make_config(), FakeEventClient(player_stats={ALICE: (2, 1, WEI, WEI)}))

    async def scenario():
        async with TestServer(create_app(service)) as server:
            delegate = DelegateSource(str(server.make_url("/api")))
            missing = DelegateSource(str(server.make_url("/nope")))
            try:
                available = await delegate.probe()
                stats = await delegate.wallet_stats(ALICE)
                unavailable = await missing.probe()
                with pytest.raises(DelegateError):
                    await missing.live_feed(5)
            finally:
                await delegate.close()
                await missing.close()
        return available, unavailable, stats

    available, unavailable, stats = asyncio.run(scenario())
    assert available is True
    assert unavailable is False
    assert stats.win_rate == "50.0"
    assert stats.address == ALICE
