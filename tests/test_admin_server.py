import asyncio
from decimal import Decimal
from pathlib import Path

import pytest
from aiohttp.test_utils import TestClient, TestServer

from spot_trader.admin_server import AdminServer
from spot_trader.config import StrategyConfig
from spot_trader.engine import TradingEngine
from spot_trader.ledger import TradeLedger
from spot_trader.notifications import NewTradeEvent, WebSocketBroadcaster
from spot_trader.scheduler import TradingLoop
from spot_trader.trade import Trade
from spot_trader.venue import PaperVenue

from test_engine import FakeMarketData, make_advisory


def _build(tmp_path: Path, api_key=None):
    ledger = TradeLedger(tmp_path / "trades.db")
    broadcaster = WebSocketBroadcaster(snapshot=ledger.select_all)
    engine = TradingEngine(
        FakeMarketData(universe=["HYPE"], prices={"HYPE": [5]}),
        make_advisory(buy_reply="- Buy Signal: Yes"),
        PaperVenue(),
        ledger,
        sink=broadcaster,
        strategy=StrategyConfig(),
    )
    loop = TradingLoop(engine, interval_seconds=10)
    server = AdminServer(loop, engine, ledger, broadcaster, api_key=api_key)
    return server, ledger


def _seed(ledger):
    first = Trade(token_name="ETH", amount="1", buy_price="100", buy_time=1, order_id="o1")
    ledger.insert_open(first)
    ledger.close_trade(first.id, Decimal("110"), 2)
    ledger.insert_open(Trade(token_name="SOL", amount="3", buy_price="20", buy_time=3, order_id="o2"))


@pytest.mark.asyncio
async def test_health_reports_ledger(tmp_path: Path):
    server, ledger = _build(tmp_path)
    _seed(ledger)
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.get("/health")
        assert resp.status == 200
        body = await resp.json()
    assert body["status"] == "healthy"
    assert body["checks"]["ledger"]["open_trades"] == 1
    assert body["checks"]["loop"] == "stopped"


@pytest.mark.asyncio
async def test_trades_listing_and_filter(tmp_path: Path):
    server, ledger = _build(tmp_path)
    _seed(ledger)
    async with TestClient(TestServer(server.app)) as client:
        all_trades = await (await client.get("/api/trades")).json()
        open_trades = await (await client.get("/api/trades", params={"status": "open"})).json()
        closed = await (await client.get("/api/trades", params={"status": "closed"})).json()
        bad = await client.get("/api/trades", params={"status": "pending"})

    assert len(all_trades["trades"]) == 2
    assert [t["token_name"] for t in open_trades["trades"]] == ["SOL"]
    assert closed["trades"][0]["profit_loss"] == "10"
    assert bad.status == 400


@pytest.mark.asyncio
async def test_status_includes_pnl_and_engine_state(tmp_path: Path):
    server, ledger = _build(tmp_path)
    _seed(ledger)
    async with TestClient(TestServer(server.app)) as client:
        body = await (await client.get("/api/status")).json()
    assert body["loop"]["status"] == "stopped"
    assert body["pnl"]["realized_pnl"] == 10.0
    assert body["pnl"]["open_trades"] == 1
    assert body["engine"]["capital"] == "1000"
    assert body["engine"]["counters"]["cycles"] == 0


@pytest.mark.asyncio
async def test_loop_controls_respond_immediately(tmp_path: Path):
    server, _ = _build(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        started = await (await client.post("/api/loop/start")).json()
        again = await (await client.post("/api/loop/start")).json()
        stopped = await (await client.post("/api/loop/stop")).json()
        stopped_again = await (await client.post("/api/loop/stop")).json()
        await server.loop.shutdown()

    assert started["result"] == "running"
    assert again["result"] == "already_running"
    assert stopped["result"] == "stopped"
    assert stopped_again["result"] == "not_running"


@pytest.mark.asyncio
async def test_trigger_runs_one_cycle(tmp_path: Path):
    server, ledger = _build(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.post("/api/trigger")
        assert resp.status == 202
        assert (await resp.json())["result"] == "triggered"
        await server.loop.shutdown()

    assert [t.token_name for t in ledger.select_open()] == ["HYPE"]
    assert server.engine.state.counters["cycles"] == 1


@pytest.mark.asyncio
async def test_api_key_required_when_configured(tmp_path: Path):
    server, _ = _build(tmp_path, api_key="s3cret")
    async with TestClient(TestServer(server.app)) as client:
        denied = await client.post("/api/loop/start")
        wrong = await client.post("/api/trigger", headers={"X-API-Key": "nope"})
        allowed = await client.post("/api/loop/start", headers={"X-API-Key": "s3cret"})
        status = await client.get("/api/status")
        assert denied.status == 401
        assert wrong.status == 401
        assert allowed.status == 200
        assert status.status == 200
        await server.loop.shutdown()


@pytest.mark.asyncio
async def test_reconcile_clears_frozen_token(tmp_path: Path):
    server, _ = _build(tmp_path, api_key="s3cret")
    server.engine.state.unreconciled_tokens.add("HYPE")
    async with TestClient(TestServer(server.app)) as client:
        denied = await client.post("/api/reconcile/HYPE")
        cleared = await client.post("/api/reconcile/HYPE", headers={"X-API-Key": "s3cret"})
        again = await client.post("/api/reconcile/HYPE", headers={"X-API-Key": "s3cret"})
        assert denied.status == 401
        assert cleared.status == 200
        assert (await cleared.json())["result"] == "cleared"
        assert again.status == 404
        assert (await again.json())["result"] == "not_frozen"
    assert server.engine.state.unreconciled_tokens == set()


@pytest.mark.asyncio
async def test_metrics_text(tmp_path: Path):
    server, _ = _build(tmp_path)
    async with TestClient(TestServer(server.app)) as client:
        resp = await client.get("/metrics")
        text = await resp.text()
    assert resp.status == 200
    assert "spot_trader_cycles_total 0" in text
    assert "spot_trader_open_positions 0" in text
    assert "# TYPE spot_trader_buys_total counter" in text


@pytest.mark.asyncio
async def test_websocket_gets_snapshot_then_events(tmp_path: Path):
    server, ledger = _build(tmp_path)
    _seed(ledger)
    async with TestClient(TestServer(server.app)) as client:
        ws = await client.ws_connect("/ws")
        snapshot = await ws.receive_json(timeout=2)
        assert snapshot["event"] == "all_trades"
        assert [t["tokenName"] for t in snapshot["data"]] == ["ETH", "SOL"]
        assert snapshot["data"][0]["profitLoss"] == 10.0

        # wait for the handler to register the socket before broadcasting
        for _ in range(50):
            if server.broadcaster.clients:
                break
            await asyncio.sleep(0.01)
        trade = ledger.select_open()[0]
        await server.broadcaster.emit("new_trade", NewTradeEvent.from_trade(trade))
        event = await ws.receive_json(timeout=2)
        assert event == {
            "event": "new_trade",
            "data": {
                "id": trade.id,
                "tokenName": "SOL",
                "tokenAddress": None,
                "amount": 3.0,
                "buyPrice": 20.0,
                "buyTime": 3,
                "orderId": "o2",
                "status": "open",
            },
        }
        await ws.close()
