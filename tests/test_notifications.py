import asyncio
import threading
from decimal import Decimal

import pytest

from spot_trader.notifications import (
    NEW_TRADE,
    ReconciliationAlertEvent,
    TradeSnapshot,
    TradeUpdatedEvent,
    WebSocketBroadcaster,
)
from spot_trader.trade import Trade, TradeStatus


class FakeSocket:
    def __init__(self, error=None):
        self.error = error
        self.sent = []

    async def send_json(self, data):
        if self.error:
            raise self.error
        self.sent.append(data)


def _closed_trade():
    return Trade(
        id=7,
        token_name="ETH",
        amount=Decimal("1"),
        buy_price=Decimal("100"),
        buy_time=1,
        order_id="b7",
        status=TradeStatus.CLOSED,
        sell_price=Decimal("90"),
        sell_time=2,
        sell_order_id="s7",
        profit_loss=Decimal("-10"),
    )


def test_trade_updated_payload_is_camel_case():
    payload = TradeUpdatedEvent.from_trade(_closed_trade()).to_payload()
    assert payload == {
        "id": 7,
        "sellPrice": 90.0,
        "sellTime": 2,
        "profitLoss": -10.0,
        "tokenName": "ETH",
        "status": "closed",
    }


def test_snapshot_of_open_trade_has_null_sell_fields():
    trade = Trade(id=1, token_name="HYPE", amount="2", buy_price="5", buy_time=3, order_id="b1")
    payload = TradeSnapshot.from_trade(trade).to_payload()
    assert payload["sellPrice"] is None
    assert payload["profitLoss"] is None
    assert payload["sellOrderId"] is None
    assert payload["buyPrice"] == 5.0


def test_reconciliation_alert_accepts_snake_case_fields():
    event = ReconciliationAlertEvent(phase="buy", token_name="HYPE", order_id="o1", error="disk full", time=5)
    assert event.to_payload()["tokenName"] == "HYPE"
    assert event.to_payload()["tradeId"] is None


@pytest.mark.asyncio
async def test_broadcast_reaches_every_client():
    broadcaster = WebSocketBroadcaster()
    first, second = FakeSocket(), FakeSocket()
    broadcaster.clients.extend([first, second])

    await broadcaster.emit(NEW_TRADE, {"id": 1})

    assert first.sent == [{"event": "new_trade", "data": {"id": 1}}]
    assert second.sent == first.sent


@pytest.mark.asyncio
async def test_failing_client_is_dropped_and_others_still_served():
    broadcaster = WebSocketBroadcaster()
    broken = FakeSocket(error=ConnectionResetError("gone"))
    healthy = FakeSocket()
    broadcaster.clients.extend([broken, healthy])

    await broadcaster.emit(NEW_TRADE, TradeUpdatedEvent.from_trade(_closed_trade()))

    assert broadcaster.clients == [healthy]
    assert healthy.sent[0]["data"]["profitLoss"] == -10.0


@pytest.mark.asyncio
async def test_snapshot_uses_ledger_callable():
    broadcaster = WebSocketBroadcaster(snapshot=lambda: [_closed_trade()])
    ws = FakeSocket()
    await broadcaster.send_snapshot(ws)
    assert ws.sent[0]["event"] == "all_trades"
    assert ws.sent[0]["data"][0]["sellOrderId"] == "s7"


@pytest.mark.asyncio
async def test_snapshot_without_source_is_empty():
    ws = FakeSocket()
    await WebSocketBroadcaster().send_snapshot(ws)
    assert ws.sent == [{"event": "all_trades", "data": []}]


@pytest.mark.asyncio
async def test_event_during_snapshot_fetch_arrives_after_snapshot():
    release = threading.Event()
    ledger_rows = []

    def slow_snapshot():
        release.wait(timeout=2)
        return list(ledger_rows)

    broadcaster = WebSocketBroadcaster(snapshot=slow_snapshot)
    ws = FakeSocket()
    registering = asyncio.create_task(broadcaster.register(ws))
    await asyncio.sleep(0.05)

    # a trade is written and announced while the snapshot read is still running
    trade = Trade(id=3, token_name="HYPE", amount="2", buy_price="5", buy_time=3, order_id="b3")
    emitting = asyncio.create_task(broadcaster.emit(NEW_TRADE, {"id": trade.id}))
    await asyncio.sleep(0.05)
    assert ws.sent == []

    ledger_rows.append(trade)
    release.set()
    await asyncio.gather(registering, emitting)

    assert [m["event"] for m in ws.sent] == ["all_trades", "new_trade"]
    assert broadcaster.clients == [ws]
