from decimal import Decimal
from pathlib import Path

import pytest

from spot_trader.errors import AlreadyClosed, PersistenceError, TradeNotFound
from spot_trader.ledger import TradeLedger
from spot_trader.trade import Trade, TradeStatus


def _trade(token="HYPE", amount="2", price="5", order_id="o1"):
    return Trade(token_name=token, amount=Decimal(amount), buy_price=Decimal(price), buy_time=1_700_000_000_000, order_id=order_id)


def test_insert_open_assigns_id_and_persists(tmp_path: Path):
    ledger = TradeLedger(tmp_path / "trades.db")
    trade = _trade()
    trade_id = ledger.insert_open(trade)

    assert trade.id == trade_id
    rows = ledger.select_open()
    assert len(rows) == 1
    row = rows[0]
    assert row.token_name == "HYPE"
    assert row.amount == Decimal("2")
    assert row.buy_price == Decimal("5")
    assert row.status is TradeStatus.OPEN
    assert row.sell_price is None
    assert row.profit_loss is None
    ledger.close()


def test_close_trade_sets_sell_fields_and_profit_loss(tmp_path: Path):
    ledger = TradeLedger(tmp_path / "trades.db")
    trade_id = ledger.insert_open(_trade(token="ETH", amount="1", price="100"))

    closed = ledger.close_trade(trade_id, Decimal("90"), 1_700_000_100_000, sell_order_id="s1")

    assert closed.status is TradeStatus.CLOSED
    assert closed.sell_price == Decimal("90")
    assert closed.sell_time == 1_700_000_100_000
    assert closed.sell_order_id == "s1"
    assert closed.profit_loss == Decimal("-10")
    assert ledger.select_open() == []
    ledger.close()


def test_close_trade_twice_signals_already_closed(tmp_path: Path):
    ledger = TradeLedger(tmp_path / "trades.db")
    trade_id = ledger.insert_open(_trade())
    first = ledger.close_trade(trade_id, Decimal("6"), 1, sell_order_id="s1")

    with pytest.raises(AlreadyClosed) as exc:
        ledger.close_trade(trade_id, Decimal("99"), 2, sell_order_id="s2")
    assert exc.value.trade_id == trade_id

    # second call mutated nothing
    again = ledger.get(trade_id)
    assert again.sell_price == first.sell_price
    assert again.sell_order_id == "s1"
    assert again.profit_loss == Decimal("2")
    ledger.close()


def test_close_unknown_trade_raises_not_found(tmp_path: Path):
    ledger = TradeLedger(tmp_path / "trades.db")
    with pytest.raises(TradeNotFound):
        ledger.close_trade(42, Decimal("1"), 1)
    ledger.close()


def test_close_rejects_inconsistent_profit_loss(tmp_path: Path):
    ledger = TradeLedger(tmp_path / "trades.db")
    trade_id = ledger.insert_open(_trade())
    with pytest.raises(ValueError):
        ledger.close_trade(trade_id, Decimal("6"), 1, profit_loss=Decimal("5"))
    assert ledger.get(trade_id).is_open
    ledger.close()


def test_second_open_trade_for_token_is_refused(tmp_path: Path):
    ledger = TradeLedger(tmp_path / "trades.db")
    ledger.insert_open(_trade(order_id="o1"))
    with pytest.raises(PersistenceError):
        ledger.insert_open(_trade(order_id="o2"))
    assert len(ledger.select_open_for_token("HYPE")) == 1
    ledger.close()


def test_token_can_reopen_after_close(tmp_path: Path):
    ledger = TradeLedger(tmp_path / "trades.db")
    first = ledger.insert_open(_trade(order_id="o1"))
    ledger.close_trade(first, Decimal("5.5"), 1)
    ledger.insert_open(_trade(order_id="o2"))

    assert [t.order_id for t in ledger.select_open()] == ["o2"]
    assert [t.order_id for t in ledger.select_closed()] == ["o1"]
    assert len(ledger.select_all()) == 2
    ledger.close()


def test_insert_requires_open_trade(tmp_path: Path):
    ledger = TradeLedger(tmp_path / "trades.db")
    trade = _trade()
    trade.status = TradeStatus.CLOSED
    with pytest.raises(ValueError):
        ledger.insert_open(trade)
    ledger.close()


def test_ledger_survives_restart(tmp_path: Path):
    db = tmp_path / "trades.db"
    ledger = TradeLedger(db)
    ledger.insert_open(_trade(token="HYPE", order_id="o1"))
    closed_id = ledger.insert_open(_trade(token="ETH", amount="0.5", price="2000", order_id="o2"))
    ledger.close_trade(closed_id, Decimal("2100"), 5)
    ledger.close()

    reopened = TradeLedger(db)
    open_trades = reopened.select_open()
    assert [t.token_name for t in open_trades] == ["HYPE"]
    assert reopened.get(closed_id).profit_loss == Decimal("50.0")
    reopened.close()


def test_no_open_trade_has_sell_price(tmp_path: Path):
    ledger = TradeLedger(tmp_path / "trades.db")
    for i, token in enumerate(["A", "B", "C"]):
        trade_id = ledger.insert_open(_trade(token=token, order_id=f"o{i}"))
        if token != "B":
            ledger.close_trade(trade_id, Decimal("4"), 10)

    for trade in ledger.select_all():
        if trade.status is TradeStatus.OPEN:
            assert trade.sell_price is None
        else:
            assert trade.sell_price is not None
            assert trade.profit_loss == (trade.sell_price - trade.buy_price) * trade.amount
    ledger.close()


def test_get_missing_trade_raises(tmp_path: Path):
    ledger = TradeLedger(tmp_path / "trades.db")
    with pytest.raises(TradeNotFound):
        ledger.get(1)
    ledger.close()


def test_close_result_does_not_depend_on_a_later_read(tmp_path: Path, monkeypatch):
    ledger = TradeLedger(tmp_path / "trades.db")
    trade_id = ledger.insert_open(_trade(token="ETH", amount="1", price="100"))

    def broken_select(*args, **kwargs):
        raise PersistenceError("read failed")

    monkeypatch.setattr(ledger, "_select", broken_select)
    closed = ledger.close_trade(trade_id, Decimal("110"), 1_700_000_100_000, sell_order_id="s1")
    monkeypatch.undo()

    assert closed.id == trade_id
    assert closed.token_name == "ETH"
    assert closed.status is TradeStatus.CLOSED
    assert closed.profit_loss == Decimal("10")
    assert ledger.get(trade_id) == closed
    ledger.close()
