#!/usr/bin/env python
"""Trade ledger CLI: list trades, inspect one, or summarize P&L.

Usage:
    python scripts/trades.py --db state/trades.db list
    python scripts/trades.py --db state/trades.db list --status open
    python scripts/trades.py --db state/trades.db show <trade_id>
    python scripts/trades.py --db state/trades.db pnl
"""
import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from spot_trader.errors import TradeNotFound
from spot_trader.ledger import TradeLedger
from spot_trader.pnl import summarize


def format_decimal(d, decimals=2):
    """Format decimal for display."""
    if d is None:
        return "-"
    return f"{d:.{decimals}f}"


def format_time(ms):
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def list_trades(ledger, status=None):
    """List trades, optionally filtered by status."""
    if status == "open":
        trades = ledger.select_open()
    elif status == "closed":
        trades = ledger.select_closed()
    else:
        trades = ledger.select_all()

    if not trades:
        print("No trades")
        return

    print(f"\n{'ID':<6} {'Token':<10} {'Amount':<14} {'Buy':<12} {'Sell':<12} {'P/L':<12} {'Status':<8} {'Bought (UTC)':<20}")
    print("-" * 100)
    for t in trades:
        print(
            f"{t.id:<6} "
            f"{t.token_name:<10} "
            f"{format_decimal(t.amount, 6):<14} "
            f"{format_decimal(t.buy_price, 4):<12} "
            f"{format_decimal(t.sell_price, 4):<12} "
            f"{format_decimal(t.profit_loss, 2):<12} "
            f"{t.status.value:<8} "
            f"{format_time(t.buy_time):<20}"
        )


def show_trade(ledger, trade_id):
    """Show one trade in detail."""
    try:
        t = ledger.get(trade_id)
    except TradeNotFound:
        print(f"Trade not found: {trade_id}")
        return

    print(f"\n=== Trade {t.id}: {t.token_name} ===")
    print(f"Status: {t.status.value.upper()}")
    print(f"Token Address: {t.token_address or '(none)'}")
    print(f"Amount: {t.amount}")
    print(f"Buy Price: ${format_decimal(t.buy_price, 4)}")
    print(f"Buy Time: {format_time(t.buy_time)}")
    print(f"Buy Order ID: {t.order_id}")
    if not t.is_open:
        print(f"Sell Price: ${format_decimal(t.sell_price, 4)}")
        print(f"Sell Time: {format_time(t.sell_time)}")
        print(f"Sell Order ID: {t.sell_order_id or '(none)'}")
        print(f"Profit/Loss: ${format_decimal(t.profit_loss, 2)}")


def pnl_summary(ledger):
    """Realized P&L and open exposure across the ledger."""
    s = summarize(ledger.select_all())
    print("\n=== P&L Summary ===")
    print(f"Trades: {s.total_trades} ({s.open_trades} open, {s.closed_trades} closed)")
    print(f"Realized P&L: ${format_decimal(s.realized_pnl, 2)}")
    print(f"Wins / Losses: {s.win_count} / {s.loss_count}")
    print(f"Win Rate: {format_decimal(s.win_rate_pct, 1)}%")
    print(f"Best Trade: ${format_decimal(s.best_trade, 2)}")
    print(f"Worst Trade: ${format_decimal(s.worst_trade, 2)}")
    print(f"Open Exposure: ${format_decimal(s.open_exposure, 2)}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Trade ledger CLI")
    parser.add_argument("--db", required=True, help="Path to SQLite ledger")

    sub = parser.add_subparsers(dest="cmd")

    lst = sub.add_parser("list")
    lst.add_argument("--status", choices=["open", "closed"])
    show = sub.add_parser("show")
    show.add_argument("trade_id", type=int)
    sub.add_parser("pnl")

    args = parser.parse_args(argv)

    db_path = Path(args.db)
    if not db_path.exists():
        print(f"Database not found: {db_path}")
        sys.exit(1)

    ledger = TradeLedger(db_path)

    if args.cmd == "list":
        list_trades(ledger, args.status)
    elif args.cmd == "show":
        show_trade(ledger, args.trade_id)
    elif args.cmd == "pnl":
        pnl_summary(ledger)
    else:
        parser.print_help()

    ledger.close()


if __name__ == "__main__":
    main()
