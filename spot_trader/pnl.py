"""P&L calculations over ledger trades."""
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from .trade import Trade


def compute_profit_loss(buy_price: Decimal, sell_price: Decimal, amount: Decimal) -> Decimal:
    """Profit or loss of selling ``amount`` bought at ``buy_price``."""
    return (sell_price - buy_price) * amount


@dataclass
class PnlSummary:
    """Aggregate over a set of trades."""
    total_trades: int
    open_trades: int
    closed_trades: int
    realized_pnl: Decimal
    win_count: int
    loss_count: int
    win_rate_pct: Decimal
    open_exposure: Decimal
    best_trade: Optional[Decimal] = None
    worst_trade: Optional[Decimal] = None

    def to_dict(self) -> dict:
        return {
            "total_trades": self.total_trades,
            "open_trades": self.open_trades,
            "closed_trades": self.closed_trades,
            "realized_pnl": float(self.realized_pnl),
            "win_count": self.win_count,
            "loss_count": self.loss_count,
            "win_rate_pct": float(self.win_rate_pct),
            "open_exposure": float(self.open_exposure),
            "best_trade": float(self.best_trade) if self.best_trade is not None else None,
            "worst_trade": float(self.worst_trade) if self.worst_trade is not None else None,
        }


def summarize(trades: Iterable[Trade]) -> PnlSummary:
    """Summarize realized P&L and open exposure.

    Args:
        trades: Ledger trades, open and closed

    Returns:
        PnlSummary; win rate is over closed trades only
    """
    trades = list(trades)
    closed = [t for t in trades if not t.is_open and t.profit_loss is not None]
    open_ = [t for t in trades if t.is_open]

    realized = sum((t.profit_loss for t in closed), Decimal("0"))
    wins = len([t for t in closed if t.profit_loss > 0])
    losses = len([t for t in closed if t.profit_loss < 0])
    win_rate = Decimal(wins) / Decimal(len(closed)) * Decimal("100") if closed else Decimal("0")

    return PnlSummary(
        total_trades=len(trades),
        open_trades=len(open_),
        closed_trades=len(closed),
        realized_pnl=realized,
        win_count=wins,
        loss_count=losses,
        win_rate_pct=win_rate,
        open_exposure=sum((t.exposure for t in open_), Decimal("0")),
        best_trade=max((t.profit_loss for t in closed), default=None),
        worst_trade=min((t.profit_loss for t in closed), default=None),
    )
