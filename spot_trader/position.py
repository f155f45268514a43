"""
In-memory index of open positions, keyed by token.

The tracker is advisory only: the TradeLedger is authoritative and the tracker
is rebuilt from ``ledger.select_open()`` at startup. ``add`` refuses a second
position for the same token, which makes it the duplicate-buy guard.

Examples:
    >>> from decimal import Decimal
    >>> tracker = PositionTracker()
    >>> tracker.add("HYPE", Position(amount=Decimal("2"), buy_price=Decimal("5"),
    ...                              buy_time=0, order_id="o1"))
    True
    >>> tracker.add("HYPE", Position(amount=Decimal("1"), buy_price=Decimal("6"),
    ...                              buy_time=1, order_id="o2"))
    False
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from .logging_setup import logger
from .trade import Trade


@dataclass
class Position:
    """An open holding for one token.

    Attributes:
        amount: Quantity held
        buy_price: Execution price of the opening buy
        buy_time: Epoch millis of the opening buy
        order_id: Venue order id of the opening buy
        trade_id: Ledger id of the open trade backing this position
    """

    amount: Decimal
    buy_price: Decimal
    buy_time: int
    order_id: str
    trade_id: Optional[int] = None

    @property
    def exposure(self) -> Decimal:
        return self.amount * self.buy_price

    @staticmethod
    def from_trade(trade: Trade) -> "Position":
        return Position(
            amount=trade.amount,
            buy_price=trade.buy_price,
            buy_time=trade.buy_time,
            order_id=trade.order_id,
            trade_id=trade.id,
        )

    def to_dict(self) -> dict:
        return {
            "amount": str(self.amount),
            "buy_price": str(self.buy_price),
            "buy_time": self.buy_time,
            "order_id": self.order_id,
            "trade_id": self.trade_id,
        }


class PositionTracker:
    """Token -> Position map with add-if-absent semantics."""

    def __init__(self) -> None:
        self._positions: Dict[str, Position] = {}

    def add(self, token: str, position: Position) -> bool:
        """Track a new position.

        Returns:
            True if added, False (logged) if the token already has a position
        """
        if token in self._positions:
            logger.warning(f"Duplicate position rejected | token={token} existing_order={self._positions[token].order_id}")
            return False
        self._positions[token] = position
        return True

    def remove(self, token: str) -> Optional[Position]:
        """Drop a token's position; no-op if absent."""
        return self._positions.pop(token, None)

    def get(self, token: str) -> Optional[Position]:
        return self._positions.get(token)

    def tokens(self) -> List[str]:
        return list(self._positions)

    def total_exposure(self) -> Decimal:
        return sum((p.exposure for p in self._positions.values()), Decimal("0"))

    def rebuild(self, open_trades: Iterable[Trade]) -> int:
        """Replace the index with positions derived from open ledger trades.

        Returns:
            Number of positions tracked after the rebuild
        """
        self._positions.clear()
        for trade in open_trades:
            if not trade.is_open:
                continue
            if not self.add(trade.token_name, Position.from_trade(trade)):
                logger.error(
                    f"Ledger holds more than one open trade | token={trade.token_name} trade_id={trade.id}"
                )
        return len(self._positions)

    def snapshot(self) -> Dict[str, dict]:
        return {token: p.to_dict() for token, p in self._positions.items()}

    def __contains__(self, token: str) -> bool:
        return token in self._positions

    def __len__(self) -> int:
        return len(self._positions)
