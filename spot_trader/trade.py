"""
Trade record: the unit of persisted state.

A Trade is created with status ``open`` once the venue confirms a buy and is
mutated exactly once, when the sell is confirmed and the row is closed.

Invariants:
    - amount > 0
    - sell_price, sell_time, sell_order_id and profit_loss are set iff status is closed
    - profit_loss == (sell_price - buy_price) * amount
"""

import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class TradeStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


def now_ms() -> int:
    """Current wall clock as epoch milliseconds."""
    return int(time.time() * 1000)


def _dec(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass
class Trade:
    """A single buy and, once closed, its matching sell.

    Attributes:
        token_name: Venue token symbol (e.g. "HYPE")
        amount: Quantity bought
        buy_price: Execution price of the buy
        buy_time: Epoch millis of the confirmed buy
        order_id: Venue order id of the buy
        token_address: Optional contract address of the token
        id: Ledger-assigned id (None until inserted)
    """

    token_name: str
    amount: Decimal
    buy_price: Decimal
    buy_time: int
    order_id: str
    token_address: Optional[str] = None
    id: Optional[int] = None
    status: TradeStatus = TradeStatus.OPEN
    sell_price: Optional[Decimal] = None
    sell_time: Optional[int] = None
    sell_order_id: Optional[str] = None
    profit_loss: Optional[Decimal] = None

    def __post_init__(self):
        self.amount = _dec(self.amount)
        self.buy_price = _dec(self.buy_price)
        self.sell_price = _dec(self.sell_price)
        self.profit_loss = _dec(self.profit_loss)
        self.status = TradeStatus(self.status)
        if self.amount <= 0:
            raise ValueError(f"Trade amount must be positive, got {self.amount}")

    @property
    def is_open(self) -> bool:
        return self.status is TradeStatus.OPEN

    @property
    def exposure(self) -> Decimal:
        """Capital committed at the buy price."""
        return self.buy_price * self.amount

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with decimals as strings (JSON-safe, lossless)."""
        return {
            "id": self.id,
            "token_name": self.token_name,
            "token_address": self.token_address,
            "amount": str(self.amount),
            "buy_price": str(self.buy_price),
            "buy_time": self.buy_time,
            "order_id": self.order_id,
            "status": self.status.value,
            "sell_price": str(self.sell_price) if self.sell_price is not None else None,
            "sell_time": self.sell_time,
            "sell_order_id": self.sell_order_id,
            "profit_loss": str(self.profit_loss) if self.profit_loss is not None else None,
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Trade":
        """Build a Trade from a ledger row (sqlite3.Row or dict)."""
        return Trade(
            id=row["id"],
            token_name=row["token_name"],
            token_address=row["token_address"],
            amount=row["amount"],
            buy_price=row["buy_price"],
            buy_time=row["buy_time"],
            order_id=row["order_id"],
            status=row["status"],
            sell_price=row["sell_price"],
            sell_time=row["sell_time"],
            sell_order_id=row["sell_order_id"],
            profit_loss=row["profit_loss"],
        )
