import sqlite3
import threading
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from .db_migrations import apply_migrations
from .errors import AlreadyClosed, PersistenceError, TradeNotFound
from .pnl import compute_profit_loss
from .trade import Trade, TradeStatus

_COLUMNS = (
    "id, token_name, token_address, amount, buy_price, buy_time, order_id, status, "
    "sell_price, sell_time, sell_order_id, profit_loss"
)


class TradeLedger:
    """SQLite-backed trade ledger; the source of truth for open and closed positions.

    APIs:
    - `insert_open(trade)` -> id
    - `select_open()` / `select_open_for_token(token)` / `select_all()` / `get(id)`
    - `close_trade(id, sell_price, sell_time, sell_order_id, profit_loss)`

    All writes use transactions for atomicity. The close transition is a
    conditional update (only rows still ``open`` change), so two closers racing
    on the same row cannot both succeed: the loser gets AlreadyClosed.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        try:
            self.conn = sqlite3.connect(str(self.path), timeout=30, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self._init_db()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to open ledger {self.path}: {e}") from e

    def _init_db(self):
        apply_migrations(self.conn)

    # --- writes ---
    def insert_open(self, trade: Trade) -> int:
        """Persist a newly opened trade and return its id.

        The trade's ``id`` is set in place on success.
        """
        if not trade.is_open:
            raise ValueError("insert_open requires an open trade")
        with self._lock:
            cur = self.conn.cursor()
            try:
                cur.execute("BEGIN IMMEDIATE")
                cur.execute(
                    "INSERT INTO trades(token_name, token_address, amount, buy_price, buy_time, order_id, status) "
                    "VALUES(?, ?, ?, ?, ?, ?, ?)",
                    (
                        trade.token_name,
                        trade.token_address,
                        str(trade.amount),
                        str(trade.buy_price),
                        trade.buy_time,
                        trade.order_id,
                        TradeStatus.OPEN.value,
                    ),
                )
                trade_id = cur.lastrowid
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise PersistenceError(f"Failed to insert trade for {trade.token_name}: {e}") from e
        trade.id = trade_id
        return trade_id

    def close_trade(
        self,
        trade_id: int,
        sell_price: Decimal,
        sell_time: int,
        sell_order_id: Optional[str] = None,
        profit_loss: Optional[Decimal] = None,
    ) -> Trade:
        """Transition an open trade to closed.

        profit_loss is derived from the stored buy price and amount; a caller
        supplied value must agree with it.

        Raises:
            AlreadyClosed: the row exists but is no longer open (nothing mutated)
            TradeNotFound: no row with this id
            PersistenceError: the store failed
        """
        sell_price = Decimal(str(sell_price))
        with self._lock:
            cur = self.conn.cursor()
            try:
                cur.execute("BEGIN IMMEDIATE")
                cur.execute(f"SELECT {_COLUMNS} FROM trades WHERE id = ?", (trade_id,))
                row = cur.fetchone()
                if row is None:
                    self.conn.rollback()
                    raise TradeNotFound(f"Trade {trade_id} not found")
                if row["status"] != TradeStatus.OPEN.value:
                    self.conn.rollback()
                    raise AlreadyClosed(trade_id)

                computed = compute_profit_loss(Decimal(row["buy_price"]), sell_price, Decimal(row["amount"]))
                if profit_loss is not None and Decimal(str(profit_loss)) != computed:
                    self.conn.rollback()
                    raise ValueError(
                        f"profit_loss {profit_loss} does not match (sell - buy) * amount = {computed}"
                    )

                cur.execute(
                    "UPDATE trades SET status = ?, sell_price = ?, sell_time = ?, sell_order_id = ?, profit_loss = ? "
                    "WHERE id = ? AND status = ?",
                    (
                        TradeStatus.CLOSED.value,
                        str(sell_price),
                        sell_time,
                        sell_order_id,
                        str(computed),
                        trade_id,
                        TradeStatus.OPEN.value,
                    ),
                )
                if cur.rowcount != 1:
                    self.conn.rollback()
                    raise AlreadyClosed(trade_id)
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise PersistenceError(f"Failed to close trade {trade_id}: {e}") from e

        # built from the row read inside the transaction; no second query after commit
        closed = Trade.from_row(row)
        closed.status = TradeStatus.CLOSED
        closed.sell_price = sell_price
        closed.sell_time = sell_time
        closed.sell_order_id = sell_order_id
        closed.profit_loss = computed
        return closed

    # --- reads ---
    def _select(self, where: str = "", params: tuple = ()) -> List[Trade]:
        with self._lock:
            try:
                cur = self.conn.cursor()
                cur.execute(f"SELECT {_COLUMNS} FROM trades {where} ORDER BY id", params)
                rows = cur.fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(f"Ledger query failed: {e}") from e
        return [Trade.from_row(r) for r in rows]

    def get(self, trade_id: int) -> Trade:
        rows = self._select("WHERE id = ?", (trade_id,))
        if not rows:
            raise TradeNotFound(f"Trade {trade_id} not found")
        return rows[0]

    def select_open(self) -> List[Trade]:
        return self._select("WHERE status = ?", (TradeStatus.OPEN.value,))

    def select_open_for_token(self, token_name: str) -> List[Trade]:
        return self._select("WHERE status = ? AND token_name = ?", (TradeStatus.OPEN.value, token_name))

    def select_closed(self) -> List[Trade]:
        return self._select("WHERE status = ?", (TradeStatus.CLOSED.value,))

    def select_all(self) -> List[Trade]:
        return self._select()

    def close(self):
        with self._lock:
            self.conn.close()
