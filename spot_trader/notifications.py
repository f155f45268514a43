"""
Observer notifications for ledger mutations.

Events carry camelCase payloads:

    new_trade             a trade was opened
    trade_updated         a trade was closed
    all_trades            full ledger snapshot, sent once to each new observer
    reconciliation_alert  an execution succeeded but the ledger write did not
"""

import asyncio
from typing import Any, Callable, List, Optional, Protocol

from aiohttp import WSMsgType, web
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .logging_setup import logger
from .trade import Trade

NEW_TRADE = "new_trade"
TRADE_UPDATED = "trade_updated"
ALL_TRADES = "all_trades"
RECONCILIATION_ALERT = "reconciliation_alert"


class _Event(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True)


class NewTradeEvent(_Event):
    id: int
    token_name: str
    token_address: Optional[str] = None
    amount: float
    buy_price: float
    buy_time: int
    order_id: str
    status: str

    @classmethod
    def from_trade(cls, trade: Trade) -> "NewTradeEvent":
        return cls(
            id=trade.id,
            token_name=trade.token_name,
            token_address=trade.token_address,
            amount=float(trade.amount),
            buy_price=float(trade.buy_price),
            buy_time=trade.buy_time,
            order_id=trade.order_id,
            status=trade.status.value,
        )


class TradeUpdatedEvent(_Event):
    id: int
    sell_price: float
    sell_time: int
    profit_loss: float
    token_name: str
    status: str

    @classmethod
    def from_trade(cls, trade: Trade) -> "TradeUpdatedEvent":
        return cls(
            id=trade.id,
            sell_price=float(trade.sell_price),
            sell_time=trade.sell_time,
            profit_loss=float(trade.profit_loss),
            token_name=trade.token_name,
            status=trade.status.value,
        )


class TradeSnapshot(_Event):
    """Every ledger column, for the ``all_trades`` snapshot."""

    id: int
    token_name: str
    token_address: Optional[str] = None
    amount: float
    buy_price: float
    buy_time: int
    order_id: str
    status: str
    sell_price: Optional[float] = None
    sell_time: Optional[int] = None
    sell_order_id: Optional[str] = None
    profit_loss: Optional[float] = None

    @classmethod
    def from_trade(cls, trade: Trade) -> "TradeSnapshot":
        return cls(
            id=trade.id,
            token_name=trade.token_name,
            token_address=trade.token_address,
            amount=float(trade.amount),
            buy_price=float(trade.buy_price),
            buy_time=trade.buy_time,
            order_id=trade.order_id,
            status=trade.status.value,
            sell_price=float(trade.sell_price) if trade.sell_price is not None else None,
            sell_time=trade.sell_time,
            sell_order_id=trade.sell_order_id,
            profit_loss=float(trade.profit_loss) if trade.profit_loss is not None else None,
        )


class ReconciliationAlertEvent(_Event):
    phase: str
    token_name: str
    order_id: str
    error: str
    time: int
    trade_id: Optional[int] = None


def _to_payload(payload: Any) -> Any:
    if isinstance(payload, BaseModel):
        return payload.model_dump(by_alias=True)
    if isinstance(payload, (list, tuple)):
        return [_to_payload(p) for p in payload]
    return payload


class NotificationSink(Protocol):
    async def emit(self, event: str, payload: Any) -> None:
        ...


class NullSink:
    """Sink for headless runs: events are only logged at debug level."""

    async def emit(self, event: str, payload: Any) -> None:
        logger.debug(f"Event {event} (no observers)")


class WebSocketBroadcaster:
    """Fan events out to connected websocket observers.

    Args:
        snapshot: Callable returning the trades for the ``all_trades`` push
                  (usually ``ledger.select_all``); called off the event loop
    """

    def __init__(self, snapshot: Optional[Callable[[], List[Trade]]] = None):
        self.snapshot = snapshot
        self.clients: List[web.WebSocketResponse] = []
        # held by emit and register: no event reaches an observer before its snapshot
        self._lock = asyncio.Lock()

    async def emit(self, event: str, payload: Any) -> None:
        message = {"event": event, "data": _to_payload(payload)}
        async with self._lock:
            for ws in list(self.clients):
                try:
                    await ws.send_json(message)
                except (ConnectionError, RuntimeError) as e:
                    logger.debug(f"Dropping websocket observer: {e}")
                    self._discard(ws)

    def _discard(self, ws: web.WebSocketResponse) -> None:
        try:
            self.clients.remove(ws)
        except ValueError:
            pass

    async def send_snapshot(self, ws: web.WebSocketResponse) -> None:
        trades = await asyncio.to_thread(self.snapshot) if self.snapshot else []
        await ws.send_json(
            {"event": ALL_TRADES, "data": [TradeSnapshot.from_trade(t).to_payload() for t in trades]}
        )

    async def register(self, ws: web.WebSocketResponse) -> None:
        """Send the snapshot, then start delivering events to ``ws``.

        Events emitted meanwhile wait, so the observer always sees the
        snapshot first and misses nothing written after it.
        """
        async with self._lock:
            await self.send_snapshot(ws)
            self.clients.append(ws)

    async def handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        """aiohttp handler: register the observer, push the snapshot, then idle."""
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)
        try:
            await self.register(ws)
            logger.info(f"Observer connected ({len(self.clients)} total)")
            async for msg in ws:
                if msg.type == WSMsgType.TEXT and msg.data == "ping":
                    await ws.send_str("pong")
                elif msg.type == WSMsgType.ERROR:
                    break
        finally:
            self._discard(ws)
            logger.info(f"Observer disconnected ({len(self.clients)} remaining)")
        return ws
