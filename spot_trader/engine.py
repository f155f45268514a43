"""
Trading engine: one decision cycle over open positions and the token universe.

Cycle:
    sell phase   ledger.select_open -> latest price -> evaluate_sell
                 -> [SELL] submit_sell -> close_trade -> tracker.remove -> trade_updated
    buy phase    get_universe (minus tracked tokens) -> price history -> evaluate_buy
                 -> [BUY, real prices] submit_buy -> insert_open -> tracker.add -> new_trade

Work fans out across tokens under a semaphore, but one token is never processed
by two overlapping cycles: a token already in ``EngineState.in_flight`` is
skipped. The decision part of each token (market data and advisory) is bounded
by ``token_timeout_seconds``; once an order is submitted the rest of the path
always runs to completion so a venue execution is never left unrecorded by a
local timeout.

Failures stay at the token boundary except SigningError, which is re-raised so
the scheduler stops.

An order the venue executed but the ledger failed to record freezes its token
(``EngineState.unreconciled_tokens``): neither phase touches it again until an
operator clears it through the admin API.
"""

import asyncio
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, List, Optional, Set

from .advisory import AdvisoryClient
from .config import StrategyConfig
from .errors import AdvisoryFailure, AlreadyClosed, PersistenceError, SigningError, TradingError, UpstreamUnavailable
from .ledger import TradeLedger
from .logging_setup import logger
from .market_data import MarketDataGateway, TokenInfo
from .notifications import (
    NEW_TRADE,
    RECONCILIATION_ALERT,
    TRADE_UPDATED,
    NewTradeEvent,
    NotificationSink,
    NullSink,
    ReconciliationAlertEvent,
    TradeUpdatedEvent,
)
from .pnl import compute_profit_loss
from .position import Position, PositionTracker
from .trade import Trade, now_ms
from .venue import ExecutionVenue, VenueOrder

COUNTERS = ("cycles", "buys", "sells", "advisory_failures", "token_errors", "skipped_in_flight")


@dataclass
class EngineState:
    """Mutable trading state, owned by one engine and passed explicitly.

    Attributes:
        capital: Total deployable funds
        fixed_fraction: Share of deployable capital per new position
        capital_policy: "static" or "net_of_exposure"
        positions: In-memory index of open positions
        in_flight: Tokens with a cycle currently running
        unreconciled: Executions whose ledger write failed
        unreconciled_tokens: Tokens frozen after such a failure until an operator clears them
    """

    capital: Decimal
    fixed_fraction: Decimal
    capital_policy: str = "static"
    positions: PositionTracker = field(default_factory=PositionTracker)
    in_flight: Set[str] = field(default_factory=set)
    counters: Dict[str, int] = field(default_factory=lambda: dict.fromkeys(COUNTERS, 0))
    last_cycle_started: Optional[int] = None
    last_cycle_finished: Optional[int] = None
    unreconciled: List[Dict[str, Any]] = field(default_factory=list)
    unreconciled_tokens: Set[str] = field(default_factory=set)

    @classmethod
    def from_config(cls, strategy: StrategyConfig) -> "EngineState":
        return cls(
            capital=strategy.capital,
            fixed_fraction=strategy.fixed_fraction,
            capital_policy=strategy.capital_policy,
        )

    def deployable_capital(self) -> Decimal:
        """Capital available for sizing under the configured policy."""
        if self.capital_policy == "net_of_exposure":
            return max(self.capital - self.positions.total_exposure(), Decimal("0"))
        return self.capital

    def position_size(self, price: Decimal, sz_decimals: Optional[int] = None) -> Decimal:
        """amount = deployable capital * fixed fraction / price

        Rounded down to ``sz_decimals`` places when the venue publishes a size step.
        """
        if price <= 0:
            raise ValueError(f"Price must be positive, got {price}")
        amount = self.deployable_capital() * self.fixed_fraction / price
        if sz_decimals is not None:
            amount = amount.quantize(Decimal(1).scaleb(-sz_decimals), rounding=ROUND_DOWN)
        return amount

    def claim(self, token: str) -> bool:
        if token in self.in_flight:
            return False
        self.in_flight.add(token)
        return True

    def release(self, token: str) -> None:
        self.in_flight.discard(token)

    def clear_unreconciled(self, token: str) -> bool:
        """Let a frozen token trade again once the ledger has been repaired."""
        if token not in self.unreconciled_tokens:
            return False
        self.unreconciled_tokens.discard(token)
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "capital": str(self.capital),
            "deployable_capital": str(self.deployable_capital()),
            "fixed_fraction": str(self.fixed_fraction),
            "capital_policy": self.capital_policy,
            "positions": self.positions.snapshot(),
            "in_flight": sorted(self.in_flight),
            "counters": dict(self.counters),
            "last_cycle_started": self.last_cycle_started,
            "last_cycle_finished": self.last_cycle_finished,
            "unreconciled": list(self.unreconciled),
            "unreconciled_tokens": sorted(self.unreconciled_tokens),
        }


class TradingEngine:
    """Runs decision cycles against injected collaborators.

    Usage:
        engine = TradingEngine(gateway, advisory, venue, ledger, sink=broadcaster, strategy=cfg.strategy)
        await engine.startup()
        await engine.run_cycle()
    """

    def __init__(
        self,
        market_data: MarketDataGateway,
        advisory: AdvisoryClient,
        venue: ExecutionVenue,
        ledger: TradeLedger,
        *,
        sink: Optional[NotificationSink] = None,
        strategy: Optional[StrategyConfig] = None,
        state: Optional[EngineState] = None,
    ):
        self.market_data = market_data
        self.advisory = advisory
        self.venue = venue
        self.ledger = ledger
        self.sink = sink or NullSink()
        self.strategy = strategy or StrategyConfig()
        self.state = state or EngineState.from_config(self.strategy)
        self._semaphore = asyncio.Semaphore(self.strategy.max_concurrency)

    async def startup(self) -> int:
        """Rebuild the position index from the ledger. Returns positions tracked."""
        open_trades = await asyncio.to_thread(self.ledger.select_open)
        count = self.state.positions.rebuild(open_trades)
        logger.info(f"Rebuilt {count} open positions from ledger")
        return count

    async def run_cycle(self) -> Dict[str, int]:
        """Run one sell phase then one buy phase.

        Returns:
            Counter deltas for this cycle

        Raises:
            SigningError: the account key cannot sign; trading must stop
        """
        before = dict(self.state.counters)
        self.state.counters["cycles"] += 1
        self.state.last_cycle_started = now_ms()
        logger.info(f"Cycle {self.state.counters['cycles']} started | open_positions={len(self.state.positions)}")
        try:
            await self.sell_phase()
            await self.buy_phase()
        finally:
            self.state.last_cycle_finished = now_ms()
        delta = {k: self.state.counters[k] - before.get(k, 0) for k in COUNTERS}
        logger.info(f"Cycle {self.state.counters['cycles']} finished | {delta}")
        return delta

    # --- phases ---
    async def sell_phase(self) -> None:
        try:
            open_trades = await asyncio.to_thread(self.ledger.select_open)
        except PersistenceError as e:
            self.state.counters["token_errors"] += 1
            logger.error(f"Sell phase skipped, ledger unreadable: {e}")
            return
        frozen = [t for t in open_trades if t.token_name in self.state.unreconciled_tokens]
        for t in frozen:
            logger.warning(f"Sell skipped, awaiting reconciliation | token={t.token_name} trade_id={t.id}")
        candidates = [t for t in open_trades if t.token_name not in self.state.unreconciled_tokens]
        await self._fan_out([(t.token_name, "sell", self.sell_trade, t) for t in candidates])

    async def buy_phase(self) -> None:
        try:
            universe = await self.market_data.get_universe()
        except UpstreamUnavailable as e:
            self.state.counters["token_errors"] += 1
            logger.error(f"Buy phase skipped, universe unavailable: {e}")
            return
        candidates = [
            t for t in universe
            if t.name not in self.state.positions and t.name not in self.state.unreconciled_tokens
        ]
        await self._fan_out([(t.name, "buy", self.buy_token, t) for t in candidates])

    async def _fan_out(self, jobs) -> None:
        results = await asyncio.gather(
            *(self._run_token(token, phase, fn, arg) for token, phase, fn, arg in jobs),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, SigningError):
                raise result
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result

    async def _run_token(self, token: str, phase: str, fn, arg) -> None:
        if not self.state.claim(token):
            self.state.counters["skipped_in_flight"] += 1
            logger.info(f"Skipping token, previous cycle still in flight | token={token} phase={phase}")
            return
        try:
            async with self._semaphore:
                await fn(arg)
        except SigningError:
            logger.critical(f"Signing failed, stopping | token={token} phase={phase}")
            raise
        except asyncio.TimeoutError:
            self.state.counters["token_errors"] += 1
            logger.error(
                f"Token timed out | token={token} phase={phase} timeout={self.strategy.token_timeout_seconds}s"
            )
        except AdvisoryFailure as e:
            self.state.counters["advisory_failures"] += 1
            logger.warning(f"No action, advisory failed | token={token} phase={phase} error={e}")
        except TradingError as e:
            self.state.counters["token_errors"] += 1
            logger.error(f"Token failed | token={token} phase={phase} error={type(e).__name__}: {e}")
        except Exception as e:
            self.state.counters["token_errors"] += 1
            logger.exception(f"Unexpected token failure | token={token} phase={phase} error={e}")
        finally:
            self.state.release(token)

    def _bounded(self, coro):
        return asyncio.wait_for(coro, timeout=self.strategy.token_timeout_seconds)

    # --- per token ---
    async def buy_token(self, token: TokenInfo) -> Optional[Trade]:
        """Evaluate one universe token and open a position on a BUY.

        Returns:
            The opened trade, or None when nothing was bought
        """
        name = token.name
        if name in self.state.positions or name in self.state.unreconciled_tokens:
            return None

        history = await self._bounded(self.market_data.get_price_history(name))
        decision = await self._bounded(self.advisory.evaluate_buy(token, history))
        if not decision.is_buy:
            logger.debug(f"No buy | token={name}")
            return None
        if history.simulated:
            logger.warning(f"Buy signal ignored, price series is simulated | token={name}")
            return None
        price = history.latest_price
        if price is None or price <= 0:
            logger.warning(f"Buy signal ignored, no current price | token={name}")
            return None
        amount = self.state.position_size(price, token.sz_decimals)
        if amount <= 0:
            logger.warning(f"Buy signal ignored, no deployable capital | token={name}")
            return None

        existing = await asyncio.to_thread(self.ledger.select_open_for_token, name)
        if existing:
            logger.warning(f"Buy skipped, ledger already holds open trade {existing[0].id} | token={name}")
            self.state.positions.add(name, Position.from_trade(existing[0]))
            return None

        order = await self.venue.submit_buy(name, amount, price)
        self.state.counters["buys"] += 1
        trade = Trade(
            token_name=name,
            token_address=token.evm_contract,
            amount=amount,
            buy_price=order.price,
            buy_time=now_ms(),
            order_id=order.order_id,
        )
        try:
            await asyncio.to_thread(self.ledger.insert_open, trade)
        except PersistenceError as e:
            await self._reconciliation_alert("buy", name, order, e)
            return None

        if not self.state.positions.add(name, Position.from_trade(trade)):
            logger.error(f"Position index out of sync after buy | token={name} trade_id={trade.id}")
        logger.info(f"Opened | token={name} trade_id={trade.id} amount={amount} price={order.price} order_id={order.order_id}")
        await self.sink.emit(NEW_TRADE, NewTradeEvent.from_trade(trade))
        return trade

    async def sell_trade(self, trade: Trade) -> Optional[Trade]:
        """Evaluate one open trade and close it on a SELL.

        Returns:
            The closed trade, or None when held (or lost the close race)
        """
        name = trade.token_name
        if name in self.state.unreconciled_tokens:
            return None
        history = await self._bounded(self.market_data.get_price_history(name))
        price = history.latest_price
        if history.simulated or price is None:
            logger.warning(f"Sell evaluation skipped, no genuine current price | token={name} trade_id={trade.id}")
            return None

        profit_loss = compute_profit_loss(trade.buy_price, price, trade.amount)
        decision = await self._bounded(self.advisory.evaluate_sell(trade, history, price, profit_loss))
        if decision.failed:
            self.state.counters["advisory_failures"] += 1
        if not decision.is_sell:
            logger.debug(f"Hold | token={name} trade_id={trade.id} unrealized={profit_loss}")
            return None

        order = await self.venue.submit_sell(name, trade.amount, price)
        self.state.counters["sells"] += 1
        try:
            closed = await asyncio.to_thread(
                self.ledger.close_trade, trade.id, order.price, now_ms(), order.order_id
            )
        except AlreadyClosed:
            logger.warning(f"Trade already closed by another cycle | token={name} trade_id={trade.id}")
            self.state.positions.remove(name)
            return None
        except PersistenceError as e:
            await self._reconciliation_alert("sell", name, order, e, trade_id=trade.id)
            return None

        self.state.positions.remove(name)
        logger.info(
            f"Closed | token={name} trade_id={closed.id} price={closed.sell_price} profit_loss={closed.profit_loss}"
        )
        await self.sink.emit(TRADE_UPDATED, TradeUpdatedEvent.from_trade(closed))
        return closed

    async def _reconciliation_alert(
        self, phase: str, token: str, order: VenueOrder, error: Exception, trade_id: Optional[int] = None
    ) -> None:
        alert = ReconciliationAlertEvent(
            phase=phase,
            token_name=token,
            order_id=order.order_id,
            error=str(error),
            time=now_ms(),
            trade_id=trade_id,
        )
        self.state.unreconciled.append(alert.to_payload())
        self.state.unreconciled_tokens.add(token)
        logger.bind(reconcile=True).critical(
            f"RECONCILE: {phase} executed at venue but ledger write failed | token={token} "
            f"order_id={order.order_id} size={order.size} price={order.price} trade_id={trade_id} error={error}; token frozen until cleared"
        )
        await self.sink.emit(RECONCILIATION_ALERT, alert)
