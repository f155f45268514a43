"""Failure taxonomy shared by the market data, advisory, venue and ledger layers.

Recoverability is decided by the engine at the token boundary:

    UpstreamUnavailable   skip the token for this cycle
    AdvisoryFailure       treated as "no action"
    VenueRejected         log and skip
    PersistenceError      surfaced as a reconciliation alert after an execution
    AlreadyClosed         benign, the other closer won the race
    SigningError          fatal, stops the loop
"""
from typing import Optional


class TradingError(Exception):
    """Base class for every error raised by spot_trader."""


class UpstreamUnavailable(TradingError):
    """An external provider could not be reached or answered with an error."""


class VenueUnavailable(UpstreamUnavailable):
    """Transport failure or timeout talking to the execution venue."""


class AdvisoryFailure(TradingError):
    """The advisory call failed or its reply carried no recognizable marker."""


class SigningError(TradingError):
    """The account key is missing or invalid, or signing failed."""


class VenueRejected(TradingError):
    """The venue refused the order."""

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.body = body


class PersistenceError(TradingError):
    """The trade ledger could not complete a read or write."""


class TradeNotFound(PersistenceError):
    """No trade row exists for the requested id."""


class AlreadyClosed(TradingError):
    """Conditional close found the trade no longer open."""

    def __init__(self, trade_id: int):
        super().__init__(f"Trade {trade_id} is not open")
        self.trade_id = trade_id
