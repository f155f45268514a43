"""
Spot Advisory Trading Engine.

A single-account spot trading loop that:
- Reads the venue's token universe and CoinGecko price history
- Asks an LLM advisory service for buy / sell recommendations
- Signs orders with the account's secp256k1 key and submits them to the venue
- Records every trade in a SQLite ledger (the source of truth across restarts)
- Broadcasts ledger mutations to websocket observers
- Exposes start / stop / trigger controls over an aiohttp admin server

Core Modules:
    market_data: Universe metadata (TTL cached) and price history
    advisory: Advisory client and reply parsers
    signing: Canonical serialization, nonces and order signatures
    venue: Execution venue interface, HTTP client and paper venue
    ledger: Trade ledger with conditional close
    position: In-memory position index
    engine: Buy / sell decision cycle and EngineState
    scheduler: Periodic trading loop
    notifications: Event models and websocket broadcaster
    admin_server: HTTP administrative surface
    config: Configuration loading and validation
    secrets: Credential management

Example:
    >>> from spot_trader.config import TradingConfig
    >>> from spot_trader.ledger import TradeLedger
    >>> from spot_trader.venue import PaperVenue
    >>>
    >>> config = TradingConfig.default()
    >>> ledger = TradeLedger(config.persistence.db_path)
    >>> venue = PaperVenue()
"""

__version__ = "0.1.0"
__all__ = [
    "advisory",
    "admin_server",
    "config",
    "db_migrations",
    "engine",
    "errors",
    "ledger",
    "logging_setup",
    "market_data",
    "notifications",
    "pnl",
    "position",
    "rate_limit",
    "scheduler",
    "secrets",
    "signing",
    "trade",
    "venue",
]
