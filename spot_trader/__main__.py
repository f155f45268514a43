"""Run the trading engine with its admin server.

Usage:
    python -m spot_trader --config config.yaml
    python -m spot_trader --paper
"""
import argparse
import sys

import aiohttp
from aiohttp import web

from .admin_server import AdminServer
from .advisory import AdvisoryClient
from .config import TradingConfig
from .engine import TradingEngine
from .errors import PersistenceError, SigningError
from .ledger import TradeLedger
from .logging_setup import logger, setup_logging
from .market_data import MarketDataGateway
from .notifications import WebSocketBroadcaster
from .rate_limit import RateLimitManager, RateLimitQuota
from .scheduler import TradingLoop
from .secrets import Credentials, load_credentials
from .signing import OrderSigner
from .venue import HttpVenueClient, PaperVenue


async def create_app(config: TradingConfig, creds: Credentials, paper: bool = False) -> web.Application:
    """Wire every component into an aiohttp application.

    Startup rebuilds positions from the ledger and, if configured, starts the
    loop; cleanup waits for an in-flight cycle and closes all clients.
    """
    signer = None if paper else OrderSigner(creds.private_key)
    ledger = TradeLedger(config.persistence.db_path)
    session = aiohttp.ClientSession()
    rate_limiter = RateLimitManager(
        {
            "coingecko": RateLimitQuota(requests_per_window=config.market_data.requests_per_minute, window_seconds=60),
            "exchange": RateLimitQuota(requests_per_window=config.venue.orders_per_second, window_seconds=1),
        }
    )

    market_data = MarketDataGateway(config.market_data, rate_limiter=rate_limiter, session=session)
    advisory = AdvisoryClient(config.advisory, creds.advisory_api_key)
    if paper:
        venue = PaperVenue()
        logger.warning("Paper trading: orders are filled in memory, nothing reaches the venue")
    else:
        venue = HttpVenueClient(signer, config.venue, rate_limiter=rate_limiter, session=session)
        logger.info(f"Signing orders as {signer.address}")

    broadcaster = WebSocketBroadcaster(snapshot=ledger.select_all)
    engine = TradingEngine(market_data, advisory, venue, ledger, sink=broadcaster, strategy=config.strategy)
    loop = TradingLoop(
        engine,
        interval_seconds=config.strategy.interval_seconds,
        error_retry_seconds=config.strategy.error_retry_seconds,
    )
    server = AdminServer(loop, engine, ledger, broadcaster, api_key=creds.admin_api_key)

    async def on_startup(app):
        await engine.startup()
        if config.server.autostart_loop:
            loop.start()

    async def on_cleanup(app):
        await loop.shutdown(timeout=config.strategy.token_timeout_seconds)
        await advisory.close()
        await session.close()
        ledger.close()
        logger.info("Shutdown complete")

    server.app.on_startup.append(on_startup)
    server.app.on_cleanup.append(on_cleanup)
    server.app["loop"] = loop
    server.app["engine"] = engine
    return server.app


def main(argv=None):
    parser = argparse.ArgumentParser(description="Spot advisory trading engine")
    parser.add_argument("--config", help="Path to YAML config (defaults apply when omitted)")
    parser.add_argument("--paper", action="store_true", help="Fill orders in memory instead of the venue")
    args = parser.parse_args(argv)

    try:
        config = TradingConfig.from_yaml(args.config) if args.config else TradingConfig.default()
    except (OSError, ValueError, TypeError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(log_file=config.persistence.log_file, level=config.persistence.log_level)

    try:
        creds = load_credentials(require_private_key=not args.paper)
        if not args.paper:
            # validate the key before any network call
            OrderSigner(creds.private_key)
    except (ValueError, SigningError) as e:
        logger.error(f"Failed to load credentials: {e}")
        sys.exit(1)

    logger.info(f"Admin server on http://{config.server.host}:{config.server.port}")
    try:
        web.run_app(create_app(config, creds, paper=args.paper), host=config.server.host, port=config.server.port)
    except PersistenceError as e:
        logger.error(f"Ledger unavailable: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
