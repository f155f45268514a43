"""Market data gateway: token universe metadata and price history.

The universe comes from the venue's ``spotMeta`` info query and is cached for
``metadata_ttl_seconds``. Price history comes from CoinGecko's market_chart and
is never cached. Tokens without a provider mapping (or whose fetch fails) get a
synthetic hourly series flagged ``simulated=True`` so the engine can refuse to
trade on it.
"""
import asyncio
import random
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp

from .config import MarketDataConfig
from .errors import UpstreamUnavailable
from .logging_setup import logger
from .rate_limit import RateLimitManager, RateLimitQuota
from .trade import now_ms

HOUR_MS = 60 * 60 * 1000


@dataclass(frozen=True)
class PricePoint:
    timestamp_ms: int
    price: Decimal


@dataclass
class PriceHistory:
    """Price series for one token, oldest point first."""
    token: str
    points: List[PricePoint]
    simulated: bool = False

    @property
    def latest_price(self) -> Optional[Decimal]:
        if not self.points:
            return None
        return self.points[-1].price

    def to_payload(self, max_points: Optional[int] = None) -> Dict[str, Any]:
        """JSON-safe form, keeping only the newest ``max_points`` points."""
        points = self.points[-max_points:] if max_points else self.points
        return {
            "token": self.token,
            "simulated": self.simulated,
            "prices": [{"t": p.timestamp_ms, "price": float(p.price)} for p in points],
        }


@dataclass
class TokenInfo:
    """One entry of the venue's spot token universe."""
    name: str
    index: Optional[int] = None
    token_id: Optional[str] = None
    sz_decimals: Optional[int] = None
    wei_decimals: Optional[int] = None
    is_canonical: bool = False
    evm_contract: Optional[str] = None
    full_name: Optional[str] = None
    deployer_trading_fee_share: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @staticmethod
    def from_meta(entry: Dict[str, Any]) -> "TokenInfo":
        evm = entry.get("evmContract")
        if isinstance(evm, dict):
            evm = evm.get("address")
        return TokenInfo(
            name=entry["name"],
            index=entry.get("index"),
            token_id=entry.get("tokenId"),
            sz_decimals=entry.get("szDecimals"),
            wei_decimals=entry.get("weiDecimals"),
            is_canonical=bool(entry.get("isCanonical", False)),
            evm_contract=evm,
            full_name=entry.get("fullName"),
            deployer_trading_fee_share=entry.get("deployerTradingFeeShare"),
            raw=entry,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "fullName": self.full_name,
            "isCanonical": self.is_canonical,
            "evmContract": self.evm_contract,
            "szDecimals": self.sz_decimals,
            "weiDecimals": self.wei_decimals,
            "deployerTradingFeeShare": self.deployer_trading_fee_share,
        }


class TTLCache:
    """Small monotonic-clock TTL cache with hit/miss statistics."""

    def __init__(self, ttl_seconds: float):
        self.ttl_seconds = ttl_seconds
        self._data: Dict[str, tuple] = {}
        self.stats = {"hits": 0, "misses": 0, "sets": 0}

    def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            self.stats["misses"] += 1
            return None
        stored_at, value = entry
        if time.monotonic() - stored_at > self.ttl_seconds:
            del self._data[key]
            self.stats["misses"] += 1
            return None
        self.stats["hits"] += 1
        return value

    def set(self, key: str, value: Any) -> None:
        self._data[key] = (time.monotonic(), value)
        self.stats["sets"] += 1

    def invalidate(self, key: Optional[str] = None) -> None:
        if key is None:
            self._data.clear()
        else:
            self._data.pop(key, None)


def simulated_series(token: str, days: int, end_ms: Optional[int] = None, rng: Optional[random.Random] = None) -> PriceHistory:
    """Hourly points perturbed by up to +/-5% around 1.0, ending at ``end_ms``."""
    rng = rng or random.Random()
    end_ms = end_ms if end_ms is not None else now_ms()
    count = days * 24
    points = [
        PricePoint(
            timestamp_ms=end_ms - (count - i - 1) * HOUR_MS,
            price=Decimal(str(round(1 + (rng.random() - 0.5) * 0.1, 8))),
        )
        for i in range(count)
    ]
    return PriceHistory(token=token, points=points, simulated=True)


class MarketDataGateway:
    """Async gateway to the universe and price history providers.

    Usage:
        async with MarketDataGateway(config) as gateway:
            tokens = await gateway.get_universe()
            history = await gateway.get_price_history("HYPE")
    """

    MAX_429_RETRIES = 3

    def __init__(
        self,
        config: MarketDataConfig,
        *,
        rate_limiter: Optional[RateLimitManager] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config
        self.rate_limiter = rate_limiter or RateLimitManager(
            {"coingecko": RateLimitQuota(requests_per_window=config.requests_per_minute, window_seconds=60)}
        )
        self.session = session
        self._owns_session = session is None
        self._cache = TTLCache(config.metadata_ttl_seconds)

    async def __aenter__(self):
        if self.session is None:
            self.session = aiohttp.ClientSession()
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self.session and self._owns_session:
            await self.session.close()

    @staticmethod
    def _jittered_backoff(attempt: int, base: float = 1.0, max_backoff: float = 30.0) -> float:
        delay = min(base * (2 ** attempt), max_backoff)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0, delay + jitter)

    async def _request(self, method: str, url: str, endpoint: str, *, json_body: Optional[dict] = None, params: Optional[dict] = None, attempt: int = 0) -> Any:
        if not self.session:
            raise UpstreamUnavailable("Session not initialized; use 'async with' context manager")

        await self.rate_limiter.acquire(endpoint, max_wait=self.config.timeout * 3)
        try:
            async with self.session.request(method, url, json=json_body, params=params, timeout=aiohttp.ClientTimeout(total=self.config.timeout)) as resp:
                if resp.status == 429 and attempt < self.MAX_429_RETRIES:
                    backoff = self._jittered_backoff(attempt)
                    logger.warning(f"Rate limited by {endpoint}, retrying in {backoff:.1f}s")
                    await asyncio.sleep(backoff)
                    return await self._request(method, url, endpoint, json_body=json_body, params=params, attempt=attempt + 1)
                if not (200 <= resp.status < 300):
                    text = await resp.text()
                    raise UpstreamUnavailable(f"{endpoint} {resp.status}: {text[:200]}")
                return await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailable(f"{endpoint} request timeout") from e
        except ValueError as e:
            raise UpstreamUnavailable(f"{endpoint} returned invalid JSON: {e}") from e
        except aiohttp.ClientError as e:
            raise UpstreamUnavailable(f"{endpoint} request failed: {e}") from e

    async def get_spot_meta(self) -> Dict[str, Any]:
        """Raw ``spotMeta`` reply, served from cache while fresh."""
        cached = self._cache.get("spotMeta")
        if cached is not None:
            logger.debug("Using cached spot metadata")
            return cached
        logger.info("Fetching spot metadata")
        data = await self._request("POST", self.config.info_url, "info", json_body={"type": "spotMeta"})
        if not isinstance(data, dict):
            raise UpstreamUnavailable(f"Unexpected spotMeta reply: {type(data).__name__}")
        self._cache.set("spotMeta", data)
        return data

    async def get_universe(self) -> List[TokenInfo]:
        """Tradable token descriptors.

        Raises:
            UpstreamUnavailable: provider unreachable or erroring
        """
        meta = await self.get_spot_meta()
        tokens = []
        for entry in meta.get("tokens") or []:
            try:
                tokens.append(TokenInfo.from_meta(entry))
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed token entry {entry!r}: {e}")
        if not tokens:
            # refetch next time instead of serving this for the full TTL
            self._cache.invalidate("spotMeta")
            logger.warning("spotMeta reply held no usable tokens")
        return tokens

    async def get_price_history(self, token: str, lookback_days: Optional[int] = None) -> PriceHistory:
        """Price series for ``token``, oldest first.

        Never raises for provider problems: unmapped tokens and failed fetches
        yield a simulated series instead.
        """
        days = lookback_days or self.config.lookback_days
        coin_id = self.config.token_ids.get(token)
        if coin_id:
            url = f"{self.config.price_url.rstrip('/')}/coins/{coin_id}/market_chart"
            params = {"vs_currency": self.config.vs_currency, "days": str(days)}
            try:
                data = await self._request("GET", url, "coingecko", params=params)
                points = sorted(
                    (PricePoint(int(ts), Decimal(str(price))) for ts, price in data.get("prices", [])),
                    key=lambda p: p.timestamp_ms,
                )
                if points:
                    return PriceHistory(token=token, points=points, simulated=False)
                logger.warning(f"Empty price history for {token}")
            except UpstreamUnavailable as e:
                logger.error(f"Price history fetch failed for {token}: {e}")
            except (AttributeError, TypeError, ValueError, ArithmeticError) as e:
                logger.error(f"Malformed price history for {token}: {e}")

        logger.warning(f"Using simulated price data for {token}")
        return simulated_series(token, days)
