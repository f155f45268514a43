"""
Execution venue clients.

``HttpVenueClient`` builds an order payload, signs it with ``OrderSigner`` and
POSTs it to ``<base_url>/exchange``. It never retries: a failed submission
needs a fresh decision cycle, and every submission carries a fresh client
order id so a caller-level retry cannot double-execute.

``PaperVenue`` fills everything in memory; it backs dry runs and tests.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import aiohttp

from .config import VenueConfig
from .errors import VenueRejected, VenueUnavailable
from .logging_setup import logger
from .rate_limit import RateLimitManager, RateLimitQuota
from .signing import NonceGenerator, OrderSigner, client_order_id


class OrderSide(str, Enum):
    """Order side: buy or sell."""

    BUY = "buy"
    SELL = "sell"


@dataclass
class VenueOrder:
    """A venue-acknowledged order.

    Attributes:
        order_id: Venue-assigned order id
        client_order_id: Our id for the submission
        side: buy or sell
        token: Token symbol
        size: Quantity
        price: Limit or reference price
    """

    order_id: str
    client_order_id: str
    side: OrderSide
    token: str
    size: Decimal
    price: Decimal


class ExecutionVenue(ABC):
    """Abstract execution venue.

    Implementations raise VenueRejected when the order is refused and
    VenueUnavailable on transport failure; they never return a sentinel.
    """

    @abstractmethod
    async def submit_buy(self, token: str, amount: Decimal, price: Decimal) -> VenueOrder:
        """Place a buy for ``amount`` of ``token`` at ``price``."""

    @abstractmethod
    async def submit_sell(self, token: str, amount: Decimal, price: Decimal) -> VenueOrder:
        """Place a sell for ``amount`` of ``token`` at ``price``."""

    async def close(self) -> None:
        return None


def extract_order_id(body: Any) -> Optional[str]:
    """Find the venue order id in a success reply.

    Accepts ``{"orderId": ...}`` and the Hyperliquid shape
    ``{"status": "ok", "response": {"data": {"statuses": [{"resting": {"oid": ...}}]}}}``.

    Raises:
        VenueRejected: the body reports an error
    """
    if not isinstance(body, dict):
        return None
    if body.get("status") == "err":
        raise VenueRejected(f"Venue error: {body.get('response')}", body=str(body))
    if body.get("orderId") is not None:
        return str(body["orderId"])

    response = body.get("response")
    data = response.get("data") if isinstance(response, dict) else None
    statuses = data.get("statuses") if isinstance(data, dict) else None
    if not statuses:
        return None
    first = statuses[0]
    if not isinstance(first, dict):
        return None
    if "error" in first:
        raise VenueRejected(f"Order rejected: {first['error']}", body=str(body))
    for key in ("resting", "filled"):
        if isinstance(first.get(key), dict) and first[key].get("oid") is not None:
            return str(first[key]["oid"])
    return None


class HttpVenueClient(ExecutionVenue):
    """Signed-order client for the HTTPS execution venue.

    Usage:
        async with HttpVenueClient(signer, config) as venue:
            order = await venue.submit_buy("HYPE", Decimal("2"), Decimal("5"))
    """

    def __init__(
        self,
        signer: OrderSigner,
        config: VenueConfig,
        *,
        nonces: Optional[NonceGenerator] = None,
        rate_limiter: Optional[RateLimitManager] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.signer = signer
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.nonces = nonces or NonceGenerator()
        self.rate_limiter = rate_limiter or RateLimitManager(
            {"exchange": RateLimitQuota(requests_per_window=config.orders_per_second, window_seconds=1)}
        )
        self.session = session
        self._owns_session = session is None

    async def __aenter__(self):
        if self.session is None:
            self.session = aiohttp.ClientSession()
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self.session and self._owns_session:
            await self.session.close()

    def build_order(self, side: OrderSide, token: str, amount: Decimal, price: Decimal, nonce: int) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "token": token,
            "side": side.value,
            "size": str(amount),
            "clientOrderId": client_order_id(nonce),
            "nonce": nonce,
        }
        if self.config.market_orders:
            payload["market"] = True
        else:
            payload["price"] = str(price)
        return payload

    async def _submit(self, side: OrderSide, token: str, amount: Decimal, price: Decimal) -> VenueOrder:
        if amount <= 0:
            raise ValueError(f"Order size must be positive, got {amount}")
        if not self.session:
            raise VenueUnavailable("Session not initialized; use 'async with' context manager")

        payload = self.build_order(side, token, amount, price, self.nonces.next())
        signed = self.signer.sign(payload)
        await self.rate_limiter.acquire("exchange", max_wait=self.config.timeout)

        logger.info(f"Submitting {side.value} | token={token} size={amount} price={price} cloid={payload['clientOrderId']}")
        try:
            async with self.session.post(
                f"{self.base_url}/exchange",
                json=signed.to_request(),
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            ) as resp:
                text = await resp.text()
                if not (200 <= resp.status < 300):
                    raise VenueRejected(f"{resp.status}: {text[:300]}", status=resp.status, body=text)
                try:
                    body = await resp.json(content_type=None)
                except ValueError as e:
                    raise VenueRejected(f"Unreadable venue reply: {text[:300]}", status=resp.status, body=text) from e
        except asyncio.TimeoutError as e:
            raise VenueUnavailable(f"Venue request timeout for {token} {side.value}") from e
        except aiohttp.ClientError as e:
            raise VenueUnavailable(f"Venue request failed for {token} {side.value}: {e}") from e

        order_id = extract_order_id(body)
        if not order_id:
            raise VenueRejected(f"Venue reply carried no order id: {text[:300]}", status=resp.status, body=text)

        logger.info(f"Order accepted | token={token} side={side.value} order_id={order_id}")
        return VenueOrder(
            order_id=order_id,
            client_order_id=payload["clientOrderId"],
            side=side,
            token=token,
            size=amount,
            price=price,
        )

    async def submit_buy(self, token: str, amount: Decimal, price: Decimal) -> VenueOrder:
        return await self._submit(OrderSide.BUY, token, amount, price)

    async def submit_sell(self, token: str, amount: Decimal, price: Decimal) -> VenueOrder:
        return await self._submit(OrderSide.SELL, token, amount, price)


class PaperVenue(ExecutionVenue):
    """In-memory venue that fills every order at the requested price.

    ``reject_tokens`` and ``unavailable_tokens`` let tests script failures.
    """

    def __init__(self, nonces: Optional[NonceGenerator] = None):
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.nonces = nonces or NonceGenerator()
        self.reject_tokens = set()
        self.unavailable_tokens = set()

    async def _submit(self, side: OrderSide, token: str, amount: Decimal, price: Decimal) -> VenueOrder:
        if token in self.unavailable_tokens:
            raise VenueUnavailable(f"Paper venue unavailable for {token}")
        if token in self.reject_tokens:
            raise VenueRejected(f"Paper venue rejected {side.value} for {token}", status=400)
        nonce = self.nonces.next()
        # nonce-derived so ids stay unique across restarts against the same ledger
        oid = f"paper-{nonce}"
        cloid = client_order_id(nonce)
        self.orders[oid] = {
            "token": token,
            "side": side.value,
            "size": str(amount),
            "price": str(price),
            "client_order_id": cloid,
            "state": "filled",
        }
        return VenueOrder(order_id=oid, client_order_id=cloid, side=side, token=token, size=amount, price=price)

    async def submit_buy(self, token: str, amount: Decimal, price: Decimal) -> VenueOrder:
        return await self._submit(OrderSide.BUY, token, amount, price)

    async def submit_sell(self, token: str, amount: Decimal, price: Decimal) -> VenueOrder:
        return await self._submit(OrderSide.SELL, token, amount, price)
