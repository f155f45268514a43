from decimal import Decimal

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from spot_trader.config import VenueConfig
from spot_trader.errors import VenueRejected, VenueUnavailable
from spot_trader.signing import OrderSigner, SignedOrder, canonical_json
from spot_trader.venue import HttpVenueClient, OrderSide, PaperVenue, extract_order_id

TEST_KEY = "0x" + "4c" * 32


class FakeExchange:
    def __init__(self, reply=None, status=200):
        self.reply = reply if reply is not None else {"orderId": "v-1"}
        self.status = status
        self.requests = []
        self.app = web.Application()
        self.app.router.add_post("/exchange", self.exchange)

    async def exchange(self, request):
        self.requests.append(await request.json())
        if isinstance(self.reply, str):
            return web.Response(text=self.reply, status=self.status)
        return web.json_response(self.reply, status=self.status)


async def _submit(exchange, side=OrderSide.BUY, **config):
    signer = OrderSigner(TEST_KEY)
    async with TestServer(exchange.app) as server:
        cfg = VenueConfig(base_url=str(server.make_url("/")), timeout=5, **config)
        async with HttpVenueClient(signer, cfg) as venue:
            if side is OrderSide.BUY:
                return await venue.submit_buy("HYPE", Decimal("2"), Decimal("5"))
            return await venue.submit_sell("HYPE", Decimal("2"), Decimal("5"))


@pytest.mark.asyncio
async def test_submit_buy_posts_signed_order():
    exchange = FakeExchange()
    order = await _submit(exchange)

    assert order.order_id == "v-1"
    assert order.side is OrderSide.BUY
    assert order.size == Decimal("2")
    assert len(exchange.requests) == 1

    body = exchange.requests[0]
    payload = body["order"]
    assert payload["token"] == "HYPE"
    assert payload["side"] == "buy"
    assert payload["size"] == "2"
    assert payload["price"] == "5"
    assert payload["clientOrderId"] == order.client_order_id
    assert body["nonce"] == payload["nonce"]

    # the venue can verify the detached signature from the body alone
    signed = SignedOrder(
        payload=payload,
        canonical=canonical_json(payload).decode(),
        digest=body["digest"],
        signature=body["signature"],
        signer=body["signer"],
    )
    assert OrderSigner.recover_signer(signed) == OrderSigner(TEST_KEY).address


@pytest.mark.asyncio
async def test_submit_sell_sets_side():
    exchange = FakeExchange()
    order = await _submit(exchange, side=OrderSide.SELL)
    assert order.side is OrderSide.SELL
    assert exchange.requests[0]["order"]["side"] == "sell"


@pytest.mark.asyncio
async def test_market_orders_send_flag_instead_of_price():
    exchange = FakeExchange()
    await _submit(exchange, market_orders=True)
    payload = exchange.requests[0]["order"]
    assert payload["market"] is True
    assert "price" not in payload


@pytest.mark.asyncio
async def test_hyperliquid_style_reply():
    exchange = FakeExchange({"status": "ok", "response": {"type": "order", "data": {"statuses": [{"resting": {"oid": 77738308}}]}}})
    order = await _submit(exchange)
    assert order.order_id == "77738308"


@pytest.mark.asyncio
async def test_http_error_is_rejection_without_retry():
    exchange = FakeExchange({"error": "bad order"}, status=400)
    with pytest.raises(VenueRejected) as exc:
        await _submit(exchange)
    assert exc.value.status == 400
    assert len(exchange.requests) == 1


@pytest.mark.asyncio
async def test_server_error_is_not_retried():
    exchange = FakeExchange({"error": "oops"}, status=500)
    with pytest.raises(VenueRejected):
        await _submit(exchange)
    assert len(exchange.requests) == 1


@pytest.mark.asyncio
async def test_error_status_body_is_rejection():
    exchange = FakeExchange({"status": "err", "response": "Insufficient spot balance"})
    with pytest.raises(VenueRejected, match="Insufficient"):
        await _submit(exchange)


@pytest.mark.asyncio
async def test_per_order_error_is_rejection():
    exchange = FakeExchange({"status": "ok", "response": {"data": {"statuses": [{"error": "Order must have minimum value of $10."}]}}})
    with pytest.raises(VenueRejected, match="minimum value"):
        await _submit(exchange)


@pytest.mark.asyncio
async def test_reply_without_order_id_is_rejection():
    with pytest.raises(VenueRejected, match="no order id"):
        await _submit(FakeExchange({}))


@pytest.mark.asyncio
async def test_unreadable_reply_is_rejection():
    with pytest.raises(VenueRejected):
        await _submit(FakeExchange("<html>gateway</html>"))


@pytest.mark.asyncio
async def test_transport_failure_is_venue_unavailable():
    signer = OrderSigner(TEST_KEY)
    exchange = FakeExchange()
    server = TestServer(exchange.app)
    await server.start_server()
    base_url = str(server.make_url("/"))
    await server.close()

    async with HttpVenueClient(signer, VenueConfig(base_url=base_url, timeout=2)) as venue:
        with pytest.raises(VenueUnavailable):
            await venue.submit_buy("HYPE", Decimal("2"), Decimal("5"))


@pytest.mark.asyncio
async def test_each_submission_gets_fresh_client_order_id():
    exchange = FakeExchange()
    signer = OrderSigner(TEST_KEY)
    async with TestServer(exchange.app) as server:
        cfg = VenueConfig(base_url=str(server.make_url("/")), timeout=5)
        async with HttpVenueClient(signer, cfg) as venue:
            first = await venue.submit_buy("HYPE", Decimal("1"), Decimal("5"))
            second = await venue.submit_buy("HYPE", Decimal("1"), Decimal("5"))
    assert first.client_order_id != second.client_order_id


@pytest.mark.asyncio
async def test_non_positive_size_is_refused_before_sending():
    exchange = FakeExchange()
    with pytest.raises(ValueError):
        signer = OrderSigner(TEST_KEY)
        async with TestServer(exchange.app) as server:
            cfg = VenueConfig(base_url=str(server.make_url("/")), timeout=5)
            async with HttpVenueClient(signer, cfg) as venue:
                await venue.submit_buy("HYPE", Decimal("0"), Decimal("5"))
    assert exchange.requests == []


def test_extract_order_id_variants():
    assert extract_order_id({"orderId": 12}) == "12"
    assert extract_order_id({"status": "ok", "response": {"data": {"statuses": [{"filled": {"oid": 5, "avgPx": "1"}}]}}}) == "5"
    assert extract_order_id({"status": "ok"}) is None
    assert extract_order_id([1, 2]) is None


@pytest.mark.asyncio
async def test_paper_venue_fills_and_scripts_failures():
    venue = PaperVenue()
    order = await venue.submit_buy("HYPE", Decimal("2"), Decimal("5"))
    assert order.order_id in venue.orders
    assert venue.orders[order.order_id]["side"] == "buy"

    venue.reject_tokens.add("BAD")
    with pytest.raises(VenueRejected):
        await venue.submit_buy("BAD", Decimal("1"), Decimal("1"))

    venue.unavailable_tokens.add("DOWN")
    with pytest.raises(VenueUnavailable):
        await venue.submit_sell("DOWN", Decimal("1"), Decimal("1"))
    assert len(venue.orders) == 1
