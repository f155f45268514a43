"""aiohttp administrative server for the trading loop.

Routes:
    GET  /health                liveness plus a ledger check (503 when the ledger fails)
    GET  /metrics               Prometheus text counters
    GET  /api/status            loop status, engine state and P&L summary
    GET  /api/trades            ledger listing, optional ?status=open|closed
    POST /api/loop/start        start the periodic loop
    POST /api/loop/stop         stop the periodic loop (an in-flight cycle completes)
    POST /api/trigger           run one cycle in the background
    POST /api/reconcile/{token} unfreeze a token after its ledger row was repaired by hand
    GET  /ws                    observer websocket (snapshot, then live events)

When an admin API key is configured the POST routes require it in ``X-API-Key``.
"""

import asyncio
import hmac
import time
from typing import Optional

from aiohttp import web

from .engine import TradingEngine
from .errors import PersistenceError
from .ledger import TradeLedger
from .logging_setup import logger
from .notifications import WebSocketBroadcaster
from .pnl import summarize
from .scheduler import TradingLoop
from .trade import TradeStatus


class AdminServer:
    def __init__(
        self,
        loop: TradingLoop,
        engine: TradingEngine,
        ledger: TradeLedger,
        broadcaster: WebSocketBroadcaster,
        api_key: Optional[str] = None,
    ):
        self.loop = loop
        self.engine = engine
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.api_key = api_key
        self.start_time = time.time()
        self.app = web.Application()
        self._setup_routes()

    def _setup_routes(self):
        self.app.router.add_get("/health", self.handle_health)
        self.app.router.add_get("/metrics", self.handle_metrics)
        self.app.router.add_get("/api/status", self.handle_status)
        self.app.router.add_get("/api/trades", self.handle_trades)
        self.app.router.add_post("/api/loop/start", self.handle_start)
        self.app.router.add_post("/api/loop/stop", self.handle_stop)
        self.app.router.add_post("/api/trigger", self.handle_trigger)
        self.app.router.add_post("/api/reconcile/{token}", self.handle_reconcile)
        self.app.router.add_get("/ws", self.broadcaster.handle_ws)

    def _check_auth(self, request: web.Request) -> bool:
        if not self.api_key:
            # no key configured - allow access (dev mode)
            return True
        supplied = request.headers.get("X-API-Key", "")
        return hmac.compare_digest(supplied.encode(), self.api_key.encode())

    def _unauthorized(self, request: web.Request) -> web.Response:
        logger.warning(f"Rejected unauthenticated {request.method} {request.path} from {request.remote}")
        return web.json_response({"error": "unauthorized"}, status=401)

    async def handle_health(self, request: web.Request):
        """Liveness plus ledger readability; 503 if the ledger check fails."""
        checks = {
            "status": "healthy",
            "timestamp": int(time.time()),
            "uptime_seconds": time.time() - self.start_time,
            "checks": {"loop": self.loop.status()["status"]},
        }
        try:
            open_trades = await asyncio.to_thread(self.ledger.select_open)
            checks["checks"]["ledger"] = {"status": "up", "open_trades": len(open_trades)}
        except PersistenceError as e:
            checks["checks"]["ledger"] = {"status": "down", "error": str(e)}
            checks["status"] = "unhealthy"
        checks["checks"]["websockets"] = {"connected_clients": len(self.broadcaster.clients)}
        return web.json_response(checks, status=200 if checks["status"] == "healthy" else 503)

    async def handle_metrics(self, request: web.Request):
        """Prometheus text format."""
        counters = self.engine.state.counters
        uptime_seconds = int(time.time() - self.start_time)
        running = 1 if self.loop.running else 0

        metrics_text = f"""# HELP spot_trader_uptime_seconds Server uptime in seconds
# TYPE spot_trader_uptime_seconds gauge
spot_trader_uptime_seconds {uptime_seconds}

# HELP spot_trader_loop_running Whether the trading loop is scheduled
# TYPE spot_trader_loop_running gauge
spot_trader_loop_running {running}

# HELP spot_trader_cycles_total Completed or attempted decision cycles
# TYPE spot_trader_cycles_total counter
spot_trader_cycles_total {counters["cycles"]}

# HELP spot_trader_buys_total Buy orders accepted by the venue
# TYPE spot_trader_buys_total counter
spot_trader_buys_total {counters["buys"]}

# HELP spot_trader_sells_total Sell orders accepted by the venue
# TYPE spot_trader_sells_total counter
spot_trader_sells_total {counters["sells"]}

# HELP spot_trader_advisory_failures_total Advisory calls that failed or could not be parsed
# TYPE spot_trader_advisory_failures_total counter
spot_trader_advisory_failures_total {counters["advisory_failures"]}

# HELP spot_trader_token_errors_total Per-token failures caught at the token boundary
# TYPE spot_trader_token_errors_total counter
spot_trader_token_errors_total {counters["token_errors"]}

# HELP spot_trader_open_positions Positions currently tracked
# TYPE spot_trader_open_positions gauge
spot_trader_open_positions {len(self.engine.state.positions)}

# HELP spot_trader_unreconciled Executions awaiting manual reconciliation
# TYPE spot_trader_unreconciled gauge
spot_trader_unreconciled {len(self.engine.state.unreconciled)}

# HELP spot_trader_ws_clients Active WebSocket connections
# TYPE spot_trader_ws_clients gauge
spot_trader_ws_clients {len(self.broadcaster.clients)}
"""
        return web.Response(text=metrics_text, content_type="text/plain")

    async def handle_status(self, request: web.Request):
        try:
            trades = await asyncio.to_thread(self.ledger.select_all)
            pnl = summarize(trades).to_dict()
        except PersistenceError as e:
            pnl = {"error": str(e)}
        return web.json_response(
            {
                "loop": self.loop.status(),
                "engine": self.engine.state.to_dict(),
                "pnl": pnl,
            }
        )

    async def handle_trades(self, request: web.Request):
        status = request.query.get("status")
        if status is None:
            query = self.ledger.select_all
        elif status == TradeStatus.OPEN.value:
            query = self.ledger.select_open
        elif status == TradeStatus.CLOSED.value:
            query = self.ledger.select_closed
        else:
            return web.json_response({"error": "status must be 'open' or 'closed'"}, status=400)
        try:
            trades = await asyncio.to_thread(query)
        except PersistenceError as e:
            return web.json_response({"error": str(e)}, status=500)
        return web.json_response({"trades": [t.to_dict() for t in trades]})

    async def handle_start(self, request: web.Request):
        if not self._check_auth(request):
            return self._unauthorized(request)
        return web.json_response({"result": self.loop.start(), "loop": self.loop.status()})

    async def handle_stop(self, request: web.Request):
        if not self._check_auth(request):
            return self._unauthorized(request)
        return web.json_response({"result": self.loop.stop(), "loop": self.loop.status()})

    async def handle_trigger(self, request: web.Request):
        if not self._check_auth(request):
            return self._unauthorized(request)
        result = self.loop.trigger_once()
        return web.json_response({"result": result, "loop": self.loop.status()}, status=202 if result == "triggered" else 200)

    async def handle_reconcile(self, request: web.Request):
        if not self._check_auth(request):
            return self._unauthorized(request)
        token = request.match_info["token"]
        if not self.engine.state.clear_unreconciled(token):
            return web.json_response({"result": "not_frozen", "token": token}, status=404)
        logger.warning(f"Reconciliation cleared by operator | token={token}")
        return web.json_response({"result": "cleared", "token": token})
