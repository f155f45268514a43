"""Periodic driver for the trading engine.

``TradingLoop`` runs ``engine.run_cycle()`` every ``interval_seconds``. A cycle
that fails shortens the next wait to ``error_retry_seconds``; a SigningError
stops the loop for good. ``stop()`` only prevents the next tick: a cycle that
is already running completes.
"""
import asyncio
from typing import Any, Dict, Optional

from .errors import SigningError
from .logging_setup import logger
from .trade import now_ms

RUNNING = "running"
STOPPED = "stopped"
ALREADY_RUNNING = "already_running"
NOT_RUNNING = "not_running"
TRIGGERED = "triggered"
BUSY = "busy"
FAILED = "failed"


class TradingLoop:
    """Start/stop/trigger control over the engine's cycles."""

    def __init__(self, engine, interval_seconds: float = 60.0, error_retry_seconds: float = 15.0):
        self.engine = engine
        self.interval = interval_seconds
        self.error_retry = error_retry_seconds
        self._task: Optional[asyncio.Task] = None
        self._trigger_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._cycle_lock = asyncio.Lock()
        self.last_error: Optional[str] = None
        self.fatal_error: Optional[str] = None
        self.next_run_at: Optional[int] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._stop_event.is_set()

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_lock.locked()

    def start(self) -> str:
        """Start ticking. Idempotent; returns the resulting status."""
        if self.fatal_error:
            logger.error(f"Refusing to start after fatal error: {self.fatal_error}")
            return FAILED
        if self._task is not None and not self._task.done():
            if not self._stop_event.is_set():
                return ALREADY_RUNNING
            # stopped while a cycle was finishing: keep the same task ticking
            self._stop_event.clear()
            logger.info("Trading loop resumed")
            return RUNNING
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Trading loop started | interval={self.interval}s")
        return RUNNING

    def stop(self) -> str:
        """Stop scheduling further cycles. Idempotent; returns the resulting status."""
        if not self.running:
            return NOT_RUNNING
        self._stop_event.set()
        self.next_run_at = None
        logger.info("Trading loop stopped")
        return STOPPED

    def trigger_once(self) -> str:
        """Schedule one background cycle unless a cycle is already running."""
        if self.fatal_error:
            return FAILED
        if self.cycle_in_progress or (self._trigger_task is not None and not self._trigger_task.done()):
            return BUSY
        self._trigger_task = asyncio.create_task(self._cycle())
        return TRIGGERED

    def status(self) -> Dict[str, Any]:
        return {
            "status": FAILED if self.fatal_error else (RUNNING if self.running else STOPPED),
            "cycle_in_progress": self.cycle_in_progress,
            "interval_seconds": self.interval,
            "error_retry_seconds": self.error_retry,
            "next_run_at": self.next_run_at,
            "last_error": self.last_error,
            "fatal_error": self.fatal_error,
        }

    async def _cycle(self) -> bool:
        """Run one engine cycle. Returns False when it failed."""
        if self._cycle_lock.locked():
            logger.warning("Previous cycle still running, skipping this tick")
            return True
        async with self._cycle_lock:
            try:
                await self.engine.run_cycle()
            except SigningError as e:
                self.fatal_error = str(e)
                self._stop_event.set()
                logger.critical(f"Signing error, trading loop halted: {e}")
                return False
            except Exception as e:
                self.last_error = f"{type(e).__name__}: {e}"
                logger.exception(f"Cycle failed: {e}")
                return False
            self.last_error = None
            return True

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            ok = await self._cycle()
            if self.fatal_error:
                break
            delay = self.interval if ok else self.error_retry
            self.next_run_at = now_ms() + int(delay * 1000)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Stop and wait for the in-flight cycle (if any) to finish."""
        self.stop()
        for task in (self._task, self._trigger_task):
            if task is None or task.done():
                continue
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("In-flight cycle did not finish before shutdown, cancelling")
                task.cancel()
