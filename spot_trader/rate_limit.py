"""Rate-limit policy: enforce outbound request quotas per endpoint with a sliding window."""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from .errors import UpstreamUnavailable


@dataclass
class RateLimitQuota:
    """Per-endpoint rate-limit quota."""
    requests_per_window: int  # max requests allowed in the window
    window_seconds: float     # time window in seconds


@dataclass
class RateLimitState:
    """Track request history for a single endpoint."""
    quota: RateLimitQuota
    request_times: list = field(default_factory=list)

    def _prune(self, now: float) -> None:
        cutoff = now - self.quota.window_seconds
        self.request_times = [t for t in self.request_times if t > cutoff]

    def is_allowed(self) -> bool:
        """Check if a new request is allowed under the quota."""
        self._prune(time.monotonic())
        return len(self.request_times) < self.quota.requests_per_window

    def record_request(self) -> None:
        self.request_times.append(time.monotonic())

    def time_until_allowed(self) -> float:
        """Return seconds until next request is allowed. 0 if allowed now."""
        if self.is_allowed():
            return 0.0
        oldest = min(self.request_times)
        return max(0.0, oldest + self.quota.window_seconds - time.monotonic())


class RateLimitManager:
    """Enforce rate-limit quotas per endpoint key."""

    # CoinGecko public tier allows roughly 30 calls/minute
    DEFAULT_QUOTAS = {
        "coingecko": RateLimitQuota(requests_per_window=30, window_seconds=60),
        "info": RateLimitQuota(requests_per_window=20, window_seconds=1),
        "exchange": RateLimitQuota(requests_per_window=5, window_seconds=1),
        "default": RateLimitQuota(requests_per_window=10, window_seconds=1),
    }

    def __init__(self, quotas: Optional[Dict[str, RateLimitQuota]] = None):
        self.quotas = dict(self.DEFAULT_QUOTAS)
        if quotas:
            self.quotas.update(quotas)
        self.states: Dict[str, RateLimitState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get_state(self, endpoint: str) -> RateLimitState:
        if endpoint not in self.states:
            quota = self.quotas.get(endpoint, self.quotas["default"])
            self.states[endpoint] = RateLimitState(quota=quota)
        return self.states[endpoint]

    def is_allowed(self, endpoint: str) -> bool:
        return self._get_state(endpoint).is_allowed()

    def record_request(self, endpoint: str) -> None:
        self._get_state(endpoint).record_request()

    def time_until_allowed(self, endpoint: str) -> float:
        return self._get_state(endpoint).time_until_allowed()

    async def acquire(self, endpoint: str, max_wait: float = 30.0) -> None:
        """Wait for a free slot on ``endpoint`` and claim it.

        Raises:
            UpstreamUnavailable: if the slot would not free up within max_wait
        """
        start = time.monotonic()
        lock = self._locks.setdefault(endpoint, asyncio.Lock())
        async with lock:
            while not self.is_allowed(endpoint):
                wait_time = self.time_until_allowed(endpoint)
                elapsed = time.monotonic() - start
                if elapsed + wait_time > max_wait:
                    raise UpstreamUnavailable(
                        f"Rate limit for {endpoint} would need {wait_time:.1f}s, over the {max_wait:.1f}s budget"
                    )
                await asyncio.sleep(wait_time)
            self.record_request(endpoint)
