"""In-memory fixed-window rate limiter.

Each key gets an independent window that opens on its first request. Once
``max_requests`` requests land inside the window, further checks are denied
until the window elapses. State lives in process memory only; a restart
resets every window.

Counters are mutated synchronously between awaits, which is safe on a single
asyncio event loop. Sharing one limiter across threads would need a lock.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from starlette.requests import Request

logger = logging.getLogger(__name__)

_DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0


@dataclass(frozen=True)
class RateLimiterOptions:
    max_requests: int
    window_ms: int

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if self.window_ms < 1:
            raise ValueError("window_ms must be at least 1")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_ms: int = 0


@dataclass
class _Window:
    started_at: float
    count: int


class RateLimiter:
    """Fixed-window request gate keyed by an arbitrary string.

    Usage::

        limiter = RateLimiter(RateLimiterOptions(max_requests=2, window_ms=60_000))
        limiter.check("user1")  # allowed
        limiter.check("user1")  # allowed
        limiter.check("user1")  # denied, retry_after_ms > 0
        await limiter.close()
    """

    def __init__(
        self,
        options: RateLimiterOptions,
        *,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval_seconds: float = _DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self._options = options
        self._clock = clock
        self._sweep_interval_seconds = sweep_interval_seconds
        self._windows: dict[str, _Window] = {}
        self._sweeper: asyncio.Task[None] | None = None

    @property
    def options(self) -> RateLimiterOptions:
        return self._options

    def check(self, key: str) -> RateLimitDecision:
        now_ms = self._clock() * 1000.0
        window = self._windows.get(key)

        if window is None or now_ms - window.started_at >= self._options.window_ms:
            self._windows[key] = _Window(started_at=now_ms, count=1)
            return RateLimitDecision(allowed=True)

        if window.count >= self._options.max_requests:
            remaining = window.started_at + self._options.window_ms - now_ms
            # Round up so callers never sleep short and get denied again.
            return RateLimitDecision(allowed=False, retry_after_ms=max(1, int(remaining + 0.999)))

        window.count += 1
        return RateLimitDecision(allowed=True)

    async def acquire(self, key: str) -> float:
        """Wait until *key* is allowed; returns the seconds spent waiting."""
        waited = 0.0
        while True:
            decision = self.check(key)
            if decision.allowed:
                return waited
            delay = decision.retry_after_ms / 1000.0
            logger.debug("Rate limit reached for %s; waiting %.3fs", key, delay)
            await asyncio.sleep(delay)
            waited += delay

    def sweep(self) -> int:
        """Drop windows that have fully elapsed; returns how many were removed."""
        now_ms = self._clock() * 1000.0
        expired = [
            key
            for key, window in self._windows.items()
            if now_ms - window.started_at >= self._options.window_ms
        ]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def start(self) -> None:
        """Start the periodic sweeper on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._run_sweeper(), name="rate-limit-sweeper")

    async def _run_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_seconds)
            removed = self.sweep()
            if removed:
                logger.debug("Rate limiter swept %d expired window(s)", removed)

    async def close(self) -> None:
        """Cancel the sweeper task and forget every window."""
        if self._sweeper is not None and not self._sweeper.done():
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
        self._sweeper = None
        self._windows.clear()


def rate_limit_key(request: Request) -> str:
    """Derive a per-client key from ``X-Forwarded-For`` or the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"
