"""In-process sliding-window rate limiting for billing endpoints.

Counts live in a ``RateLimiter`` instance stored on ``app.state`` rather than
in module globals, so each app (and each test) gets its own store. Counts
reset when the process restarts; a multi-instance deployment needs a shared
store behind the same interface.
"""

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from math import ceil

from fastapi import Depends, Request

from subsync.auth.dependencies import CallerIdentity, get_current_identity
from subsync.billing.errors import RateLimited
from subsync.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPreset:
    """Max ``limit`` requests per ``window_seconds`` for one operation class."""

    limit: int
    window_seconds: float


def default_presets() -> dict[str, RateLimitPreset]:
    return {
        "billing": RateLimitPreset(settings.rate_limit_billing_per_minute, 60.0),
        "webhook": RateLimitPreset(settings.rate_limit_webhook_per_minute, 60.0),
    }


class RateLimiter:
    """Sliding-window log limiter keyed by ``(preset, identifier)``."""

    def __init__(
        self,
        presets: dict[str, RateLimitPreset] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.presets = presets if presets is not None else default_presets()
        self._clock = clock
        self._hits: dict[tuple[str, str], deque[float]] = {}
        self._last_sweep = clock()
        self._sweep_interval = max(
            (p.window_seconds for p in self.presets.values()), default=60.0
        )

    def __len__(self) -> int:
        return len(self._hits)

    def hit(self, preset: str, identifier: str) -> int | None:
        """Record one request.

        Returns ``None`` when allowed, or the number of seconds until the
        oldest counted request leaves the window when the limit is reached.
        Rejected requests are not counted.
        """
        cfg = self.presets[preset]
        now = self._clock()
        self._maybe_sweep(now)

        key = (preset, identifier)
        window = self._hits.setdefault(key, deque())
        cutoff = now - cfg.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()

        if len(window) >= cfg.limit:
            return max(1, ceil(window[0] + cfg.window_seconds - now))

        window.append(now)
        return None

    def check(self, preset: str, identifier: str) -> None:
        """Record one request, raising ``RateLimited`` if over the limit."""
        retry_after = self.hit(preset, identifier)
        if retry_after is not None:
            logger.warning("Rate limit exceeded for %s:%s", preset, identifier)
            raise RateLimited(retry_after)

    def _maybe_sweep(self, now: float) -> None:
        """Drop keys whose newest hit has left every window."""
        if now - self._last_sweep < self._sweep_interval:
            return
        self._last_sweep = now
        stale = [
            key
            for key, window in self._hits.items()
            if not window or window[-1] <= now - self.presets[key[0]].window_seconds
        ]
        for key in stale:
            del self._hits[key]


def get_client_ip(request: Request) -> str:
    """Best identifier for anonymous callers: first forwarded hop, else the peer."""
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    client = request.client
    return client.host if client else "unknown"


def get_rate_limiter(request: Request) -> RateLimiter:
    """Return the app-scoped limiter, creating it on first use."""
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        limiter = RateLimiter()
        request.app.state.rate_limiter = limiter
    return limiter


def limit_user(preset: str):
    """Dependency factory: rate limit an authenticated route per user."""

    async def _dependency(
        identity: CallerIdentity = Depends(get_current_identity),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> CallerIdentity:
        limiter.check(preset, identity.user_id)
        return identity

    return _dependency


def limit_ip(preset: str):
    """Dependency factory: rate limit an anonymous route per client address."""

    async def _dependency(
        request: Request,
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> None:
        limiter.check(preset, get_client_ip(request))

    return _dependency
