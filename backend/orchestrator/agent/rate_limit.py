"""Short-window rate limiting per principal.

Fixed-window counting: the first request from a principal opens a window
with count 1; later requests in the window increment it; requests past the
limit are rejected until the window elapses and the next request opens a
fresh one. Counter state sits behind ``KeyedCounter`` so a shared store can
replace the in-process one on multi-node deployments.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Protocol

from orchestrator.config import Settings
from orchestrator.errors import RateLimitError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowState:
    """Current window for one key."""
    count: int
    resets_in: float  # seconds


class KeyedCounter(Protocol):
    """Fixed-window counter store."""

    def get(self, key: str) -> WindowState | None:
        ...

    def increment(self, key: str, window_seconds: float) -> WindowState:
        ...

    def reset(self, key: str) -> None:
        ...


class InMemoryKeyedCounter:
    """Thread-safe single-process counter store on a monotonic clock."""

    # Expired windows are swept after this many increments
    SWEEP_INTERVAL = 1000

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._windows: dict[str, tuple[int, float]] = {}
        self._lock = Lock()
        self._increments = 0

    def get(self, key: str) -> WindowState | None:
        now = self.clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window[1]:
                return None
            return WindowState(count=window[0], resets_in=window[1] - now)

    def increment(self, key: str, window_seconds: float) -> WindowState:
        now = self.clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window[1]:
                window = (1, now + window_seconds)
            else:
                window = (window[0] + 1, window[1])
            self._windows[key] = window

            self._increments += 1
            if self._increments >= self.SWEEP_INTERVAL:
                self._sweep(now)
            return WindowState(count=window[0], resets_in=window[1] - now)

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def _sweep(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._windows.items() if now >= reset_at]
        for key in expired:
            del self._windows[key]
        self._increments = 0


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: float = 60.0


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one rate-limit check, exposed to callers as headers."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at.timestamp())),
        }


class RateLimiter:
    """Per-channel rate limiter over a KeyedCounter.

    Args:
        counter: Counter store.
        rules: Limit and window per channel name.
        disabled: Admit everything, e.g. in local development.
        wall_clock: Returns the current UTC datetime, used for reset timestamps.
    """

    def __init__(
        self,
        counter: KeyedCounter,
        rules: dict[str, RateLimitRule],
        disabled: bool = False,
        wall_clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.counter = counter
        self.rules = rules
        self.disabled = disabled
        self.wall_clock = wall_clock

    def _rule(self, channel: str) -> RateLimitRule:
        try:
            return self.rules[channel]
        except KeyError:
            raise ValueError(f"No rate limit rule for channel: {channel}")

    def check(self, channel: str, principal: str) -> RateLimitResult:
        """Count one request from ``principal`` on ``channel``."""
        rule = self._rule(channel)
        if self.disabled:
            return RateLimitResult(True, rule.limit, rule.limit, self.wall_clock() + timedelta(seconds=rule.window_seconds))

        state = self.counter.increment(f"{channel}:{principal}", rule.window_seconds)
        reset_at = self.wall_clock() + timedelta(seconds=state.resets_in)
        allowed = state.count <= rule.limit
        return RateLimitResult(
            allowed=allowed,
            limit=rule.limit,
            remaining=max(rule.limit - state.count, 0),
            reset_at=reset_at,
        )

    def enforce(self, channel: str, principal: str) -> RateLimitResult:
        """Like ``check`` but raise when the request is not allowed.

        Raises:
            RateLimitError: If the principal is over its limit for this window.
        """
        result = self.check(channel, principal)
        if not result.allowed:
            logger.info("Rate limit exceeded channel=%s principal=%s", channel, principal)
            raise RateLimitError(f"{channel}:{principal}", result.limit, result.reset_at)
        return result

    def reset(self, channel: str, principal: str) -> None:
        self.counter.reset(f"{channel}:{principal}")


def build_rate_limiter(settings: Settings, counter: KeyedCounter | None = None) -> RateLimiter:
    """Rate limiter with the configured per-channel rules."""
    rules = {
        "api": RateLimitRule(settings.rate_limit_api_per_minute),
        "sms": RateLimitRule(settings.rate_limit_sms_per_minute),
        "email": RateLimitRule(settings.rate_limit_email_per_minute),
        "webhook": RateLimitRule(settings.rate_limit_webhook_per_minute),
    }
    return RateLimiter(counter or InMemoryKeyedCounter(), rules, disabled=settings.rate_limit_disabled)
