"""Fixed-window submission rate limiter, per caller identity.

Gates job submission only; nothing inside a running job consults it.
Every check counts toward the window, including rejected ones.
In-memory and per-process; at most MAX_TRACKED_KEYS identities are kept,
expired windows are pruned first, then the oldest windows.
"""

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

RATE_LIMIT_REQUESTS = int(os.environ.get("GENERATION_RATE_LIMIT_REQUESTS", "5"))
RATE_LIMIT_WINDOW_SECONDS = float(os.environ.get("GENERATION_RATE_LIMIT_WINDOW_SECONDS", "60"))
MAX_TRACKED_KEYS = 500


@dataclass
class RateLimitDecision:
    """Result of one rate-limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_after_seconds: float


class SubmissionRateLimited(Exception):
    """Raised by the orchestrator when a caller exceeds its window."""

    def __init__(self, decision: RateLimitDecision):
        super().__init__(
            f"Rate limit exceeded: {decision.limit} requests per window, "
            f"retry in {decision.reset_after_seconds:.0f}s"
        )
        self.decision = decision


class FixedWindowRateLimiter:
    """Counts requests per key in fixed windows starting at the key's first hit."""

    def __init__(
        self,
        limit: int = RATE_LIMIT_REQUESTS,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        max_keys: int = MAX_TRACKED_KEYS,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.max_keys = max_keys
        self._clock = clock or time.monotonic
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        expired = [k for k, (start, _) in self._windows.items() if now - start >= self.window_seconds]
        for key in expired:
            del self._windows[key]
        if len(self._windows) >= self.max_keys:
            oldest = sorted(self._windows, key=lambda k: self._windows[k][0])
            for key in oldest[: len(self._windows) - self.max_keys + 1]:
                del self._windows[key]

    def check(self, key: str) -> RateLimitDecision:
        """Count one request for `key` and report whether it is allowed."""
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now - window[0] >= self.window_seconds:
                if key not in self._windows and len(self._windows) >= self.max_keys:
                    self._prune(now)
                window = (now, 0)

            start, count = window[0], window[1] + 1
            self._windows[key] = (start, count)

        allowed = count <= self.limit
        decision = RateLimitDecision(
            allowed=allowed,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            reset_after_seconds=max(0.0, self.window_seconds - (now - start)),
        )
        if not allowed:
            logger.warning(f"Rate limit exceeded for {key}: {count}/{self.limit}")
        return decision

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
