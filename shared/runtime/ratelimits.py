from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional

DEFAULT_WINDOW_SECONDS = 60.0
DEFAULT_MAX_PER_WINDOW = 20
DEFAULT_MIN_INTERVAL_SECONDS = 1.0
DEFAULT_DUPLICATE_WINDOW_SECONDS = 10.0

# Sliding horizon for the send log. One second wider than the reset window
# so sends on both sides of a reset tick are still counted together.
SLIDING_HORIZON_PADDING_SECONDS = 1.0


Clock = Callable[[], float]


# ======================================================================
# Exceptions
# ======================================================================

class RateLimitExceeded(RuntimeError):
    """Raised when a send is recorded while the window is exhausted."""


# ======================================================================
# Rate limit window
# ======================================================================

@dataclass
class RateLimitWindow:
    """
    Per-window outbound send budget.

    - `count` resets to 0 on every `reset()` (driven by a fixed 60s timer)
      and `exhausted()` reports only that per-window budget
    - A sliding log of recent send times additionally caps any span of
      window + padding seconds at `max_per_window`; `retry_after()` is how
      long the next send must wait for the oldest logged send to age out
    - `min_interval` is the pause the drain loop takes after each send
    """

    max_per_window: int = DEFAULT_MAX_PER_WINDOW
    min_interval: float = DEFAULT_MIN_INTERVAL_SECONDS
    window_seconds: float = DEFAULT_WINDOW_SECONDS
    clock: Clock = time.monotonic

    count: int = 0
    window_started_at: float = 0.0
    _recent: Deque[float] = field(default_factory=deque, repr=False)

    def __post_init__(self) -> None:
        if self.max_per_window <= 0:
            raise ValueError("max_per_window must be positive")
        if self.min_interval < 0:
            raise ValueError("min_interval must not be negative")
        self.window_started_at = self.clock()

    # --------------------------------------------------

    @property
    def horizon(self) -> float:
        return self.window_seconds + SLIDING_HORIZON_PADDING_SECONDS

    def _prune(self, now: float) -> None:
        while self._recent and now - self._recent[0] >= self.horizon:
            self._recent.popleft()

    def exhausted(self) -> bool:
        return self.count >= self.max_per_window

    def retry_after(self) -> float:
        now = self.clock()
        self._prune(now)
        if len(self._recent) < self.max_per_window:
            return 0.0
        return max(0.0, self._recent[0] + self.horizon - now)

    def record(self) -> None:
        if self.exhausted() or self.retry_after() > 0:
            raise RateLimitExceeded(
                f"Rate limit exceeded: {self.count} / {self.max_per_window} "
                f"({len(self._recent)} in the last {self.horizon:g}s)"
            )
        self.count += 1
        self._recent.append(self.clock())

    def reset(self) -> None:
        self.count = 0
        self.window_started_at = self.clock()
        self._prune(self.window_started_at)

    def snapshot(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "max": self.max_per_window,
            "recent": len(self._recent),
            "retry_after": self.retry_after(),
            "window_started_at": self.window_started_at,
            "min_interval": self.min_interval,
        }


# ======================================================================
# Duplicate suppression
# ======================================================================

@dataclass
class DuplicateSuppressor:
    """
    Remembers the last successfully sent text and when it went out.
    """

    window_seconds: float = DEFAULT_DUPLICATE_WINDOW_SECONDS
    clock: Clock = time.monotonic

    last_text: Optional[str] = None
    last_sent_at: Optional[float] = None

    def is_duplicate(self, text: str) -> bool:
        if self.last_text is None or self.last_sent_at is None:
            return False
        if text != self.last_text:
            return False
        return (self.clock() - self.last_sent_at) < self.window_seconds

    def remember(self, text: str) -> None:
        self.last_text = text
        self.last_sent_at = self.clock()
