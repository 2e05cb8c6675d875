from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict


@dataclass
class Backoff:
    """
    Capped multiplicative reconnect delay.

    next_delay() hands out the current delay and then grows it, so the first
    failed attempt waits exactly `floor` seconds.
    """

    floor: float = 5.0
    ceiling: float = 60.0
    multiplier: float = 1.5
    current: float = field(init=False)

    def __post_init__(self) -> None:
        if self.floor <= 0:
            raise ValueError("backoff floor must be positive")
        if self.ceiling < self.floor:
            raise ValueError("backoff ceiling must be >= floor")
        if self.multiplier < 1:
            raise ValueError("backoff multiplier must be >= 1")
        self.current = self.floor

    def peek(self) -> float:
        return self.current

    def next_delay(self) -> float:
        delay = self.current
        self.current = min(self.current * self.multiplier, self.ceiling)
        return delay

    def reset(self) -> None:
        self.current = self.floor

    def snapshot(self) -> Dict[str, float]:
        return {
            "next_delay": self.current,
            "floor": self.floor,
            "ceiling": self.ceiling,
            "multiplier": self.multiplier,
        }
