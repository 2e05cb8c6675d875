"""
Outbound relay queue.

One FIFO, one consumer. Messages leave the queue only when every primary
destination accepted them, when they are suppressed as a recent duplicate,
or when the queue overflows (oldest dropped, logged).
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Optional,
    Protocol,
    Set,
)

from services.relay.transport import ChatTransport, SecondaryClient
from shared.logging.logger import get_logger
from shared.runtime.ratelimits import DuplicateSuppressor, RateLimitWindow
from shared.utils.charset import fold_accents

log = get_logger("relay.queue", runtime="relay")

DEFAULT_QUEUE_CAPACITY = 500


class SendResult(str, Enum):
    SENT = "sent"
    SUPPRESSED = "suppressed"
    FAILED = "failed"


@dataclass
class OutboundMessage:
    text: str
    origin_user: str
    targets: FrozenSet[str]
    enqueued_at: float
    # destinations that already accepted this message on an earlier attempt
    delivered: Set[str] = field(default_factory=set)
    secondary_attempted: bool = False

    @property
    def remaining(self) -> FrozenSet[str]:
        return self.targets - self.delivered

    def compose(self) -> str:
        if self.origin_user:
            return f"{self.origin_user}: {self.text}"
        return self.text


class SendGate(Protocol):
    """The parts of the ConnectionSupervisor the queue depends on."""

    @property
    def transport(self) -> Optional[ChatTransport]: ...

    def is_sendable(self) -> bool: ...

    def request_reconnect(self, reason: str, *, refresh_credentials: bool = False) -> None: ...


class OutboundRelayQueue:
    """
    Rate-limited, duplicate-suppressing fan-out queue.

    Drain rules:
    - at most one drain runs at a time (try-acquire; extra calls return False)
    - a failed send goes back to the FRONT of the queue and stops the drain;
      the retry only goes to destinations that did not accept it
    - an exhausted rate window stops the drain; only enqueue(), reset_window()
      or resume() start it again
    - while the sliding send log is full the drain sleeps until its oldest
      entry ages out
    """

    def __init__(
        self,
        *,
        gate: SendGate,
        destinations: Iterable[str],
        rate_window: RateLimitWindow,
        duplicates: Optional[DuplicateSuppressor] = None,
        secondary: Optional[SecondaryClient] = None,
        capacity: int = DEFAULT_QUEUE_CAPACITY,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if capacity <= 0:
            raise ValueError("queue capacity must be positive")

        self.destinations: List[str] = []
        for dest in destinations:
            name = dest.lstrip("#").strip().lower()
            if name and name not in self.destinations:
                self.destinations.append(name)
        if not self.destinations:
            raise ValueError("at least one destination channel is required")

        self.capacity = capacity
        self._gate = gate
        self._window = rate_window
        self._duplicates = duplicates or DuplicateSuppressor()
        self._secondary = secondary
        self._clock = clock
        self._sleep = sleep

        self._queue: Deque[OutboundMessage] = deque()
        self._drain_lock = asyncio.Lock()
        self._drain_task: Optional[asyncio.Task] = None

        self._sent = 0
        self._suppressed = 0
        self._dropped = 0

    # ------------------------------------------------------------------ #
    # Producer side
    # ------------------------------------------------------------------ #

    async def enqueue(
        self,
        text: str,
        origin_user: str = "",
        *,
        targets: Optional[Iterable[str]] = None,
    ) -> Optional[OutboundMessage]:
        if not (text or "").strip():
            log.debug("Empty relay text ignored")
            return None

        resolved = frozenset(
            t.lstrip("#").lower() for t in targets
        ) if targets else frozenset(self.destinations)

        message = OutboundMessage(
            text=text,
            origin_user=origin_user or "",
            targets=resolved,
            enqueued_at=self._clock(),
        )

        if len(self._queue) >= self.capacity:
            dropped = self._queue.popleft()
            self._dropped += 1
            log.warning(
                f"Relay queue full ({self.capacity}); dropped oldest message: "
                f"{dropped.compose()!r}"
            )

        self._queue.append(message)
        log.debug(f"Enqueued relay message (depth={len(self._queue)})")
        self._ensure_draining()
        return message

    # ------------------------------------------------------------------ #
    # Resume hooks
    # ------------------------------------------------------------------ #

    def reset_window(self) -> None:
        """Per-minute reset tick."""
        self._window.reset()
        log.debug(f"Rate window reset (pending={len(self._queue)})")
        self._ensure_draining()

    def resume(self) -> None:
        """Called after a successful (re)connect."""
        if self._queue:
            log.info(f"Resuming relay drain with {len(self._queue)} pending message(s)")
        self._ensure_draining()

    def replace_secondary(self, client: Optional[SecondaryClient]) -> None:
        self._secondary = client
        log.info("Secondary destination client replaced")

    def _ensure_draining(self) -> None:
        if not self._queue:
            return
        if self._drain_task and not self._drain_task.done():
            return
        self._drain_task = asyncio.get_running_loop().create_task(self.drain())

    # ------------------------------------------------------------------ #
    # Consumer side
    # ------------------------------------------------------------------ #

    async def drain(self) -> bool:
        """
        Send queued messages until empty, blocked by the rate window, or a
        send fails. Returns False when another drain was already active.
        """
        if self._drain_lock.locked():
            log.debug("Drain already active; skipping")
            return False

        async with self._drain_lock:
            while self._queue and not self._window.exhausted():
                wait = self._window.retry_after()
                if wait > 0:
                    log.debug(f"Send log full; next relay send in {wait:.2f}s")
                    await self._sleep(wait)
                    continue

                message = self._queue.popleft()
                try:
                    result = await self._send(message)
                except asyncio.CancelledError:
                    self._queue.appendleft(message)
                    raise

                if result is SendResult.FAILED:
                    self._queue.appendleft(message)
                    log.warning(
                        f"Relay drain halted after send failure "
                        f"({len(self._queue)} message(s) pending)"
                    )
                    break

                if result is SendResult.SUPPRESSED:
                    continue

                self._window.record()
                if self._window.min_interval > 0:
                    await self._sleep(self._window.min_interval)

            if self._queue and self._window.exhausted():
                log.info(
                    f"Rate window exhausted ({self._window.count}/"
                    f"{self._window.max_per_window}); {len(self._queue)} message(s) "
                    "waiting for reset"
                )

        return True

    async def _send(self, message: OutboundMessage) -> SendResult:
        text = message.compose()

        if self._duplicates.is_duplicate(text):
            self._suppressed += 1
            log.info(f"Duplicate relay suppressed: {text!r}")
            return SendResult.SUPPRESSED

        transport = self._gate.transport
        if not self._gate.is_sendable() or transport is None:
            log.warning("Relay send attempted while not connected; requesting reconnect")
            self._gate.request_reconnect("send attempted while not connected")
            return SendResult.FAILED

        remaining = message.remaining
        destinations = [d for d in self.destinations if d in remaining]
        sends = [transport.send(dest, text) for dest in destinations]
        if self._secondary is not None and not message.secondary_attempted:
            sends.append(self._send_secondary(self._secondary, text))
            message.secondary_attempted = True

        results = await asyncio.gather(*sends, return_exceptions=True)

        failed = False
        for dest, result in zip(destinations, results):
            if isinstance(result, BaseException):
                failed = True
                log.error(f"[#{dest}] Relay send failed: {result}")
            else:
                message.delivered.add(dest)

        if failed:
            self._gate.request_reconnect("destination send failed")
            return SendResult.FAILED

        self._duplicates.remember(text)
        self._sent += 1
        log.info(f"Relayed to {['#' + d for d in destinations]}: {text}")
        return SendResult.SENT

    @staticmethod
    async def _send_secondary(client: SecondaryClient, text: str) -> None:
        try:
            ok = await client.send_message(fold_accents(text))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"Secondary destination send raised: {e}")
            return
        if not ok:
            log.warning("Secondary destination rejected relay message")

    # ------------------------------------------------------------------ #
    # Lifecycle / introspection
    # ------------------------------------------------------------------ #

    async def join(self) -> None:
        """Wait for the current drain task, if any, to finish."""
        task = self._drain_task
        if task and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    async def close(self) -> None:
        task = self._drain_task
        if task and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._drain_task = None

    @property
    def pending(self) -> List[OutboundMessage]:
        return list(self._queue)

    @property
    def draining(self) -> bool:
        return self._drain_lock.locked()

    def __len__(self) -> int:
        return len(self._queue)

    def snapshot(self) -> Dict[str, object]:
        return {
            "depth": len(self._queue),
            "capacity": self.capacity,
            "sent": self._sent,
            "suppressed": self._suppressed,
            "dropped": self._dropped,
            "rate_window": self._window.snapshot(),
        }
