"""
Relay Connection Supervisor

Owns the lifecycle of the chat transport.

This supervisor is:
- app-owned (core.app builds and starts it)
- the single owner of ConnectionState
- the single owner of every periodic timer (health check, credential
  refresh, and any timer registered through register_periodic)

Responsibilities:
- open the transport and subscribe the event reader
- reconnect with capped multiplicative backoff
- validate / refresh credential leases
- enter FATAL once reconnect attempts are exhausted

IMPORTANT:
- MUST NOT create its own event loop
- MUST NOT install signal handlers
- stop() cancels every task it started
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from services.auth.oauth import TokenProvider
from services.relay.backoff import Backoff
from services.relay.transport import (
    AuthenticationFailed,
    ChatTransport,
    ReadyState,
    TransportFactory,
)
from shared.chat.events import ChatEvent
from shared.config.relay import SupervisorSettings
from shared.logging.logger import get_logger
from shared.platforms.state import ConnectionState, require_transition

log = get_logger("relay.supervisor", runtime="relay")

HEALTH_CHECK_TASK = "health-check"
CREDENTIAL_REFRESH_TASK = "credential-refresh"

EventHandler = Callable[[ChatEvent], Awaitable[Any]]
Callback = Callable[[], Any]
SecondaryTokenCallback = Callable[[str], Any]


class RelayFatalError(RuntimeError):
    """Raised by the app when the supervisor has entered FATAL."""


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class ConnectionSupervisor:
    """
    Connection state machine for the relay transport.

    Scheduler-safe contract:
    - start() is awaitable
    - stop() is idempotent
    - request_reconnect() is idempotent under concurrent callers
    """

    def __init__(
        self,
        *,
        transport_factory: TransportFactory,
        event_handler: EventHandler,
        settings: Optional[SupervisorSettings] = None,
        token_provider: Optional[TokenProvider] = None,
        static_token: Optional[str] = None,
        secondary_provider: Optional[TokenProvider] = None,
        on_secondary_token: Optional[SecondaryTokenCallback] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if token_provider is None and not static_token:
            raise ValueError("a token_provider or static_token is required")

        self.settings = settings or SupervisorSettings()

        self._transport_factory = transport_factory
        self._event_handler = event_handler
        self._token_provider = token_provider
        self._token: Optional[str] = static_token
        self._secondary_provider = secondary_provider
        self._on_secondary_token = on_secondary_token
        self._secondary_token: Optional[str] = None
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._backoff = Backoff(
            floor=self.settings.backoff_floor_seconds,
            ceiling=self.settings.backoff_ceiling_seconds,
            multiplier=self.settings.backoff_multiplier,
        )
        self._attempts = 0

        self._transport: Optional[ChatTransport] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._reconnect_lock = asyncio.Lock()

        self._periodic: Dict[str, Tuple[float, Callback]] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._connected_listeners: List[Callback] = []

        self._fatal_event = asyncio.Event()
        self._running = False
        self._last_connect_error: Optional[BaseException] = None

    # --------------------------------------------------
    # State
    # --------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def transport(self) -> Optional[ChatTransport]:
        return self._transport

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def running(self) -> bool:
        return self._running

    @property
    def fatal(self) -> bool:
        return self._state is ConnectionState.FATAL

    @property
    def reconnect_in_flight(self) -> bool:
        return self._reconnect_lock.locked() or bool(
            self._reconnect_task and not self._reconnect_task.done()
        )

    def is_sendable(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def _transition(self, target: ConnectionState) -> None:
        if target is self._state:
            return
        require_transition(self._state, target)
        log.info(f"Connection state {self._state.value} -> {target.value}")
        self._state = target

    # --------------------------------------------------
    # Registration
    # --------------------------------------------------

    def register_periodic(self, name: str, interval: float, callback: Callback) -> None:
        """
        Register a named timer. Must be called before start().
        """
        if self._running:
            raise RuntimeError("periodic tasks must be registered before start()")
        if interval <= 0:
            raise ValueError(f"interval for {name} must be positive")
        self._periodic[name] = (interval, callback)

    def add_connected_listener(self, callback: Callback) -> None:
        self._connected_listeners.append(callback)

    # --------------------------------------------------
    # Lifecycle
    # --------------------------------------------------

    async def start(self) -> None:
        if self._running:
            log.warning("Connection supervisor already running")
            return

        log.info("Starting connection supervisor")
        self._running = True

        timers: Dict[str, Tuple[float, Callback]] = {
            HEALTH_CHECK_TASK: (self.settings.health_check_seconds, self.health_check),
        }
        if self._token_provider or self._secondary_provider:
            timers[CREDENTIAL_REFRESH_TASK] = (
                self.settings.token_refresh_seconds,
                self.refresh_credentials,
            )
        timers.update(self._periodic)

        for name, (interval, callback) in timers.items():
            self._tasks[name] = asyncio.create_task(
                self._run_periodic(name, interval, callback), name=f"relay:{name}"
            )
            log.debug(f"Scheduled periodic task {name} every {interval:.0f}s")

        if self._secondary_provider:
            await self._refresh_secondary()

        if not await self.connect():
            self.request_reconnect("initial connect failed")

        log.info("Connection supervisor started")

    async def stop(self) -> None:
        if not self._running:
            return

        log.info("Stopping connection supervisor")
        self._running = False

        current = asyncio.current_task()
        tasks = list(self._tasks.values())
        for extra in (self._reconnect_task, self._reader_task):
            if extra is not None:
                tasks.append(extra)

        tasks = [t for t in tasks if t is not current]
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._tasks.clear()
        self._reconnect_task = None
        self._reader_task = None

        await self._close_transport()

        if self._state is not ConnectionState.FATAL:
            # stop() resets the machine; it is not a runtime transition
            self._state = ConnectionState.DISCONNECTED

        log.info("Connection supervisor stopped")

    async def wait_fatal(self) -> None:
        await self._fatal_event.wait()

    # --------------------------------------------------
    # Connect / reconnect
    # --------------------------------------------------

    async def connect(self) -> bool:
        """
        DISCONNECTED/RECONNECTING -> CONNECTING -> CONNECTED.

        Returns True when connected. On failure the state is RECONNECTING
        and the caller decides whether to schedule a reconnect.
        """
        if self._state not in (ConnectionState.DISCONNECTED, ConnectionState.RECONNECTING):
            log.debug(f"connect() ignored in state {self._state.value}")
            return self._state is ConnectionState.CONNECTED

        async with self._connect_lock:
            self._transition(ConnectionState.CONNECTING)
            try:
                await self._open_transport()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error(f"Connect failed: {e}")
                self._transition(ConnectionState.RECONNECTING)
                await self._close_transport()
                return False

            self._on_connected()
            return True

    def request_reconnect(self, reason: str, *, refresh_credentials: bool = False) -> None:
        """
        Schedule a reconnect unless one is already in flight. Never blocks.
        """
        if not self._running or self._state is ConnectionState.FATAL:
            log.debug(f"Reconnect request ignored ({reason}); supervisor inactive")
            return

        if self.reconnect_in_flight:
            log.debug(f"Reconnect already in flight; request ignored ({reason})")
            return

        self._reconnect_task = asyncio.get_running_loop().create_task(
            self.reconnect(reason, refresh_credentials=refresh_credentials),
            name="relay:reconnect",
        )

    async def reconnect(self, reason: str, *, refresh_credentials: bool = False) -> bool:
        """
        Tear down, back off, optionally refresh credentials, rebuild, connect.

        Returns False immediately when another reconnect holds the lock.
        """
        if self._reconnect_lock.locked():
            log.debug(f"Reconnect already running; skipping ({reason})")
            return False

        async with self._reconnect_lock:
            if self._state is ConnectionState.FATAL:
                return False

            log.warning(f"Reconnecting: {reason}")
            self._transition(ConnectionState.RECONNECTING)
            await self._close_transport()

            refresh = refresh_credentials
            max_attempts = self.settings.max_reconnect_attempts

            while self._running:
                if self._attempts >= max_attempts:
                    self._enter_fatal(
                        f"Exceeded maximum reconnect attempts ({max_attempts})"
                    )
                    return False

                self._attempts += 1
                delay = self._backoff.next_delay()
                log.info(
                    f"Reconnect attempt {self._attempts}/{max_attempts} in {delay:.1f}s"
                )
                await self._sleep(delay)

                if refresh:
                    await self._refresh_primary_token()
                    refresh = False

                if await self.connect():
                    return True

                if isinstance(self._last_connect_error, AuthenticationFailed):
                    refresh = True

            return False

    async def _open_transport(self) -> None:
        self._last_connect_error = None
        try:
            if not self._token:
                self._token = await self._acquire_token()

            transport = self._transport_factory(self._token)
            self._transport = transport
            await transport.connect()
        except Exception as e:
            self._last_connect_error = e
            raise

        self._reader_task = asyncio.create_task(
            self._read_events(transport), name="relay:reader"
        )

    def _on_connected(self) -> None:
        self._transition(ConnectionState.CONNECTED)
        self._backoff.reset()
        self._attempts = 0
        log.info("Transport connected; backoff reset")

        for listener in list(self._connected_listeners):
            try:
                listener()
            except Exception as e:
                log.warning(f"Connected listener error ignored: {e}")

    async def _close_transport(self) -> None:
        reader = self._reader_task
        self._reader_task = None
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

        transport = self._transport
        self._transport = None
        if transport is None:
            return
        try:
            await transport.close()
        except Exception as e:
            log.debug(f"Transport close error ignored: {e}")

    def _enter_fatal(self, reason: str) -> None:
        self._transition(ConnectionState.FATAL)
        log.critical(f"{reason}; relay must terminate")

        current = asyncio.current_task()
        for task in self._tasks.values():
            if task is not current and not task.done():
                task.cancel()

        self._fatal_event.set()

    # --------------------------------------------------
    # Event subscription
    # --------------------------------------------------

    async def _read_events(self, transport: ChatTransport) -> None:
        try:
            async for event in transport.iter_events():
                try:
                    await self._event_handler(event)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    log.error(f"Event handler error ignored ({event.kind.value}): {e}")
        except asyncio.CancelledError:
            raise
        except AuthenticationFailed as e:
            if transport is self._transport:
                log.error(f"Transport authentication failed: {e}")
                self.request_reconnect(str(e), refresh_credentials=True)
            return
        except Exception as e:
            if transport is self._transport:
                log.error(f"Transport error: {e}")
                self.request_reconnect(f"transport error: {e}")
            return

        if transport is self._transport:
            self.request_reconnect("transport disconnected")

    # --------------------------------------------------
    # Timers
    # --------------------------------------------------

    async def _run_periodic(self, name: str, interval: float, callback: Callback) -> None:
        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    await _maybe_await(callback())
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    log.warning(f"[{name}] periodic task error ignored: {e}")
        except asyncio.CancelledError:
            log.debug(f"[{name}] periodic task cancelled")
            raise

    async def health_check(self) -> None:
        if self._state not in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            return
        if self.reconnect_in_flight or self._connect_lock.locked():
            return

        transport = self._transport
        if transport is None or transport.ready_state() != ReadyState.OPEN:
            state = transport.ready_state().value if transport else "missing"
            log.warning(f"Health check: transport not open (state={state})")
            self.request_reconnect("health check found transport not open")

    async def refresh_credentials(self) -> None:
        if self._token_provider and self._token:
            if await self._token_provider.validate_token(self._token):
                log.debug("Primary credential lease still valid")
            else:
                log.warning("Primary credential lease invalid; refreshing")
                token = await self._token_provider.refresh()
                if token:
                    self._token = token
                    self.request_reconnect("credential lease refreshed")
                else:
                    log.error(
                        "Primary credential invalid and no refresh path available; "
                        "keeping current connection until a refresh succeeds"
                    )

        if self._secondary_provider:
            await self._refresh_secondary()

    async def _acquire_token(self) -> str:
        provider = self._token_provider
        if provider is None:
            raise AuthenticationFailed("no credential available")

        token = await provider.get_valid_token()
        if token and not await provider.validate_token(token):
            log.warning("Stored credential failed validation; refreshing")
            token = await provider.refresh()

        if not token:
            log.info("No usable credential; starting interactive authorization")
            token = await provider.perform_interactive_auth_flow()

        return token

    async def _refresh_primary_token(self) -> None:
        if self._token_provider is None:
            log.error("Credential refresh requested but no token provider is configured")
            return

        token = await self._token_provider.refresh()
        if token:
            self._token = token
            log.info("Primary credential lease refreshed for reconnect")
        else:
            log.error("Primary credential refresh failed; retrying with current lease")

    async def _refresh_secondary(self) -> None:
        provider = self._secondary_provider
        if provider is None:
            return

        token = await provider.get_valid_token()
        if token and not await provider.validate_token(token):
            log.warning("Secondary credential lease invalid; refreshing")
            token = await provider.refresh()

        if not token:
            log.error("Secondary credential unavailable; secondary relay disabled until refresh")
            return

        if token == self._secondary_token:
            log.debug("Secondary credential unchanged")
            return

        self._secondary_token = token
        log.info("Secondary credential lease changed; replacing client")
        if self._on_secondary_token:
            await _maybe_await(self._on_secondary_token(token))

    # --------------------------------------------------
    # Introspection
    # --------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        transport = self._transport
        return {
            "state": self._state.value,
            "running": self._running,
            "attempts": self._attempts,
            "max_attempts": self.settings.max_reconnect_attempts,
            "backoff": self._backoff.snapshot(),
            "transport": transport.ready_state().value if transport else None,
            "reconnect_in_flight": self.reconnect_in_flight,
            "tasks": sorted(self._tasks),
        }
