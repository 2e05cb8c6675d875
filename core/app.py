import asyncio
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from runtime.version import as_string
from services.kick.api.chat import KickChatClient
from services.kick.auth import KickTokenProvider
from services.relay.classifier import EventClassifier
from services.relay.queue import OutboundRelayQueue
from services.relay.snapshot import RelaySnapshotWriter
from services.relay.supervisor import ConnectionSupervisor, RelayFatalError
from services.twitch.api.chat import TwitchChatClient
from services.twitch.auth import TwitchTokenProvider
from shared.config.errors import ConfigError
from shared.config.relay import RelayConfig, load_relay_config
from shared.config.word_filter import load_word_filter_lists
from shared.logging.logger import get_logger
from shared.moderation.word_filter import WordFilter
from shared.runtime.memory import UserMemoryCache
from shared.runtime.ratelimits import DuplicateSuppressor, RateLimitWindow

log = get_logger("core.app")

RATE_WINDOW_TASK = "rate-window-reset"
SNAPSHOT_TASK = "snapshot"


class RelayApp:
    """
    Wires config, filter, memory, queue, classifier and supervisor together.

    The supervisor owns every timer; the app only registers callbacks.
    """

    def __init__(self, config: RelayConfig):
        self.config = config

        lists = load_word_filter_lists(
            Path(config.word_filter_path) if config.word_filter_path else None
        )
        self.word_filter = WordFilter.from_lists(lists, strict_mode=config.strict_mode)
        self.memory = UserMemoryCache(config.memory_capacity)

        self.twitch_auth = TwitchTokenProvider.from_settings(config.twitch)
        self.kick_auth: Optional[KickTokenProvider] = (
            KickTokenProvider.from_settings(config.kick) if config.kick else None
        )
        self.kick_client: Optional[KickChatClient] = None

        self.supervisor = ConnectionSupervisor(
            transport_factory=self._build_transport,
            event_handler=self._on_event,
            settings=config.supervisor,
            token_provider=self.twitch_auth,
            secondary_provider=self.kick_auth,
            on_secondary_token=self._replace_kick_client,
        )

        limits = config.rate_limits
        self.queue = OutboundRelayQueue(
            gate=self.supervisor,
            destinations=config.target_channels,
            rate_window=RateLimitWindow(
                max_per_window=limits.max_per_minute,
                min_interval=limits.min_interval_seconds,
                window_seconds=limits.window_seconds,
            ),
            duplicates=DuplicateSuppressor(window_seconds=limits.duplicate_window_seconds),
            capacity=config.queue_capacity,
        )

        self.classifier = EventClassifier(
            source_channel=config.source_channel,
            memory=self.memory,
            word_filter=self.word_filter,
            sink=self.queue,
            templates=config.templates,
            bot_username=config.twitch.bot_username,
            relay_ban_notices=config.relay_ban_notices,
        )

        self.supervisor.register_periodic(
            RATE_WINDOW_TASK, limits.window_seconds, self.queue.reset_window
        )
        self.supervisor.add_connected_listener(self.queue.resume)

        self.snapshot_writer: Optional[RelaySnapshotWriter] = None
        if config.snapshot_path:
            self.snapshot_writer = RelaySnapshotWriter(
                Path(config.snapshot_path), self.snapshot
            )
            self.supervisor.register_periodic(
                SNAPSHOT_TASK,
                config.supervisor.health_check_seconds,
                self.snapshot_writer.write,
            )

    # --------------------------------------------------
    # Collaborator hooks
    # --------------------------------------------------

    def _build_transport(self, token: str) -> TwitchChatClient:
        channels = [self.config.source_channel, *self.config.target_channels]
        return TwitchChatClient(token, self.config.twitch.bot_username, channels)

    async def _on_event(self, event) -> None:
        await self.classifier.handle(event)

    async def _replace_kick_client(self, token: str) -> None:
        if self.config.kick is None:
            return

        previous = self.kick_client
        self.kick_client = KickChatClient(
            access_token=token, channel_id=self.config.kick.channel_id
        )
        self.queue.replace_secondary(self.kick_client)

        if previous is not None:
            await previous.close()

    # --------------------------------------------------
    # Lifecycle
    # --------------------------------------------------

    async def start(self) -> None:
        log.info(
            f"Relaying moderation from #{self.config.source_channel} to "
            f"{['#' + c for c in self.config.target_channels]}"
            + (f" and kick:{self.config.kick.channel_id}" if self.config.kick else "")
        )
        await self.supervisor.start()

    async def shutdown(self) -> None:
        try:
            await self.supervisor.stop()
        except Exception as e:
            log.warning(f"Supervisor shutdown error ignored: {e}")

        await self.queue.close()

        if self.kick_client is not None:
            await self.kick_client.close()
        await self.twitch_auth.close()
        if self.kick_auth is not None:
            await self.kick_auth.close()

        if self.snapshot_writer is not None:
            self.snapshot_writer.write()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "source_channel": self.config.source_channel,
            "target_channels": list(self.config.target_channels),
            "secondary_enabled": self.kick_client is not None,
            "supervisor": self.supervisor.snapshot(),
            "queue": self.queue.snapshot(),
            "memory": self.memory.snapshot(),
        }


async def main(stop_event: asyncio.Event) -> int:
    # --------------------------------------------------
    # ENV
    # --------------------------------------------------
    load_dotenv()
    log.info("Environment variables loaded")
    log.info(f"{as_string()} booting")

    # --------------------------------------------------
    # CONFIG (fatal on error)
    # --------------------------------------------------
    try:
        config = load_relay_config()
        app = RelayApp(config)
    except ConfigError as e:
        log.critical(f"Configuration error: {e}")
        return 1

    # --------------------------------------------------
    # START
    # --------------------------------------------------
    await app.start()

    # --------------------------------------------------
    # BLOCK UNTIL SHUTDOWN SIGNAL OR FATAL
    # --------------------------------------------------
    stop_waiter = asyncio.create_task(stop_event.wait())
    fatal_waiter = asyncio.create_task(app.supervisor.wait_fatal())
    await asyncio.wait({stop_waiter, fatal_waiter}, return_when=asyncio.FIRST_COMPLETED)
    for waiter in (stop_waiter, fatal_waiter):
        waiter.cancel()

    fatal = app.supervisor.fatal
    log.info("Fatal connection state; shutting down" if fatal else "Shutdown initiated")

    # --------------------------------------------------
    # ORDERLY SHUTDOWN
    # --------------------------------------------------
    await app.shutdown()

    if fatal:
        raise RelayFatalError("connection supervisor entered FATAL")

    log.info("Relay stopped")
    return 0


# ----------------------------------------------------------------------
# SIGNAL HANDLING (WINDOWS-SAFE)
# ----------------------------------------------------------------------

def _install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    stop_event: asyncio.Event,
):
    """
    Windows-safe Ctrl+C handler.
    Uses signal.signal + asyncio.Event to unwind cleanly.
    """

    def _handler(signum, frame):
        try:
            loop.call_soon_threadsafe(stop_event.set)
        except RuntimeError:
            stop_event.set()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except (ValueError, OSError) as e:
        log.debug(f"Signal handlers not installed: {e}")


# ----------------------------------------------------------------------
# ENTRYPOINT
# ----------------------------------------------------------------------

def run():
    stop_event = asyncio.Event()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    _install_signal_handlers(loop, stop_event)

    exit_code = 0
    try:
        exit_code = loop.run_until_complete(main(stop_event))

    except RelayFatalError as e:
        log.critical(f"Relay terminated: {e}")
        exit_code = 1

    except KeyboardInterrupt:
        log.info("KeyboardInterrupt received; shutdown initiated")
        stop_event.set()

    finally:
        # --------------------------------------------------
        # CANCEL REMAINING TASKS (CLEANLY)
        # --------------------------------------------------
        pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
        for task in pending:
            task.cancel()

        if pending:
            loop.run_until_complete(
                asyncio.gather(*pending, return_exceptions=True)
            )

        # --------------------------------------------------
        # FINAL LOOP CLEANUP
        # --------------------------------------------------
        loop.run_until_complete(loop.shutdown_asyncgens())

        asyncio.set_event_loop(None)
        loop.close()

    sys.exit(exit_code)


if __name__ == "__main__":
    run()
