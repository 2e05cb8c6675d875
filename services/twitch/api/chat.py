import asyncio
from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, Iterable, List, Optional, Tuple

from services.relay.transport import (
    AuthenticationFailed,
    ReadyState,
    TransportNotConnected,
)
from shared.chat.events import ChatEvent, ChatEventKind, create_chat_event
from shared.logging.logger import get_logger

log = get_logger("twitch.chat", runtime="relay")

_TAG_ESCAPES = {"\\s": " ", "\\:": ";", "\\\\": "\\", "\\r": "\r", "\\n": "\n"}

_AUTH_FAILURE_NOTICES = (
    "login authentication failed",
    "improperly formatted auth",
    "invalid nick",
)


class TwitchChatClient:
    """
    Minimal Twitch IRC-over-TLS transport for the relay.

    - No event loop creation on import.
    - Connection lifecycle is owned by the ConnectionSupervisor.
    - Joins the source channel and every destination channel.
    - Emits MESSAGE / BAN / TIMEOUT / DELETE ChatEvents; everything else
      is ignored to keep the loop deterministic.
    """

    HOST = "irc.chat.twitch.tv"
    PORT = 6697

    def __init__(
        self,
        token: str,
        nickname: str,
        channels: Iterable[str],
        *,
        host: Optional[str] = None,
        port: Optional[int] = None,
        ssl: bool = True,
    ):
        self.token = self._normalize_token(token)
        self.nickname = nickname.lower()
        self.channels: List[str] = []
        for channel in channels:
            normalized = self._normalize_channel(channel)
            if normalized and normalized not in self.channels:
                self.channels.append(normalized)

        self.host = host or self.HOST
        self.port = port or self.PORT
        self.ssl = ssl

        self.reader: asyncio.StreamReader | None = None
        self.writer: asyncio.StreamWriter | None = None

        self._state = ReadyState.CLOSED

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def connect(self) -> None:
        """
        Establish TLS IRC connection and join every configured channel.
        """
        if self._state == ReadyState.OPEN:
            log.debug("TwitchChatClient already connected")
            return

        self._state = ReadyState.CONNECTING
        log.info(
            f"Connecting to Twitch IRC ({self.host}:{self.port}) "
            f"as nick={self.nickname} channels={['#' + c for c in self.channels]}"
        )
        try:
            self.reader, self.writer = await asyncio.open_connection(
                self.host, self.port, ssl=self.ssl
            )

            await self._send_raw(f"PASS {self.token}")
            await self._send_raw(f"NICK {self.nickname}")
            await self._send_raw("CAP REQ :twitch.tv/tags twitch.tv/commands")

            for channel in self.channels:
                await self._send_raw(f"JOIN #{channel}")
        except Exception:
            self._state = ReadyState.CLOSED
            raise

        self._state = ReadyState.OPEN
        log.info(f"Joined Twitch channels {['#' + c for c in self.channels]}")

    async def close(self) -> None:
        if not self.writer:
            self._state = ReadyState.CLOSED
            return

        log.info("Closing Twitch IRC connection")
        self._state = ReadyState.CLOSING
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except Exception as e:
            log.debug(f"Error during Twitch IRC close ignored: {e}")
        finally:
            self.reader = None
            self.writer = None
            self._state = ReadyState.CLOSED

    def ready_state(self) -> ReadyState:
        if self._state == ReadyState.OPEN and (
            self.writer is None or self.writer.is_closing()
        ):
            return ReadyState.CLOSED
        return self._state

    # ------------------------------------------------------------------ #
    # Messaging
    # ------------------------------------------------------------------ #

    async def send(self, destination: str, text: str) -> None:
        if self.ready_state() != ReadyState.OPEN:
            raise TransportNotConnected(
                f"Cannot send to #{destination}: transport is {self.ready_state().value}"
            )
        if not text.strip():
            return

        channel = self._normalize_channel(destination)
        await self._send_raw(f"PRIVMSG #{channel} :{text}")
        log.info(f"[#{channel}] Sent chat message ({len(text)} chars)")

    async def iter_events(self) -> AsyncGenerator[ChatEvent, None]:
        """
        Read IRC lines and yield normalized ChatEvents until the remote
        closes the connection or asks us to reconnect.
        """
        if not self.reader:
            raise TransportNotConnected("iter_events called before connect()")

        while True:
            line = await self.reader.readline()

            if line == b"":
                log.warning("Twitch IRC connection closed by remote")
                self._state = ReadyState.CLOSED
                break

            decoded = line.decode("utf-8", errors="ignore").strip()
            if not decoded:
                continue

            if decoded.startswith("PING"):
                await self._handle_ping(decoded)
                continue

            tags, remainder = self._split_tags(decoded)
            prefix, command, params = self._split_prefix_and_command(remainder)

            if command == "RECONNECT":
                log.warning("Twitch requested RECONNECT")
                self._state = ReadyState.CLOSED
                break

            if command == "NOTICE":
                self._check_auth_notice(params)
                continue

            event = self.parse_event(decoded)
            if event:
                yield event

    # ------------------------------------------------------------------ #
    # Parsing
    # ------------------------------------------------------------------ #

    @classmethod
    def parse_event(cls, raw: str) -> Optional[ChatEvent]:
        """
        Parse PRIVMSG / CLEARCHAT / CLEARMSG lines into ChatEvents.
        """
        tags, remainder = cls._split_tags(raw)
        prefix, command, params = cls._split_prefix_and_command(remainder)

        if not params:
            return None

        channel = cls._normalize_channel(params[0])
        timestamp = cls._parse_timestamp(tags.get("tmi-sent-ts"))

        if command == "PRIVMSG" and len(params) >= 2:
            username = tags.get("display-name") or cls._parse_username(prefix)
            return create_chat_event(
                kind=ChatEventKind.MESSAGE,
                channel=channel,
                actor=username,
                text=params[1],
                timestamp=timestamp,
                message_id=tags.get("id"),
                raw=raw,
            )

        if command == "CLEARCHAT":
            if len(params) < 2:
                # Full chat clear, not a moderation action against a user.
                return None
            duration = cls._parse_int(tags.get("ban-duration"))
            return create_chat_event(
                kind=ChatEventKind.TIMEOUT if duration is not None else ChatEventKind.BAN,
                channel=channel,
                actor=params[1],
                duration_seconds=duration,
                timestamp=timestamp,
                raw=raw,
            )

        if command == "CLEARMSG":
            return create_chat_event(
                kind=ChatEventKind.DELETE,
                channel=channel,
                actor=tags.get("login") or "unknown",
                text=params[1] if len(params) >= 2 else "",
                timestamp=timestamp,
                message_id=tags.get("target-msg-id"),
                raw=raw,
            )

        return None

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    async def _send_raw(self, data: str) -> None:
        if not self.writer:
            raise TransportNotConnected("IRC writer is not initialized")

        payload = (data + "\r\n").encode("utf-8")
        self.writer.write(payload)
        await self.writer.drain()

    async def _handle_ping(self, raw: str) -> None:
        # Twitch IRC sends: PING :tmi.twitch.tv
        payload = raw.split(" ", 1)[-1]
        await self._send_raw(f"PONG {payload}")
        log.debug("Responded to Twitch PING")

    def _check_auth_notice(self, params: Tuple[str, ...]) -> None:
        text = (params[-1] if params else "").lower()
        if any(marker in text for marker in _AUTH_FAILURE_NOTICES):
            self._state = ReadyState.CLOSED
            raise AuthenticationFailed(f"Twitch rejected credentials: {params[-1]}")
        log.info(f"Twitch NOTICE: {params[-1] if params else ''}")

    @staticmethod
    def _split_tags(raw: str) -> Tuple[Dict[str, str], str]:
        if raw.startswith("@") and " " in raw:
            tags_part, remainder = raw.split(" ", 1)
            tags = {}
            for pair in tags_part[1:].split(";"):
                if "=" in pair:
                    k, v = pair.split("=", 1)
                    tags[k] = _unescape_tag(v)
            return tags, remainder

        return {}, raw

    @staticmethod
    def _split_prefix_and_command(raw: str) -> Tuple[str, str, Tuple[str, ...]]:
        prefix = ""
        rest = raw
        if raw.startswith(":"):
            if " " in raw:
                prefix, rest = raw[1:].split(" ", 1)
            else:
                prefix = raw[1:]
                rest = ""

        if " :" in rest:
            middle, trailing = rest.split(" :", 1)
            parts = middle.split()
            if not parts:
                return prefix, "", tuple()
            command = parts[0]
            params = tuple(parts[1:] + [trailing])
        else:
            parts = rest.split()
            if not parts:
                return prefix, "", tuple()
            command = parts[0]
            params = tuple(parts[1:])

        return prefix, command, params

    @staticmethod
    def _parse_username(prefix: str) -> str:
        # Prefix example: nickname!nickname@nickname.tmi.twitch.tv
        if "!" in prefix:
            return prefix.split("!", 1)[0]
        return prefix or ""

    @staticmethod
    def _parse_timestamp(raw_ts: Optional[str]) -> Optional[datetime]:
        if not raw_ts:
            return None
        try:
            millis = int(raw_ts)
            return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None

    @staticmethod
    def _parse_int(raw: Optional[str]) -> Optional[int]:
        if raw is None or raw == "":
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    @staticmethod
    def _normalize_token(token: str) -> str:
        token = token.strip()
        if not token.startswith("oauth:"):
            return f"oauth:{token}"
        return token

    @staticmethod
    def _normalize_channel(channel: str) -> str:
        return channel.lstrip("#").strip().lower()


def _unescape_tag(value: str) -> str:
    out = []
    i = 0
    while i < len(value):
        pair = value[i:i + 2]
        if pair in _TAG_ESCAPES:
            out.append(_TAG_ESCAPES[pair])
            i += 2
            continue
        out.append(value[i])
        i += 1
    return "".join(out)
