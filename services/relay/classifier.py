from __future__ import annotations

import re
from typing import List, Optional, Pattern, Protocol

from shared.chat.events import ChatEvent, ChatEventKind, normalize_channel
from shared.config.relay import RelayTemplates
from shared.logging.logger import get_logger
from shared.moderation.word_filter import CensorVerdict, WordFilter
from shared.runtime.memory import UserMemoryCache

log = get_logger("relay.classifier", runtime="relay")

# Ban notices posted as plain chat by third-party moderation bots (7TV etc).
BAN_NOTICE_PATTERNS: List[Pattern[str]] = [
    re.compile(r"has been (permanently )?banned", re.IGNORECASE),
    re.compile(r"został (na stałe )?zbanowany", re.IGNORECASE),
    re.compile(r"permanently banned", re.IGNORECASE),
    re.compile(r"banned by", re.IGNORECASE),
    re.compile(r"\.ban\s+\w+", re.IGNORECASE),
    re.compile(r"7tv.*ban", re.IGNORECASE),
]


class RelaySink(Protocol):
    async def enqueue(self, text: str, origin_user: str = "") -> object: ...


class EventClassifier:
    """
    Turns transport ChatEvents into relay intents.

    - MESSAGE: remembered per user (never relayed, except ban notices)
    - BAN / TIMEOUT: relays the user's last remembered message, then forgets it
    - DELETE: relays the deleted text
    Only events from the source channel are considered.
    """

    def __init__(
        self,
        *,
        source_channel: str,
        memory: UserMemoryCache,
        word_filter: WordFilter,
        sink: RelaySink,
        templates: Optional[RelayTemplates] = None,
        bot_username: str = "",
        relay_ban_notices: bool = False,
    ):
        self.source_channel = normalize_channel(source_channel)
        self.memory = memory
        self.word_filter = word_filter
        self.templates = templates or RelayTemplates()
        self.bot_username = (bot_username or "").lower()
        self.relay_ban_notices = relay_ban_notices
        self._sink = sink

    # ------------------------------------------------------------------ #

    async def handle(self, event: ChatEvent) -> Optional[str]:
        """
        Classify one event. Returns the relay text handed to the queue, if any.
        """
        if not event.is_from(self.source_channel):
            return None

        if event.kind == ChatEventKind.MESSAGE:
            return await self._on_message(event)
        if event.kind in (ChatEventKind.BAN, ChatEventKind.TIMEOUT):
            return await self._on_moderation(event)
        if event.kind == ChatEventKind.DELETE:
            return await self._on_delete(event)
        return None

    # ------------------------------------------------------------------ #

    async def _on_message(self, event: ChatEvent) -> Optional[str]:
        sender = event.actor
        text = event.text or ""

        if sender.lower() == self.bot_username and self.bot_username:
            return None

        if not sender or not text.strip():
            log.debug(f"[#{self.source_channel}] Message without sender/text not recorded")
            return None

        evicted = self.memory.put(sender, text)
        if evicted:
            log.debug(f"Memory at capacity; evicted last message of {evicted[0]}")

        if self.relay_ban_notices and is_ban_notice(text):
            log.info(f"[#{self.source_channel}] Ban notice detected from {sender}")
            relay = self._format(
                self.templates.ban_notice,
                event,
                self._filtered_text(text),
            )
            await self._sink.enqueue(relay, sender)
            return relay

        return None

    async def _on_moderation(self, event: ChatEvent) -> str:
        last_message = self.memory.get(event.actor) or self.templates.no_data
        template = (
            self.templates.timeout
            if event.kind == ChatEventKind.TIMEOUT
            else self.templates.ban
        )

        relay = self._format(template, event, self._filtered_text(last_message))
        log.info(f"[{event.kind.value.upper()} detected] -> {relay}")
        await self._sink.enqueue(relay)

        self.memory.pop(event.actor)
        return relay

    async def _on_delete(self, event: ChatEvent) -> str:
        relay = self._format(
            self.templates.delete,
            event,
            self._filtered_text(event.text or self.templates.no_data),
        )
        log.info(f"[DELETE detected] -> {relay}")
        await self._sink.enqueue(relay)
        return relay

    # ------------------------------------------------------------------ #

    def _filtered_text(self, text: str) -> str:
        verdict: CensorVerdict = self.word_filter.analyze(text)

        if verdict.should_block:
            log.warning("Relay text blocked by word filter")
            return self.templates.blocked_placeholder

        if verdict.contains_banned:
            log.warning(f"Relay text censored (found={list(verdict.found_words)})")
            return verdict.censored_text

        return text

    def _format(self, template: str, event: ChatEvent, text: str) -> str:
        return template.format(
            channel=display_channel(event.channel),
            user=event.actor,
            duration=event.duration_seconds if event.duration_seconds is not None else 0,
            text=text,
        )


def display_channel(channel: str) -> str:
    name = normalize_channel(channel)
    return name[:1].upper() + name[1:]


def is_ban_notice(text: str) -> bool:
    return any(pattern.search(text) for pattern in BAN_NOTICE_PATTERNS)
