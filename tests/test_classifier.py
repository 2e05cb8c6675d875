from unittest.mock import AsyncMock

import pytest

from services.relay.classifier import EventClassifier, display_channel, is_ban_notice
from shared.chat.events import ChatEventKind, create_chat_event
from shared.config.relay import RelayTemplates
from shared.moderation.word_filter import WordFilter
from shared.runtime.memory import UserMemoryCache

TEMPLATES = RelayTemplates(
    ban="{channel} BAN {user}: {text}",
    timeout="{channel} TIMEOUT {user} {duration}s: {text}",
    delete="{channel} DELETE {user}: {text}",
    ban_notice="{channel} NOTICE: {text}",
    blocked_placeholder="[hidden]",
    no_data="no data",
)


def _classifier(sink, memory=None, **kwargs) -> EventClassifier:
    return EventClassifier(
        source_channel="#Source",
        memory=memory if memory is not None else UserMemoryCache(capacity=10),
        word_filter=WordFilter(banned_words=["kurwa"], block_words=["blockme"]),
        sink=sink,
        templates=TEMPLATES,
        bot_username="relaybot",
        **kwargs,
    )


def _event(kind, actor="alice", channel="source", **kwargs):
    return create_chat_event(kind=kind, channel=channel, actor=actor, **kwargs)


@pytest.mark.asyncio
async def test_message_is_recorded_not_relayed() -> None:
    sink = AsyncMock()
    memory = UserMemoryCache()
    classifier = _classifier(sink, memory)

    result = await classifier.handle(_event(ChatEventKind.MESSAGE, text="hello"))

    assert result is None
    assert memory.get("alice") == "hello"
    sink.enqueue.assert_not_awaited()


@pytest.mark.asyncio
async def test_ban_relays_last_message_and_consumes_memory() -> None:
    sink = AsyncMock()
    memory = UserMemoryCache()
    classifier = _classifier(sink, memory)

    await classifier.handle(_event(ChatEventKind.MESSAGE, actor="Alice", text="bye all"))
    relay = await classifier.handle(_event(ChatEventKind.BAN, actor="alice"))

    assert relay == "Source BAN alice: bye all"
    sink.enqueue.assert_awaited_once_with("Source BAN alice: bye all")
    assert memory.get("alice") is None


@pytest.mark.asyncio
async def test_timeout_includes_duration() -> None:
    sink = AsyncMock()
    classifier = _classifier(sink)

    await classifier.handle(_event(ChatEventKind.MESSAGE, text="spam"))
    relay = await classifier.handle(
        _event(ChatEventKind.TIMEOUT, duration_seconds=600)
    )

    assert relay == "Source TIMEOUT alice 600s: spam"


@pytest.mark.asyncio
async def test_ban_without_memory_uses_no_data() -> None:
    sink = AsyncMock()
    classifier = _classifier(sink)

    relay = await classifier.handle(_event(ChatEventKind.BAN, actor="ghost"))

    assert relay == "Source BAN ghost: no data"


@pytest.mark.asyncio
async def test_banned_word_is_censored_in_relay() -> None:
    sink = AsyncMock()
    classifier = _classifier(sink)

    await classifier.handle(_event(ChatEventKind.MESSAGE, text="ty kurwa"))
    relay = await classifier.handle(_event(ChatEventKind.BAN))

    assert relay == "Source BAN alice: ty k***a"


@pytest.mark.asyncio
async def test_block_word_replaces_text_with_placeholder() -> None:
    sink = AsyncMock()
    classifier = _classifier(sink)

    await classifier.handle(_event(ChatEventKind.MESSAGE, text="please blockme kurwa"))
    relay = await classifier.handle(_event(ChatEventKind.BAN))

    assert relay == "Source BAN alice: [hidden]"
    assert "blockme" not in relay


@pytest.mark.asyncio
async def test_delete_relays_deleted_text_and_keeps_memory() -> None:
    sink = AsyncMock()
    memory = UserMemoryCache()
    classifier = _classifier(sink, memory)

    await classifier.handle(_event(ChatEventKind.MESSAGE, text="latest"))
    relay = await classifier.handle(_event(ChatEventKind.DELETE, text="oops"))

    assert relay == "Source DELETE alice: oops"
    assert memory.get("alice") == "latest"


@pytest.mark.asyncio
async def test_events_from_other_channels_are_ignored() -> None:
    sink = AsyncMock()
    memory = UserMemoryCache()
    classifier = _classifier(sink, memory)

    await classifier.handle(_event(ChatEventKind.MESSAGE, channel="other", text="hi"))
    relay = await classifier.handle(_event(ChatEventKind.BAN, channel="#OTHER"))

    assert relay is None
    assert len(memory) == 0
    sink.enqueue.assert_not_awaited()


@pytest.mark.asyncio
async def test_own_bot_and_empty_messages_are_not_recorded() -> None:
    sink = AsyncMock()
    memory = UserMemoryCache()
    classifier = _classifier(sink, memory)

    await classifier.handle(_event(ChatEventKind.MESSAGE, actor="RelayBot", text="relay"))
    await classifier.handle(_event(ChatEventKind.MESSAGE, text="   "))

    assert len(memory) == 0


@pytest.mark.asyncio
async def test_ban_notice_relayed_only_when_enabled() -> None:
    sink = AsyncMock()
    enabled = _classifier(sink, relay_ban_notices=True)

    relay = await enabled.handle(
        _event(ChatEventKind.MESSAGE, actor="7tvbot", text="spammer has been permanently banned")
    )

    assert relay == "Source NOTICE: spammer has been permanently banned"
    sink.enqueue.assert_awaited_once_with(relay, "7tvbot")

    quiet_sink = AsyncMock()
    disabled = _classifier(quiet_sink)
    assert await disabled.handle(
        _event(ChatEventKind.MESSAGE, actor="7tvbot", text="spammer has been permanently banned")
    ) is None
    quiet_sink.enqueue.assert_not_awaited()


def test_ban_notice_patterns() -> None:
    assert is_ban_notice("user został zbanowany")
    assert is_ban_notice(".ban someone")
    assert not is_ban_notice("banana bread")


def test_display_channel() -> None:
    assert display_channel("#xqc") == "Xqc"
