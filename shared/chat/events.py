"""Normalized chat/moderation event schema consumed by the relay engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ChatEventKind(str, Enum):
    MESSAGE = "message"
    BAN = "ban"
    TIMEOUT = "timeout"
    DELETE = "delete"


def normalize_channel(value: Optional[str]) -> str:
    """Lowercase a channel handle and drop any leading '#'."""

    return (value or "").strip().lstrip("#").lower()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChatEvent:
    """
    A single transport event.

    `actor` is the user the event is about: the sender of a MESSAGE, the
    banned/timed-out user, or the author of a deleted message.
    """

    kind: ChatEventKind
    channel: str
    actor: str
    text: Optional[str] = None
    duration_seconds: Optional[int] = None
    timestamp: datetime = field(default_factory=_utc_now)
    message_id: Optional[str] = None
    raw: Optional[str] = None

    def is_from(self, channel: str) -> bool:
        return normalize_channel(self.channel) == normalize_channel(channel)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "channel": self.channel,
            "actor": self.actor,
            "text": self.text,
            "duration_seconds": self.duration_seconds,
            "timestamp": self.timestamp.astimezone(timezone.utc).isoformat(),
            "message_id": self.message_id,
        }


def create_chat_event(
    *,
    kind: ChatEventKind | str,
    channel: str,
    actor: str,
    text: Optional[str] = None,
    duration_seconds: Optional[int] = None,
    timestamp: Optional[datetime] = None,
    message_id: Optional[str] = None,
    raw: Optional[str] = None,
) -> ChatEvent:
    if not channel:
        raise ValueError("channel is required")

    resolved_kind = ChatEventKind(kind)

    if resolved_kind == ChatEventKind.TIMEOUT and duration_seconds is None:
        raise ValueError("timeout events require duration_seconds")

    return ChatEvent(
        kind=resolved_kind,
        channel=normalize_channel(channel),
        actor=(actor or "").strip(),
        text=text,
        duration_seconds=duration_seconds,
        timestamp=timestamp or _utc_now(),
        message_id=message_id,
        raw=raw,
    )


__all__ = [
    "ChatEvent",
    "ChatEventKind",
    "create_chat_event",
    "normalize_channel",
]
