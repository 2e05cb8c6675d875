"""
Transport contracts consumed by the relay engine.

The supervisor never talks to a concrete chat protocol directly. It builds
transports through a factory and treats them through this interface:

- connect() returning normally is the "connected" signal
- iter_events() finishing is the "disconnected" signal
- iter_events() raising is the "error" signal
"""

from __future__ import annotations

from enum import Enum
from typing import AsyncIterator, Callable, Protocol, runtime_checkable

from shared.chat.events import ChatEvent


class ReadyState(str, Enum):
    CONNECTING = "CONNECTING"
    OPEN = "OPEN"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


class TransportNotConnected(RuntimeError):
    """Raised when a send is attempted on a transport that is not open."""


class AuthenticationFailed(RuntimeError):
    """Raised when the chat server rejects the credentials."""


@runtime_checkable
class ChatTransport(Protocol):
    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def send(self, destination: str, text: str) -> None: ...

    def ready_state(self) -> ReadyState: ...

    def iter_events(self) -> AsyncIterator[ChatEvent]: ...


@runtime_checkable
class SecondaryClient(Protocol):
    async def send_message(self, content: str) -> bool: ...


# token -> fresh, unconnected transport
TransportFactory = Callable[[str], ChatTransport]


__all__ = [
    "AuthenticationFailed",
    "ChatTransport",
    "ReadyState",
    "SecondaryClient",
    "TransportFactory",
    "TransportNotConnected",
]
