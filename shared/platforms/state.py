"""Connection state definitions and helpers.

This module centralizes the relay's interpretation of connection states.
States are intentionally minimal and snapshot-friendly:

- DISCONNECTED : Initial state, no transport has been opened yet
- CONNECTING   : A transport is being opened
- CONNECTED    : Transport is open; outbound sends are allowed
- RECONNECTING : Old transport torn down, waiting on backoff / rebuild
- FATAL        : Reconnect attempts exhausted; the process must stop
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, FrozenSet


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FATAL = "fatal"

    @classmethod
    def from_value(
        cls, value: Any, *, default: "ConnectionState" = None
    ) -> "ConnectionState":
        if isinstance(value, cls):
            return value

        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if normalized in {member.name.lower(), member.value}:
                    return member

        return default or cls.DISCONNECTED

    @property
    def terminal(self) -> bool:
        return self is ConnectionState.FATAL


class InvalidTransition(RuntimeError):
    """Raised when the supervisor attempts a transition the table forbids."""


# FATAL is reachable from every state and leaves to nowhere.
ALLOWED_TRANSITIONS: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset(
        {ConnectionState.CONNECTING, ConnectionState.FATAL}
    ),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.RECONNECTING, ConnectionState.FATAL}
    ),
    ConnectionState.CONNECTED: frozenset(
        {ConnectionState.RECONNECTING, ConnectionState.FATAL}
    ),
    ConnectionState.RECONNECTING: frozenset(
        {ConnectionState.CONNECTING, ConnectionState.FATAL}
    ),
    ConnectionState.FATAL: frozenset(),
}


def can_transition(current: ConnectionState, target: ConnectionState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def require_transition(current: ConnectionState, target: ConnectionState) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Connection state transition {current.value} -> {target.value} is not allowed"
        )


__all__ = [
    "ConnectionState",
    "InvalidTransition",
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "require_transition",
]
