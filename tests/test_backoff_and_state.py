import pytest

from services.relay.backoff import Backoff
from shared.platforms.state import (
    ConnectionState,
    InvalidTransition,
    can_transition,
    require_transition,
)


def test_backoff_sequence_from_floor() -> None:
    backoff = Backoff()

    delays = [backoff.next_delay() for _ in range(5)]

    assert delays == [5.0, 7.5, 11.25, 16.875, 25.3125]


def test_backoff_is_capped_at_ceiling() -> None:
    backoff = Backoff()

    delays = [backoff.next_delay() for _ in range(20)]

    assert max(delays) == 60.0
    assert delays[-1] == 60.0


def test_backoff_reset_returns_to_floor() -> None:
    backoff = Backoff()
    backoff.next_delay()
    backoff.next_delay()

    backoff.reset()

    assert backoff.peek() == 5.0


@pytest.mark.parametrize(
    "kwargs",
    [{"floor": 0}, {"floor": 10, "ceiling": 5}, {"multiplier": 0.5}],
)
def test_backoff_rejects_invalid_settings(kwargs) -> None:
    with pytest.raises(ValueError):
        Backoff(**kwargs)


def test_allowed_transitions() -> None:
    assert can_transition(ConnectionState.DISCONNECTED, ConnectionState.CONNECTING)
    assert can_transition(ConnectionState.CONNECTING, ConnectionState.CONNECTED)
    assert can_transition(ConnectionState.CONNECTED, ConnectionState.RECONNECTING)
    assert can_transition(ConnectionState.RECONNECTING, ConnectionState.CONNECTING)
    for state in ConnectionState:
        if state is not ConnectionState.FATAL:
            assert can_transition(state, ConnectionState.FATAL)


def test_fatal_is_terminal() -> None:
    assert ConnectionState.FATAL.terminal
    for state in ConnectionState:
        assert not can_transition(ConnectionState.FATAL, state)


def test_invalid_transition_raises() -> None:
    with pytest.raises(InvalidTransition):
        require_transition(ConnectionState.CONNECTED, ConnectionState.CONNECTING)


def test_state_from_value() -> None:
    assert ConnectionState.from_value("Connected") is ConnectionState.CONNECTED
    assert ConnectionState.from_value("bogus") is ConnectionState.DISCONNECTED
