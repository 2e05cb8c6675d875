import pytest

from shared.runtime.ratelimits import (
    DuplicateSuppressor,
    RateLimitExceeded,
    RateLimitWindow,
)


def test_window_exhausts_at_cap(clock) -> None:
    window = RateLimitWindow(max_per_window=3, clock=clock)

    for _ in range(3):
        assert window.exhausted() is False
        window.record()

    assert window.exhausted() is True
    with pytest.raises(RateLimitExceeded):
        window.record()


def test_reset_on_timer_cadence_restores_budget(clock) -> None:
    window = RateLimitWindow(max_per_window=2, clock=clock)
    window.record()
    window.record()

    clock.advance(window.window_seconds)
    window.reset()

    assert window.count == 0
    assert window.exhausted() is False
    assert window.retry_after() == 1

    clock.advance(1)
    assert window.retry_after() == 0
    window.record()
    assert window.count == 1


def test_no_61_second_span_exceeds_cap(clock) -> None:
    """A reset tick right after a burst must not double the budget."""
    window = RateLimitWindow(max_per_window=20, clock=clock)
    sends = []

    # burst late in one fixed window, then a reset, then try to burst again
    clock.advance(59)
    while not window.exhausted() and window.retry_after() == 0:
        window.record()
        sends.append(clock())
    clock.advance(1)
    window.reset()
    while not window.exhausted() and window.retry_after() == 0:
        window.record()
        sends.append(clock())

    for start in sends:
        in_span = [t for t in sends if start <= t < start + 61]
        assert len(in_span) <= 20


def test_sliding_log_releases_after_horizon(clock) -> None:
    window = RateLimitWindow(max_per_window=1, clock=clock)
    window.record()

    clock.advance(30)
    window.reset()
    assert window.exhausted() is False
    assert window.retry_after() == 31
    with pytest.raises(RateLimitExceeded):
        window.record()

    clock.advance(31)
    assert window.retry_after() == 0


def test_invalid_window_settings() -> None:
    with pytest.raises(ValueError):
        RateLimitWindow(max_per_window=0)
    with pytest.raises(ValueError):
        RateLimitWindow(min_interval=-1)


def test_duplicate_suppressed_within_window(clock) -> None:
    dupes = DuplicateSuppressor(window_seconds=10, clock=clock)

    assert dupes.is_duplicate("hi") is False
    dupes.remember("hi")

    clock.advance(9.9)
    assert dupes.is_duplicate("hi") is True
    assert dupes.is_duplicate("other") is False

    clock.advance(0.2)
    assert dupes.is_duplicate("hi") is False
