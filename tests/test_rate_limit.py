"""
Tests for the sliding-window limiter guarding webhook triggers.
"""
from conftest import FROZEN_NOW, FrozenClock
from event_atlas.api.rate_limit import RateWindow, SlidingWindowRateLimiter


def _limiter(clock):
    return SlidingWindowRateLimiter([RateWindow("burst", 1, 10), RateWindow("hourly", 3, 3600)], clock=clock)


def test_hourly_window_applies_after_burst_window_clears():
    clock = FrozenClock(FROZEN_NOW)
    limiter = _limiter(clock)

    for _ in range(3):
        assert limiter.check("token").allowed
        clock.advance(seconds=11)
    decision = limiter.check("token")

    assert not decision.allowed
    assert decision.failed_window == "hourly"
    assert decision.retry_after == 3600 - 33
    assert limiter.check("other-token").allowed


def test_rejected_calls_do_not_count_against_the_window():
    clock = FrozenClock(FROZEN_NOW)
    limiter = _limiter(clock)

    assert limiter.check("token").allowed
    assert limiter.check("token").failed_window == "burst"
    clock.advance(seconds=10)

    assert limiter.check("token").allowed


def test_reset_forgets_every_key():
    clock = FrozenClock(FROZEN_NOW)
    limiter = _limiter(clock)
    limiter.check("token")

    limiter.reset()

    assert limiter.check("token").allowed
