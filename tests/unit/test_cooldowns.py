"""Unit tests for CooldownTracker, driven by a fake clock."""

import pytest

from rb_common.discord.cooldowns import CooldownTracker
from rb_common.errors import OnCooldownError


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(clock):
    return CooldownTracker(300, clock=clock)


def test_first_use_allowed(tracker):
    assert tracker.check("g", "u") == 0.0
    tracker.try_acquire("g", "u")
    assert len(tracker) == 1


def test_second_use_blocked_with_remaining_time(tracker, clock):
    tracker.try_acquire("g", "u")
    clock.now += 120

    with pytest.raises(OnCooldownError) as exc_info:
        tracker.try_acquire("g", "u")
    assert exc_info.value.retry_after == pytest.approx(180)
    assert "180s" in exc_info.value.message


def test_allowed_again_after_window(tracker, clock):
    tracker.try_acquire("g", "u")
    clock.now += 300
    tracker.try_acquire("g", "u")


def test_keys_are_per_guild_and_user(tracker):
    tracker.try_acquire("g1", "u")
    tracker.try_acquire("g2", "u")
    tracker.try_acquire("g1", "other")
    assert len(tracker) == 3


def test_reset(tracker):
    tracker.try_acquire("g", "u")
    tracker.reset("g", "u")
    assert tracker.check("g", "u") == 0.0


def test_sweep_drops_only_expired(tracker, clock):
    tracker.hit("g", "old")
    clock.now += 200
    tracker.hit("g", "new")
    clock.now += 150

    assert tracker.sweep() == 1
    assert len(tracker) == 1
    assert tracker.check("g", "new") > 0
