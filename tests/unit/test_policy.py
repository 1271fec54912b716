# tests/unit/test_policy.py: Unit tests for the crash recovery policy.

import random

import pytest

from capsup.config import RecoveryConfig
from capsup.policy import PolicyState, RecoveryPolicy
from capsup.process import ExitOutcome

CRASH = ExitOutcome(137)
CLEAN = ExitOutcome(0)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_policy(clock, **overrides) -> RecoveryPolicy:
    return RecoveryPolicy(RecoveryConfig(**overrides), clock=clock)


def test_crash_moves_to_recovering(clock):
    """A single crash below the threshold asks for recovery."""
    policy = make_policy(clock, crash_threshold=3)
    assert policy.record_exit(CRASH) is PolicyState.RECOVERING
    assert policy.crash_count == 1
    assert policy.last_crash_at == clock.now

    policy.recovery_complete()
    assert policy.state is PolicyState.IDLE


def test_clean_exit_resets_crash_count(clock):
    """A clean exit forgives earlier crashes and keeps the policy idle."""
    policy = make_policy(clock, crash_threshold=5)
    policy.record_exit(CRASH)
    policy.recovery_complete()
    policy.record_exit(CRASH)
    policy.recovery_complete()

    assert policy.record_exit(CLEAN) is PolicyState.IDLE
    assert policy.crash_count == 0


def test_halts_when_threshold_reached(clock):
    """The third crash with a threshold of three halts automatic recovery."""
    policy = make_policy(clock, crash_threshold=3)
    for _ in range(2):
        assert policy.record_exit(CRASH) is PolicyState.RECOVERING
        policy.recovery_complete()

    assert policy.record_exit(CRASH) is PolicyState.HALTED
    assert policy.halted
    assert policy.crash_count == 3


def test_halted_is_terminal_until_reset(clock):
    """Nothing but an explicit reset leaves the Halted state."""
    policy = make_policy(clock, crash_threshold=1)
    assert policy.record_exit(CRASH) is PolicyState.HALTED

    assert policy.record_exit(CRASH) is PolicyState.HALTED
    policy.recovery_complete()
    assert policy.state is PolicyState.HALTED
    assert policy.record_exit(CLEAN) is PolicyState.HALTED

    policy.reset()
    assert policy.state is PolicyState.IDLE
    assert policy.crash_count == 0


def test_crash_count_tracks_crashes_since_last_clean_exit(clock):
    """For any sequence of exits the count equals crashes since the last clean one."""
    rng = random.Random(1234)
    policy = make_policy(clock, crash_threshold=1000)
    expected = 0
    for _ in range(200):
        if rng.random() < 0.3:
            policy.record_exit(CLEAN)
            expected = 0
        else:
            policy.record_exit(CRASH)
            policy.recovery_complete()
            expected += 1
        assert policy.crash_count == expected


def test_stability_window_resets_crash_count(clock):
    """Running continuously past the stability window forgives crash history."""
    policy = make_policy(clock, crash_threshold=3, stability_sec=120)
    policy.record_exit(CRASH)
    policy.recovery_complete()

    clock.now += 119
    assert policy.check_stability(running=True) is False
    assert policy.crash_count == 1

    clock.now += 1
    assert policy.check_stability(running=True) is True
    assert policy.crash_count == 0


def test_stability_window_requires_continuous_run(clock):
    """A dip out of Running cancels the pending stability reset."""
    policy = make_policy(clock, crash_threshold=3, stability_sec=10)
    policy.record_exit(CRASH)
    policy.recovery_complete()

    clock.now += 5
    policy.check_stability(running=False)
    clock.now += 10
    assert policy.check_stability(running=True) is False
    assert policy.crash_count == 1


def test_stability_window_only_after_recovery(clock):
    """Without a recovery cycle there is nothing to forgive."""
    policy = make_policy(clock, stability_sec=1)
    clock.now += 100
    assert policy.check_stability(running=True) is False


def test_exponential_backoff_is_capped(clock):
    policy = make_policy(clock, crash_threshold=10, backoff_sec=5, max_backoff_sec=30)
    delays = []
    for _ in range(4):
        policy.record_exit(CRASH)
        delays.append(policy.backoff_delay())
        policy.recovery_complete()
    assert delays == [5, 10, 20, 30]


def test_constant_backoff(clock):
    policy = make_policy(clock, crash_threshold=10, backoff_sec=2, backoff_strategy="constant")
    for _ in range(3):
        policy.record_exit(CRASH)
        assert policy.backoff_delay() == 2
        policy.recovery_complete()
