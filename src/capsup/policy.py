# src/capsup/policy.py: Crash recovery policy.
# A small state machine separating a temporarily flaky device, which is
# restarted with backoff, from a persistently broken one, which is escalated
# to the operator once the crash threshold is reached. Crash history is
# forgiven on a clean exit or after a stable run following a recovery.

import time
from enum import Enum
from typing import Callable, Optional

from .config import RecoveryConfig
from .process import ExitOutcome
from .util.retry import backoff_delay


class PolicyState(str, Enum):
    IDLE = "Idle"
    RECOVERING = "Recovering"
    HALTED = "Halted"


class RecoveryPolicy:
    """
    Holds the RecoveryState counters. Not thread-safe: the supervisor's
    coordinator thread is its only user.
    """

    def __init__(self, config: RecoveryConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.state = PolicyState.IDLE
        self.crash_count = 0
        self.last_crash_at: Optional[float] = None
        self.recovered_at: Optional[float] = None
        self._clock = clock

    @property
    def crash_threshold(self) -> int:
        return self.config.crash_threshold

    @property
    def halted(self) -> bool:
        return self.state is PolicyState.HALTED

    def record_exit(self, outcome: ExitOutcome) -> PolicyState:
        """Feeds one observed exit into the state machine."""
        if outcome.clean:
            self.crash_count = 0
            self.recovered_at = None
            return self.state

        self.crash_count += 1
        self.last_crash_at = self._clock()
        self.recovered_at = None
        if self.state is PolicyState.HALTED:
            return self.state
        if self.crash_count >= self.crash_threshold:
            self.state = PolicyState.HALTED
        else:
            self.state = PolicyState.RECOVERING
        return self.state

    def backoff_delay(self) -> float:
        return backoff_delay(
            self.crash_count,
            self.config.backoff_sec,
            max_seconds=self.config.max_backoff_sec,
            strategy=self.config.backoff_strategy,
            jitter=self.config.jitter,
        )

    def recovery_complete(self) -> None:
        if self.state is PolicyState.RECOVERING:
            self.state = PolicyState.IDLE
            self.recovered_at = self._clock()

    def check_stability(self, running: bool) -> bool:
        """
        Forgives crash history once everything has stayed up for the
        stability window after a recovery. Returns True when it did.
        """
        if self.recovered_at is None:
            return False
        if not running:
            self.recovered_at = None
            return False
        if self._clock() - self.recovered_at < self.config.stability_sec:
            return False
        self.recovered_at = None
        if self.crash_count == 0:
            return False
        self.crash_count = 0
        return True

    def reset(self) -> None:
        """Operator reset, the only way out of Halted."""
        self.state = PolicyState.IDLE
        self.crash_count = 0
        self.recovered_at = None
