# src/capsup/process.py: Supervised child processes.
# This module wraps subprocess.Popen for the producer and consumer: launching
# with typed failures, classifying exits, and terminating one or several
# processes with a shared grace period before force-killing them.

import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional

from .util.errors import ProcessLaunchFailure

# Conventional shell status for "command could not be executed".
LAUNCH_FAILED_CODE = 127
KILL_WAIT_SEC = 2.0


class ProcessState(str, Enum):
    NOT_STARTED = "NotStarted"
    RUNNING = "Running"
    EXITED_CLEAN = "ExitedClean"
    EXITED_CRASHED = "ExitedCrashed"
    KILLED = "Killed"


@dataclass(frozen=True)
class ExitOutcome:
    """How a supervised process ended."""
    returncode: int
    detail: Optional[str] = None

    @property
    def clean(self) -> bool:
        return self.returncode == 0

    @property
    def signal(self) -> Optional[int]:
        return -self.returncode if self.returncode < 0 else None

    def describe(self) -> str:
        if self.detail:
            return self.detail
        if self.signal is not None:
            try:
                return f"signal {signal.Signals(self.signal).name}"
            except ValueError:
                return f"signal {self.signal}"
        return f"exit code {self.returncode}"


def classify(returncode: int) -> ProcessState:
    return ProcessState.EXITED_CLEAN if returncode == 0 else ProcessState.EXITED_CRASHED


class SupervisedProcess:
    """A launched producer or consumer and what is known about its exit."""

    def __init__(self, name: str, command: List[str], popen: subprocess.Popen):
        self.name = name
        self.command = command
        self.popen = popen
        self.pid = popen.pid
        self.started_at = time.monotonic()
        self.state = ProcessState.RUNNING
        self.outcome: Optional[ExitOutcome] = None
        self.stopping = False
        self._lock = threading.Lock()

    def __repr__(self):
        return f"<SupervisedProcess {self.name} pid={self.pid} state={self.state.value}>"

    @property
    def running(self) -> bool:
        return self.state is ProcessState.RUNNING

    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    def begin_stop(self) -> bool:
        """Claims the process for an intentional stop. False if it already ended."""
        with self._lock:
            if self.state is not ProcessState.RUNNING or self.stopping:
                return False
            self.stopping = True
            return True

    def mark_exited(self, returncode: int) -> Optional[ExitOutcome]:
        """Records an unexpected exit. Returns None if the exit was already handled."""
        with self._lock:
            if self.state is not ProcessState.RUNNING or self.stopping:
                return None
            self.outcome = ExitOutcome(returncode)
            self.state = classify(returncode)
            return self.outcome

    def mark_stopped(self, returncode: Optional[int]) -> ProcessState:
        with self._lock:
            if returncode is not None:
                self.outcome = ExitOutcome(returncode)
            self.state = ProcessState.EXITED_CLEAN if returncode == 0 else ProcessState.KILLED
            return self.state


def launch(name: str, command: List[str]) -> SupervisedProcess:
    """
    Starts a supervised process.

    Raises:
        ProcessLaunchFailure: If the executable cannot be started.
    """
    try:
        popen = subprocess.Popen(command, stdin=subprocess.DEVNULL)
    except (OSError, ValueError) as e:
        raise ProcessLaunchFailure(f"Failed to launch {name} '{' '.join(command)}': {e}")
    return SupervisedProcess(name, command, popen)


def launch_failure_outcome(error: Exception) -> ExitOutcome:
    return ExitOutcome(LAUNCH_FAILED_CODE, detail=str(error))


def terminate_all(processes: Iterable[SupervisedProcess], grace_sec: float) -> None:
    """
    Stops processes claimed with `begin_stop()`: SIGTERM to all of them, one
    shared deadline, then SIGKILL for whatever is still alive.
    """
    processes = list(processes)
    for process in processes:
        if process.popen.poll() is None:
            try:
                process.popen.terminate()
            except ProcessLookupError:
                pass

    deadline = time.monotonic() + grace_sec
    for process in processes:
        try:
            process.popen.wait(timeout=max(deadline - time.monotonic(), 0))
        except subprocess.TimeoutExpired:
            process.popen.kill()
            try:
                process.popen.wait(timeout=KILL_WAIT_SEC)
            except subprocess.TimeoutExpired:
                pass
        process.mark_stopped(process.popen.returncode)
