# tests/e2e/conftest.py: Fixtures for running a real supervisor loop in a thread.
# The supervised producer and consumer are small Python scripts run with the
# current interpreter, so the scenarios need neither ffmpeg nor a capture card.

import json
import sys
import threading
import time
from pathlib import Path
from typing import Callable, List

import pytest

from capsup.diagnostics import DiagnosticsLogger
from capsup.supervisor import Supervisor
from capsup.watchdog import ConsumerWatchdog

def python(code: str, *args) -> List[str]:
    return [sys.executable, "-c", code, *[str(a) for a in args]]

def wait_for(predicate: Callable[[], bool], timeout: float = 15, interval: float = 0.02) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached before timeout")
        time.sleep(interval)

def read_events(path: Path):
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines()]

class SupervisorThread:
    """Runs `Supervisor.run()` in a background thread and keeps its exit code."""

    def __init__(self, supervisor: Supervisor):
        self.supervisor = supervisor
        self.exit_code = None
        self._thread = threading.Thread(target=self._run, name="supervisor", daemon=True)

    def _run(self):
        self.exit_code = self.supervisor.run()

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> "SupervisorThread":
        self._thread.start()
        return self

    def join(self, timeout: float = 15) -> int:
        self._thread.join(timeout)
        assert not self._thread.is_alive(), "supervisor did not stop"
        return self.exit_code

    def stop(self, timeout: float = 15) -> int:
        self.supervisor.request_stop()
        return self.join(timeout)

@pytest.fixture
def session(tmp_path: Path):
    """Session log and status file locations for one scenario."""
    class Session:
        log_path = tmp_path / "session.log"
        status_path = tmp_path / "status.json"

        def events(self):
            return read_events(self.log_path)

        def messages(self):
            return [e["message"] for e in self.events()]

        def status(self):
            return json.loads(self.status_path.read_text())

    return Session()

@pytest.fixture
def start_supervisor(session):
    """Builds and starts a supervisor; anything still running is stopped at teardown."""
    started = []
    loggers = []

    def factory(config, handle=None, health_check=None) -> SupervisorThread:
        diagnostics = DiagnosticsLogger(session.log_path)
        loggers.append(diagnostics)
        supervisor = Supervisor(
            config,
            diagnostics,
            handle,
            status_path=session.status_path,
            health_check=health_check,
            watchdog=ConsumerWatchdog(poll_interval=0.05),
        )
        runner = SupervisorThread(supervisor).start()
        started.append(runner)
        return runner

    yield factory

    for runner in started:
        if runner.alive:
            runner.stop()
    for diagnostics in loggers:
        diagnostics.close()
