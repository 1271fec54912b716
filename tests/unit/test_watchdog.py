# tests/unit/test_watchdog.py: Unit tests for the consumer watchdog.

import signal
import sys
import threading

from capsup.process import ProcessState, launch
from capsup.watchdog import ConsumerWatchdog

def python(code: str):
    return [sys.executable, "-c", code]

def test_clean_exit():
    """Tests that exit code 0 is reported as a clean exit."""
    process = launch("consumer", python("pass"))
    outcome = ConsumerWatchdog(poll_interval=0.05).observe(process)

    assert outcome.clean
    assert process.state is ProcessState.EXITED_CLEAN

def test_nonzero_exit_is_a_crash():
    process = launch("consumer", python("import sys; sys.exit(139)"))
    outcome = ConsumerWatchdog(poll_interval=0.05).observe(process)

    assert not outcome.clean
    assert outcome.returncode == 139
    assert outcome.describe() == "exit code 139"
    assert process.state is ProcessState.EXITED_CRASHED

def test_signal_is_a_crash():
    """Tests that termination by a signal is classified as a crash."""
    process = launch("consumer", python("import os, signal; os.kill(os.getpid(), signal.SIGKILL)"))
    outcome = ConsumerWatchdog(poll_interval=0.05).observe(process)

    assert not outcome.clean
    assert outcome.signal == signal.SIGKILL
    assert outcome.describe() == "signal SIGKILL"
    assert process.state is ProcessState.EXITED_CRASHED

def test_cancel_returns_none():
    """Tests that observing a long-running consumer can be cancelled."""
    process = launch("consumer", python("import time; time.sleep(30)"))
    cancel = threading.Event()
    cancel.set()
    try:
        assert ConsumerWatchdog(poll_interval=0.05).observe(process, cancel) is None
        assert process.running
    finally:
        process.popen.kill()
        process.popen.wait()

def test_intentional_stop_is_not_reported():
    process = launch("consumer", python("import time; time.sleep(30)"))
    assert process.begin_stop()
    process.popen.terminate()
    assert ConsumerWatchdog(poll_interval=0.05).observe(process) is None
