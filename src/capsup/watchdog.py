# src/capsup/watchdog.py: Consumer exit watchdog.
# The consumer (OBS or another streaming application) runs in the
# foreground. The watchdog only waits for it to exit and says whether the exit
# was clean; deciding what a crash means is left to the recovery policy.

import subprocess
import threading
from typing import Optional

from .process import ExitOutcome, SupervisedProcess


class ConsumerWatchdog:

    def __init__(self, poll_interval: float = 0.5):
        self.poll_interval = poll_interval

    def observe(self, process: SupervisedProcess,
                cancel: Optional[threading.Event] = None) -> Optional[ExitOutcome]:
        """
        Blocks until `process` exits and returns its outcome.

        Exit code 0 is a clean exit; any other code or a signal is a crash.
        Returns None if `cancel` is set first, or if the exit was caused by an
        intentional stop.
        """
        while True:
            try:
                returncode = process.popen.wait(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    return None
        return process.mark_exited(returncode)
