# src/capsup/producer.py: Lifecycle of the capture producer.
# The producer is the process that reads the physical device and feeds the
# loopback node (typically ffmpeg). This module starts, stops and restarts it,
# and runs a reaper thread per launch that reports unexpected exits.

import subprocess
import threading
from typing import Callable, List, Optional

from .diagnostics import DiagnosticsLogger
from .process import ProcessState, SupervisedProcess, launch, terminate_all
from .util.errors import AlreadyRunning
from .util.log import get_logger, start_thread

logger = get_logger(__name__)

REAP_POLL_SEC = 0.5


class ProducerManager:
    """
    Owns the producer process.

    `on_exit` is called from the reaper thread with the process whenever it
    exits without having been stopped through this manager.
    """

    def __init__(
        self,
        command: List[str],
        grace_sec: float,
        diagnostics: DiagnosticsLogger,
        on_exit: Optional[Callable[[SupervisedProcess], None]] = None,
        name: str = "producer",
    ):
        self.command = command
        self.grace_sec = grace_sec
        self.diagnostics = diagnostics
        self.name = name
        self.launch_count = 0
        self._on_exit = on_exit
        self._process: Optional[SupervisedProcess] = None
        self._lock = threading.RLock()

    @property
    def current(self) -> Optional[SupervisedProcess]:
        return self._process

    def status(self) -> ProcessState:
        process = self._process
        return process.state if process is not None else ProcessState.NOT_STARTED

    def start(self) -> SupervisedProcess:
        """
        Launches the producer.

        Raises:
            AlreadyRunning: If a producer is currently running.
            ProcessLaunchFailure: If the executable cannot be started.
        """
        with self._lock:
            if self._process is not None and self._process.running:
                raise AlreadyRunning(f"The {self.name} is already running (PID: {self._process.pid}).")
            self.launch_count += 1
            command_line = " ".join(self.command)
            try:
                process = launch(self.name, self.command)
            except Exception as e:
                self.diagnostics.error(f"Failed to start {self.name}: {command_line}: {e}")
                raise
            self._process = process
            self.diagnostics.info(f"Started {self.name} (PID: {process.pid}): {command_line}")
            start_thread(self._reap, process, name=f"{self.name}-reaper-{process.pid}")
            return process

    def stop(self) -> ProcessState:
        """Stops the producer. Does nothing if it is not running."""
        with self._lock:
            process = self._process
            if process is None or not process.begin_stop():
                return self.status()
            terminate_all([process], self.grace_sec)
            outcome = process.outcome.describe() if process.outcome else "no exit status"
            self.diagnostics.info(
                f"Stopped {self.name} (PID: {process.pid}): {process.state.value}, {outcome}"
            )
            return process.state

    def restart(self) -> SupervisedProcess:
        self.stop()
        return self.start()

    def _reap(self, process: SupervisedProcess) -> None:
        while True:
            try:
                returncode = process.popen.wait(timeout=REAP_POLL_SEC)
                break
            except subprocess.TimeoutExpired:
                if not process.running:
                    return
        outcome = process.mark_exited(returncode)
        if outcome is None:
            return
        logger.debug(f"Reaped {self.name} PID {process.pid}: {outcome.describe()}")
        if self._on_exit is not None:
            self._on_exit(process)
