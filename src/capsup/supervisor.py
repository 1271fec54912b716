# src/capsup/supervisor.py: The capture supervisor loop.
# This module contains the coordinator that owns the recovery state and the
# producer/consumer handles. Background threads (health monitor, producer
# reaper, consumer watchdog) only post events to it. It also holds the entry
# point that resolves the device, takes the per-device process lock and runs
# the loop until the consumer exits cleanly or the operator stops it.

import os
import queue
import signal
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Dict, Optional, Tuple

from filelock import FileLock, Timeout
from pydantic import BaseModel

from .config import SupervisorConfig, ensure_runnable, render_command
from .device import DEV_ROOT, SYSFS_ROOT, DeviceHandle, resolve_device
from .diagnostics import DiagnosticsLogger, session_log_path
from .health import DeviceHealth, HealthMonitor, check_health
from .policy import PolicyState, RecoveryPolicy
from .preflight import run_preflight
from .process import (
    ExitOutcome,
    ProcessState,
    SupervisedProcess,
    launch,
    launch_failure_outcome,
    terminate_all,
)
from .producer import ProducerManager
from .util.errors import ConfigurationError, InstanceLocked, ProcessLaunchFailure, RecoveryExhausted
from .util.fs import atomic_write, slugify
from .util.log import device_context, get_logger, start_thread
from .util.paths import get_log_dir, get_state_dir
from .watchdog import ConsumerWatchdog

logger = get_logger(__name__)

TICK_SEC = 0.5
DEFAULT_KEY = "default"
CLEAN_RELAUNCH_MIN_SEC = 1.0


# --- Events posted to the coordinator ---

@dataclass
class ProcessExited:
    role: str
    process: SupervisedProcess

@dataclass
class DeviceChanged:
    previous: Optional[DeviceHealth]
    current: DeviceHealth

@dataclass
class ResetRequested:
    pass


class SupervisorStatus(BaseModel):
    """Queryable snapshot of the supervisor."""
    pid: int
    running: bool = True
    device: Optional[str] = None
    device_health: Optional[DeviceHealth] = None
    policy_state: PolicyState = PolicyState.IDLE
    crash_count: int = 0
    crash_threshold: int
    last_crash_at: Optional[datetime] = None
    producer_state: Optional[ProcessState] = None
    producer_pid: Optional[int] = None
    consumer_state: Optional[ProcessState] = None
    consumer_pid: Optional[int] = None
    launches: int = 0
    restarts: int = 0
    log_file: Optional[str] = None
    updated_at: datetime


class Supervisor:
    """
    Supervises a capture producer and a consumer against one device.

    All policy decisions happen on the thread that calls `run()`.
    """

    def __init__(
        self,
        config: SupervisorConfig,
        diagnostics: DiagnosticsLogger,
        handle: Optional[DeviceHandle] = None,
        status_path: Optional[Path] = None,
        health_check=None,
        watchdog: Optional[ConsumerWatchdog] = None,
    ):
        self.config = config
        self.diagnostics = diagnostics
        self.handle = handle
        self.status_path = status_path
        self.policy = RecoveryPolicy(config.recovery)
        self.watchdog = watchdog or ConsumerWatchdog()
        self.exit_code: Optional[int] = None
        self.restarts = 0
        self.consumer: Optional[SupervisedProcess] = None
        self.consumer_launches = 0

        self._events = queue.SimpleQueue()
        self._stop = threading.Event()
        self._status_lock = threading.Lock()
        self._status: Optional[SupervisorStatus] = None
        self._published: Optional[Dict] = None
        self._last_crash_at: Optional[datetime] = None

        values = config.placeholders()
        if handle is not None:
            values["device"] = str(handle.path)

        self.producer: Optional[ProducerManager] = None
        if config.producer is not None:
            self.producer = ProducerManager(
                render_command(config.producer.command, values),
                config.producer.grace_sec,
                diagnostics,
                on_exit=lambda process: self._events.put(ProcessExited("producer", process)),
            )

        self._consumer_command = None
        if config.consumer is not None:
            self._consumer_command = render_command(config.consumer.command, values)

        self.monitor: Optional[HealthMonitor] = None
        if handle is not None:
            check = health_check or partial(
                check_health, handle, config.health.probe_command, config.health.probe_timeout_sec
            )
            self.monitor = HealthMonitor(
                handle,
                check,
                config.health.interval_sec,
                diagnostics,
                on_change=lambda previous, current: self._events.put(DeviceChanged(previous, current)),
            )

    # --- Public control surface ---

    def request_stop(self) -> None:
        self._stop.set()
        self._events.put(None)

    def request_reset(self) -> None:
        self._events.put(ResetRequested())

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def status(self) -> SupervisorStatus:
        with self._status_lock:
            if self._status is not None:
                return self._status
        return self._snapshot(running=not self._stop.is_set())

    def run(self) -> int:
        """Runs until the consumer exits cleanly or a stop is requested."""
        device = self.handle.describe() if self.handle else "none"
        self.diagnostics.info(f"Capture supervisor started (PID: {os.getpid()}, device: {device})")
        try:
            if self.monitor is not None:
                self.monitor.start()
            self._launch_or_recover()
            self._publish()
            while not self._stop.is_set():
                try:
                    event = self._events.get(timeout=TICK_SEC)
                except queue.Empty:
                    event = None
                if event is not None:
                    self._handle(event)
                if self.policy.check_stability(self._all_running()):
                    self.diagnostics.info(
                        f"Pipeline stable for {self.config.recovery.stability_sec:g}s; crash count reset"
                    )
                self._publish()
        finally:
            self._shutdown()
        return self.exit_code

    # --- Event handling ---

    def _handle(self, event) -> None:
        if isinstance(event, ProcessExited):
            self._handle_exit(event)
        elif isinstance(event, DeviceChanged):
            self._handle_device(event)
        elif isinstance(event, ResetRequested):
            self._handle_reset()

    def _handle_exit(self, event: ProcessExited) -> None:
        process = event.process
        current = self.producer.current if event.role == "producer" and self.producer else self.consumer
        outcome = process.outcome
        if outcome is None:
            return
        if process is not current:
            # Replaced while the coordinator was busy recovering something else.
            if not outcome.clean:
                self._record_superseded_crash(event.role, outcome)
            return

        if outcome.clean:
            self.policy.record_exit(outcome)
            if event.role == "consumer":
                self.diagnostics.info("Consumer exited normally; shutting down")
                self._stop.set()
            else:
                self._relaunch_after_clean_exit(process)
            return

        self._record_crash(event.role, outcome)
        self._recover()

    def _relaunch_after_clean_exit(self, process: SupervisedProcess) -> None:
        if self.policy.halted:
            self.diagnostics.info(f"Producer (PID: {process.pid}) exited normally")
            return
        delay = max(self.config.recovery.backoff_sec, CLEAN_RELAUNCH_MIN_SEC)
        self.diagnostics.info(f"Producer (PID: {process.pid}) exited normally; relaunching in {delay:g}s")
        if self._stop.wait(delay):
            return
        if self.producer.status() is not ProcessState.RUNNING:
            self._launch_or_recover()

    def _record_superseded_crash(self, role: str, outcome: ExitOutcome) -> None:
        state = self._record_crash(role, outcome)
        if state is not PolicyState.RECOVERING:
            return
        if self._all_running():
            self.policy.recovery_complete()
            self.diagnostics.info("Recovery complete")
        else:
            self._recover()

    def _handle_device(self, event: DeviceChanged) -> None:
        if event.current is not DeviceHealth.HEALTHY or event.previous is None:
            return
        if self.policy.state is not PolicyState.IDLE or self.producer is None:
            return
        if self.producer.status() is not ProcessState.RUNNING:
            self.diagnostics.info("Device is back; starting producer")
            self._launch_or_recover()

    def _handle_reset(self) -> None:
        previous = self.policy.state
        self.policy.reset()
        self.diagnostics.info(f"Recovery policy reset by operator (was {previous.value})")
        self._launch_or_recover()

    # --- Recovery ---

    def _record_crash(self, role: str, outcome: ExitOutcome) -> PolicyState:
        was_halted = self.policy.halted
        self._last_crash_at = datetime.now(timezone.utc)
        state = self.policy.record_exit(outcome)
        self.diagnostics.warn(
            f"{role.capitalize()} crashed ({outcome.describe()}); "
            f"crash {self.policy.crash_count}/{self.policy.crash_threshold}"
        )
        if state is PolicyState.HALTED and not was_halted:
            self.diagnostics.error(
                f"Crash threshold reached ({self.policy.crash_count}/{self.policy.crash_threshold}); "
                "automatic recovery halted, operator action required "
                "(check the device with 'capsupctl doctor', then run 'capsupctl resume')"
            )
        self._publish()
        return state

    def _recover(self) -> None:
        while self.policy.state is PolicyState.RECOVERING and not self._stop.is_set():
            delay = self.policy.backoff_delay()
            self.diagnostics.info(
                f"Attempting recovery (crash {self.policy.crash_count}/{self.policy.crash_threshold}); "
                f"waiting {delay:.1f}s before restart"
            )
            self._publish()
            if self._stop.wait(delay):
                return
            self._await_device()
            if self._stop.is_set():
                return

            self.restarts += 1
            failure = self._restart_pipeline()
            if failure is None:
                self.policy.recovery_complete()
                self.diagnostics.info("Recovery complete")
                return
            self._record_crash(*failure)

    def _await_device(self) -> bool:
        if self.monitor is None:
            return True
        deadline = time.monotonic() + self.config.recovery.device_wait_sec
        while True:
            status = self.monitor.poll_once()
            if status is DeviceHealth.HEALTHY:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.diagnostics.warn(
                    f"Device {self.handle.describe()} is {status.value}; restarting anyway"
                )
                return False
            if self._stop.wait(min(self.config.health.interval_sec, remaining)):
                return False

    def _restart_pipeline(self) -> Optional[Tuple[str, ExitOutcome]]:
        if self.producer is not None:
            try:
                self.producer.restart()
            except ProcessLaunchFailure as e:
                return "producer", launch_failure_outcome(e)
        return self._start_consumer_if_needed()

    def _launch_or_recover(self) -> None:
        failure = self._start_missing()
        if failure is not None:
            self._record_crash(*failure)
            self._recover()

    def _start_missing(self) -> Optional[Tuple[str, ExitOutcome]]:
        """Starts whatever is not running. Returns the first launch failure."""
        if self.producer is not None and self.producer.status() is not ProcessState.RUNNING:
            try:
                self.producer.start()
            except ProcessLaunchFailure as e:
                return "producer", launch_failure_outcome(e)
        return self._start_consumer_if_needed()

    def _start_consumer_if_needed(self) -> Optional[Tuple[str, ExitOutcome]]:
        if self._consumer_command is None:
            return None
        if self.consumer is not None and self.consumer.running:
            return None
        self.consumer_launches += 1
        command_line = " ".join(self._consumer_command)
        try:
            process = launch("consumer", self._consumer_command)
        except ProcessLaunchFailure as e:
            self.diagnostics.error(f"Failed to start consumer: {command_line}: {e}")
            return "consumer", launch_failure_outcome(e)
        self.consumer = process
        self.diagnostics.info(f"Started consumer (PID: {process.pid}): {command_line}")
        start_thread(self._watch_consumer, process, name=f"consumer-watchdog-{process.pid}")
        return None

    def _watch_consumer(self, process: SupervisedProcess) -> None:
        if self.watchdog.observe(process, self._stop) is not None:
            self._events.put(ProcessExited("consumer", process))

    def _all_running(self) -> bool:
        if self.producer is not None and self.producer.status() is not ProcessState.RUNNING:
            return False
        if self._consumer_command is not None and (self.consumer is None or not self.consumer.running):
            return False
        return True

    # --- Shutdown and status ---

    def _shutdown(self) -> None:
        self._stop.set()
        if self.monitor is not None:
            self.monitor.stop(timeout=self.config.health.probe_timeout_sec + 1)

        candidates = [self.producer.current if self.producer else None, self.consumer]
        to_stop = [process for process in candidates if process is not None and process.begin_stop()]
        if to_stop:
            grace = max(
                cfg.grace_sec for cfg in (self.config.producer, self.config.consumer) if cfg is not None
            )
            terminate_all(to_stop, grace)
            for process in to_stop:
                self.diagnostics.info(f"Stopped {process.name} (PID: {process.pid}): {process.state.value}")

        if self.exit_code is None:
            self.exit_code = RecoveryExhausted.exit_code if self.policy.halted else 0
        self.diagnostics.info(f"Shutdown complete (exit code {self.exit_code})")
        self._publish(running=False)

    def _snapshot(self, running: bool = True) -> SupervisorStatus:
        producer = self.producer.current if self.producer else None
        return SupervisorStatus(
            pid=os.getpid(),
            running=running,
            device=self.handle.describe() if self.handle else None,
            device_health=self.monitor.status if self.monitor else None,
            policy_state=self.policy.state,
            crash_count=self.policy.crash_count,
            crash_threshold=self.policy.crash_threshold,
            last_crash_at=self._last_crash_at,
            producer_state=self.producer.status() if self.producer else None,
            producer_pid=producer.pid if producer else None,
            consumer_state=self.consumer.state if self.consumer else (
                ProcessState.NOT_STARTED if self._consumer_command is not None else None
            ),
            consumer_pid=self.consumer.pid if self.consumer else None,
            launches=(self.producer.launch_count if self.producer else 0) + self.consumer_launches,
            restarts=self.restarts,
            log_file=str(self.diagnostics.path) if self.diagnostics.path else None,
            updated_at=datetime.now(timezone.utc),
        )

    def _publish(self, running: bool = True) -> None:
        snapshot = self._snapshot(running)
        with self._status_lock:
            self._status = snapshot
        comparable = snapshot.model_dump(exclude={"updated_at"})
        if self.status_path is None or comparable == self._published:
            return
        try:
            atomic_write(self.status_path, snapshot.model_dump_json(indent=2))
            self._published = comparable
        except OSError as e:
            logger.warning(f"Failed to write status file {self.status_path}: {e}")


# --- Entry point ---

def status_path_for(key: str, state_dir: Optional[Path] = None) -> Path:
    return (state_dir or get_state_dir()) / f"{key}.json"

def device_key(device: Optional[str], sysfs_root: Path = SYSFS_ROOT, dev_root: Path = DEV_ROOT) -> str:
    """Lock/status file key for a device as given on the command line."""
    if not device:
        return DEFAULT_KEY
    try:
        return resolve_device(device, sysfs_root, dev_root).key
    except ConfigurationError:
        return slugify(device)

def _install_signal_handlers(supervisor: Supervisor) -> Dict:
    def _stop(signum, frame):
        supervisor.request_stop()

    def _reset(signum, frame):
        supervisor.request_reset()

    previous = {}
    for signum, handler in ((signal.SIGINT, _stop), (signal.SIGTERM, _stop), (signal.SIGUSR1, _reset)):
        previous[signum] = signal.signal(signum, handler)
    return previous

def run_supervisor(
    config: SupervisorConfig,
    install_signals: bool = True,
    state_dir: Optional[Path] = None,
    sysfs_root: Path = SYSFS_ROOT,
    dev_root: Path = DEV_ROOT,
) -> int:
    """
    Resolves the device, acquires the per-device lock and runs the supervisor.

    Returns the process exit code.
    """
    log_dir = config.logging.log_dir or get_log_dir()
    diagnostics = DiagnosticsLogger(session_log_path(log_dir))
    try:
        try:
            ensure_runnable(config)
            handle = resolve_device(config.device, sysfs_root, dev_root) if config.device else None
            run_preflight(config, handle, diagnostics)
        except ConfigurationError as e:
            diagnostics.error(str(e))
            return e.exit_code

        key = handle.key if handle else DEFAULT_KEY
        device_context.set(key)
        state_dir = state_dir or get_state_dir()
        state_dir.mkdir(parents=True, exist_ok=True)
        lock = FileLock(state_dir / f"{key}.lock")

        try:
            with lock.acquire(timeout=0):
                supervisor = Supervisor(
                    config, diagnostics, handle, status_path=status_path_for(key, state_dir)
                )
                previous = _install_signal_handlers(supervisor) if install_signals else {}
                try:
                    return supervisor.run()
                finally:
                    for signum, handler in previous.items():
                        signal.signal(signum, handler)
        except Timeout:
            diagnostics.error(f"Another supervisor is already running for {handle.describe() if handle else key}.")
            return InstanceLocked.exit_code
    finally:
        diagnostics.close()
