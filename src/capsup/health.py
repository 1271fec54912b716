# src/capsup/health.py: Device health monitoring.
# The capture device is checked on a fixed interval: first whether its node
# exists at all, then whether it answers a lightweight capability query. Only
# transitions are logged, and a failed check is reported as a status value,
# never raised.

import os
import threading
from enum import Enum
from typing import Callable, List, Optional

from .config import render_command
from .device import DeviceHandle
from .diagnostics import DiagnosticsLogger
from .util.errors import DeviceUnavailable
from .util.log import get_logger, start_thread
from .util.shell import run_probe

logger = get_logger(__name__)


class DeviceHealth(str, Enum):
    HEALTHY = "Healthy"
    UNREACHABLE = "Unreachable"
    UNRESPONSIVE = "Unresponsive"


def check_health(handle: DeviceHandle, probe_command: List[str], timeout: float) -> DeviceHealth:
    """Classifies the current state of a capture device."""
    if not os.path.exists(handle.path):
        return DeviceHealth.UNREACHABLE
    try:
        run_probe(render_command(probe_command, {"device": str(handle.path)}), timeout)
    except DeviceUnavailable as e:
        logger.debug(f"Probe failed for {handle.path}: {e}")
        return DeviceHealth.UNRESPONSIVE
    return DeviceHealth.HEALTHY


class HealthMonitor:
    """Polls a device in a background thread and reports transitions."""

    def __init__(
        self,
        handle: DeviceHandle,
        check: Callable[[], DeviceHealth],
        interval_sec: float,
        diagnostics: DiagnosticsLogger,
        on_change: Optional[Callable[[Optional[DeviceHealth], DeviceHealth], None]] = None,
    ):
        self.handle = handle
        self.interval_sec = interval_sec
        self.diagnostics = diagnostics
        self._check = check
        self._on_change = on_change
        self._status: Optional[DeviceHealth] = None
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def status(self) -> Optional[DeviceHealth]:
        return self._status

    def poll_once(self) -> DeviceHealth:
        with self._lock:
            try:
                status = self._check()
            except Exception as e:
                logger.warning(f"Health check for {self.handle.path} raised: {e}")
                status = DeviceHealth.UNRESPONSIVE

            previous = self._status
            if status != previous:
                self._status = status
                self._log_transition(status)
                if self._on_change is not None:
                    self._on_change(previous, status)
            return status

    def _log_transition(self, status: DeviceHealth) -> None:
        device = self.handle.describe()
        if status is DeviceHealth.HEALTHY:
            self.diagnostics.info(f"Device {device} is healthy")
        elif status is DeviceHealth.UNREACHABLE:
            self.diagnostics.warn(f"Device {device} not found (may be disconnected)")
        else:
            self.diagnostics.warn(f"Device {device} not responding to capability queries")

    def _run(self) -> None:
        while not self._stop.is_set():
            self.poll_once()
            self._stop.wait(self.interval_sec)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = start_thread(self._run, name="health-monitor")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
