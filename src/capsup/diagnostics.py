# src/capsup/diagnostics.py: Durable diagnostics event log.
# Every state transition the supervisor goes through is appended to a session
# log file as one JSON line, for post-mortem analysis after a streaming
# session. Recording an event never raises: a broken sink must not take the
# supervisor down with it.

import json
import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict

from .util.log import get_logger

logger = get_logger(__name__)


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARN: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


class LogEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    severity: Severity
    message: str

    def to_line(self) -> str:
        return json.dumps({
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "message": self.message,
        })


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def session_log_path(log_dir: Path, now: Optional[datetime] = None) -> Path:
    now = now or datetime.now()
    return log_dir / f"session-{now.strftime('%Y%m%d_%H%M%S')}.log"


class DiagnosticsLogger:
    """
    Append-only event sink.

    Timestamps never go backwards in the written stream even if the wall
    clock does; writes are serialized so there is a single writer.
    """

    def __init__(self, path: Optional[Path], clock: Callable[[], datetime] = _utcnow):
        self.path = path
        self.dropped = 0
        self.recorded = 0
        self._clock = clock
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()
        self._file = None

    def record(self, severity: Severity, message: str) -> Optional[LogEvent]:
        with self._lock:
            try:
                timestamp = self._clock()
                if self._last is not None and timestamp < self._last:
                    timestamp = self._last
                self._last = timestamp
                event = LogEvent(timestamp=timestamp, severity=Severity(severity), message=message)
                self._write(event)
                self.recorded += 1
            except Exception:
                self.dropped += 1
                return None
        logger.log(_LEVELS[event.severity], message)
        return event

    def info(self, message: str) -> Optional[LogEvent]:
        return self.record(Severity.INFO, message)

    def warn(self, message: str) -> Optional[LogEvent]:
        return self.record(Severity.WARN, message)

    def error(self, message: str) -> Optional[LogEvent]:
        return self.record(Severity.ERROR, message)

    def _write(self, event: LogEvent) -> None:
        if self.path is None:
            return
        if self._file is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self.path, "a", buffering=1)
        self._file.write(event.to_line() + "\n")

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                try:
                    self._file.close()
                except OSError:
                    self.dropped += 1
                self._file = None
