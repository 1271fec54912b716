# tests/unit/test_health.py: Unit tests for device health checks and the monitor.

import json
import subprocess
import threading
from pathlib import Path

import pytest

from capsup.device import DeviceHandle
from capsup.diagnostics import DiagnosticsLogger
from capsup.health import DeviceHealth, HealthMonitor, check_health

PROBE = ["v4l2-ctl", "-d", "{device}", "--get-fmt-video"]

@pytest.fixture
def device_node(tmp_path: Path) -> DeviceHandle:
    node = tmp_path / "video0"
    node.touch()
    return DeviceHandle(path=node, vendor_id="3188", product_id="1000")

def read_events(path: Path):
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines()]

def test_check_health_healthy(monkeypatch, device_node):
    """Tests that a node that answers the probe is Healthy, with {device} rendered."""
    calls = []

    def mock_run(args, **kwargs):
        calls.append(args)
        return subprocess.CompletedProcess(args=args, returncode=0, stdout="ok", stderr="")

    monkeypatch.setattr(subprocess, "run", mock_run)
    assert check_health(device_node, PROBE, timeout=2) is DeviceHealth.HEALTHY
    assert calls == [["v4l2-ctl", "-d", str(device_node.path), "--get-fmt-video"]]

def test_check_health_unreachable(monkeypatch, tmp_path: Path):
    """Tests that a missing node is Unreachable and the probe is not run."""
    def mock_run(*args, **kwargs):
        raise AssertionError("probe must not run for a missing node")

    monkeypatch.setattr(subprocess, "run", mock_run)
    handle = DeviceHandle(path=tmp_path / "video9")
    assert check_health(handle, PROBE, timeout=2) is DeviceHealth.UNREACHABLE

def test_check_health_unresponsive(monkeypatch, device_node):
    """Tests that a node whose probe fails or hangs is Unresponsive."""
    def mock_run(*args, **kwargs):
        raise subprocess.TimeoutExpired(kwargs.get("args"), kwargs.get("timeout"))

    monkeypatch.setattr(subprocess, "run", mock_run)
    assert check_health(device_node, PROBE, timeout=2) is DeviceHealth.UNRESPONSIVE

def test_monitor_logs_only_transitions(tmp_path: Path, device_node):
    """Tests that repeated identical results produce no additional log entries."""
    results = iter([
        DeviceHealth.HEALTHY, DeviceHealth.HEALTHY, DeviceHealth.HEALTHY,
        DeviceHealth.UNREACHABLE, DeviceHealth.UNREACHABLE,
        DeviceHealth.HEALTHY,
    ])
    log_path = tmp_path / "session.log"
    diagnostics = DiagnosticsLogger(log_path)
    changes = []
    monitor = HealthMonitor(device_node, lambda: next(results), 5, diagnostics,
                            on_change=lambda previous, current: changes.append((previous, current)))

    for _ in range(6):
        monitor.poll_once()
    diagnostics.close()

    events = read_events(log_path)
    assert [e["severity"] for e in events] == ["INFO", "WARN", "INFO"]
    assert "healthy" in events[0]["message"]
    assert "not found (may be disconnected)" in events[1]["message"]
    assert changes == [
        (None, DeviceHealth.HEALTHY),
        (DeviceHealth.HEALTHY, DeviceHealth.UNREACHABLE),
        (DeviceHealth.UNREACHABLE, DeviceHealth.HEALTHY),
    ]
    assert monitor.status is DeviceHealth.HEALTHY

def test_monitor_treats_check_errors_as_unresponsive(tmp_path: Path, device_node):
    def broken_check():
        raise RuntimeError("ioctl failed")

    diagnostics = DiagnosticsLogger(tmp_path / "session.log")
    monitor = HealthMonitor(device_node, broken_check, 5, diagnostics)
    assert monitor.poll_once() is DeviceHealth.UNRESPONSIVE
    assert diagnostics.recorded == 1

def test_monitor_thread_polls_until_stopped(device_node):
    """Tests the background loop polls on its interval and stops promptly."""
    polled = threading.Event()
    count = []

    def check():
        count.append(1)
        if len(count) >= 3:
            polled.set()
        return DeviceHealth.HEALTHY

    monitor = HealthMonitor(device_node, check, 0.01, DiagnosticsLogger(None))
    monitor.start()
    assert polled.wait(5)
    monitor.stop(timeout=5)
    assert len(count) >= 3
    assert monitor._thread is None
