# tests/e2e/scenario_device_loss.py: E2E test for recovering from a device disconnect.

import os
import threading
from pathlib import Path

from capsup.config import HealthConfig, ProcessConfig, RecoveryConfig, SupervisorConfig
from capsup.device import DeviceHandle
from capsup.health import DeviceHealth
from capsup.policy import PolicyState

from conftest import python, wait_for

# Runs while the device node exists and crashes once it is gone, like ffmpeg on a USB unplug.
CAPTURE = """
import os, sys, time
while os.path.exists(sys.argv[1]):
    time.sleep(0.02)
sys.exit(1)
"""

def node_check(node: Path):
    def check():
        return DeviceHealth.HEALTHY if os.path.exists(node) else DeviceHealth.UNREACHABLE
    return check

def test_producer_restarts_once_device_returns(start_supervisor, session, tmp_path):
    """
    Unplugging the device crashes the producer; the restart waits until the
    device is healthy again and then completes recovery.
    """
    node = tmp_path / "video0"
    node.touch()
    config = SupervisorConfig(
        device=str(node),
        producer=ProcessConfig(command=python(CAPTURE, "{device}"), grace_sec=1),
        health=HealthConfig(interval_sec=0.05),
        recovery=RecoveryConfig(
            crash_threshold=3, backoff_sec=0.01, backoff_strategy="constant", device_wait_sec=10
        ),
    )
    handle = DeviceHandle(path=node)
    runner = start_supervisor(config, handle=handle, health_check=node_check(node))
    supervisor = runner.supervisor

    wait_for(lambda: supervisor.producer.status().value == "Running")
    node.unlink()
    wait_for(lambda: supervisor.policy.crash_count == 1)
    replug = threading.Timer(0.5, node.touch)
    replug.start()

    wait_for(lambda: any(m == "Recovery complete" for m in session.messages()))
    replug.join()

    assert supervisor.producer.launch_count == 2
    assert supervisor.producer.current.command[-1] == str(node)
    assert supervisor.policy.state is PolicyState.IDLE

    messages = session.messages()
    lost = next(i for i, m in enumerate(messages) if "not found (may be disconnected)" in m)
    crashed = next(i for i, m in enumerate(messages) if "Producer crashed" in m)
    back = max(i for i, m in enumerate(messages) if m.endswith("is healthy"))
    recovered = messages.index("Recovery complete")
    assert back < recovered
    assert crashed < recovered
    assert lost < recovered

    assert runner.stop() == 0
    assert session.status()["device_health"] == "Healthy"
