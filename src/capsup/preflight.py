# src/capsup/preflight.py: Pre-flight checks.
# Before the supervisor enters its loop, the executables it is going to launch
# must exist and the loopback node isolating the consumer from the producer
# should be present. The same facts back the `capsupctl doctor` report.

import shutil
from pathlib import Path
from typing import List, NamedTuple, Optional

from .config import SupervisorConfig
from .device import DeviceHandle
from .diagnostics import DiagnosticsLogger
from .util.errors import ConfigurationError


class CommandCheck(NamedTuple):
    role: str
    command: str
    path: Optional[str]


def find_executable(name: str) -> Optional[str]:
    """Full path of an executable in PATH, or None."""
    return shutil.which(name)


def check_commands(config: SupervisorConfig, with_probe: bool = True) -> List[CommandCheck]:
    checks = []
    if config.producer is not None:
        name = config.producer.command[0]
        checks.append(CommandCheck("producer", name, find_executable(name)))
    if config.consumer is not None:
        name = config.consumer.command[0]
        checks.append(CommandCheck("consumer", name, find_executable(name)))
    if with_probe and config.health.probe_command:
        name = config.health.probe_command[0]
        checks.append(CommandCheck("probe", name, find_executable(name)))
    return checks


def run_preflight(config: SupervisorConfig, handle: Optional[DeviceHandle],
                  diagnostics: DiagnosticsLogger) -> None:
    """
    Raises:
        ConfigurationError: If a required command is missing, or the loopback
            node is missing while marked as required.
    """
    for check in check_commands(config, with_probe=handle is not None):
        if check.path is None:
            raise ConfigurationError(
                f"The {check.role} command '{check.command}' was not found. Is it installed and in your PATH?"
            )

    loopback = config.loopback.device
    if loopback and not Path(loopback).exists():
        message = f"Loopback device {loopback} not found (consumer is not isolated from producer restarts)"
        if config.loopback.required:
            raise ConfigurationError(message)
        diagnostics.warn(message)
