# src/capsup/config.py: Pydantic models for configuration.
# This module defines the schema for the optional 'capsup.yaml' configuration
# file using Pydantic models. It is responsible for loading and validating the
# file, merging command-line overrides on top of it, and checking that the
# resulting configuration can actually be run.

from __future__ import annotations

import shlex
import yaml
from pathlib import Path
from pydantic import BaseModel, Field, ValidationError, field_validator
from typing import Any, Dict, List, Literal, Optional

from .util.paths import get_default_config_path, expand_path
from .util.errors import ConfigurationError

# --- Pydantic Models for Configuration Schema ---

def _split_command(value: Any) -> Any:
    if isinstance(value, str):
        return shlex.split(value)
    return value

class ProcessConfig(BaseModel):
    command: List[str]
    grace_sec: float = Field(5.0, gt=0)

    @field_validator("command", mode="before")
    @classmethod
    def split_command(cls, value):
        return _split_command(value)

    @field_validator("command")
    @classmethod
    def command_not_empty(cls, value):
        if not value:
            raise ValueError("command must not be empty")
        return value

class HealthConfig(BaseModel):
    interval_sec: float = Field(5.0, gt=0)
    probe_command: List[str] = Field(
        default_factory=lambda: ["v4l2-ctl", "-d", "{device}", "--get-fmt-video"]
    )
    probe_timeout_sec: float = Field(2.0, gt=0)

    @field_validator("probe_command", mode="before")
    @classmethod
    def split_command(cls, value):
        return _split_command(value)

class RecoveryConfig(BaseModel):
    crash_threshold: int = Field(3, ge=1)
    backoff_sec: float = Field(5.0, ge=0)
    backoff_strategy: Literal["constant", "exponential"] = "exponential"
    max_backoff_sec: float = Field(60.0, ge=0)
    jitter: float = Field(0.0, ge=0, le=1)
    stability_sec: float = Field(120.0, gt=0)
    device_wait_sec: float = Field(30.0, ge=0)

class LoopbackConfig(BaseModel):
    device: Optional[str] = None
    required: bool = False

class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_format: bool = Field(True, alias="json")
    log_dir: Optional[Path] = None

    model_config = {"populate_by_name": True}

class SupervisorConfig(BaseModel):
    version: int = 1
    device: Optional[str] = None
    producer: Optional[ProcessConfig] = None
    consumer: Optional[ProcessConfig] = None
    health: HealthConfig = Field(default_factory=HealthConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    loopback: LoopbackConfig = Field(default_factory=LoopbackConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def placeholders(self) -> Dict[str, str]:
        """Values substituted into `{device}` and `{loopback}` in commands."""
        return {
            "device": self.device or "",
            "loopback": self.loopback.device or "",
        }


# --- Configuration Loading ---

def render_command(command: List[str], values: Dict[str, str]) -> List[str]:
    """Substitute `{name}` placeholders in each argument of a command."""
    rendered = []
    for arg in command:
        for key, value in values.items():
            arg = arg.replace("{" + key + "}", value)
        rendered.append(arg)
    return rendered

def load_config(path: Optional[Path] = None) -> SupervisorConfig:
    """
    Loads and validates the configuration file.

    An explicit `path` must exist. Without one the default location is used
    when present and built-in defaults otherwise.
    """
    if path is not None:
        config_path = expand_path(path)
        if not config_path.is_file():
            raise ConfigurationError(f"Configuration file not found at '{config_path}'.")
    else:
        config_path = get_default_config_path()
        if not config_path.is_file():
            return SupervisorConfig()

    try:
        with open(config_path, "r") as f:
            raw_config = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(f"Failed to read configuration file '{config_path}': {e}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Error parsing YAML configuration: {e}")

    try:
        return SupervisorConfig.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigurationError(f"Configuration validation failed: {e}")

def apply_overrides(
    config: SupervisorConfig,
    device: Optional[str] = None,
    producer_command: Optional[str] = None,
    consumer_command: Optional[str] = None,
    crash_threshold: Optional[int] = None,
    backoff_sec: Optional[float] = None,
    stability_sec: Optional[float] = None,
    interval_sec: Optional[float] = None,
    log_dir: Optional[Path] = None,
) -> SupervisorConfig:
    """Returns a copy of `config` with command-line values layered on top."""
    data = config.model_dump(by_alias=True)
    if device is not None:
        data["device"] = device
    if producer_command is not None:
        data["producer"] = {**(data.get("producer") or {}), "command": producer_command}
    if consumer_command is not None:
        data["consumer"] = {**(data.get("consumer") or {}), "command": consumer_command}
    if crash_threshold is not None:
        data["recovery"]["crash_threshold"] = crash_threshold
    if backoff_sec is not None:
        data["recovery"]["backoff_sec"] = backoff_sec
    if stability_sec is not None:
        data["recovery"]["stability_sec"] = stability_sec
    if interval_sec is not None:
        data["health"]["interval_sec"] = interval_sec
    if log_dir is not None:
        data["logging"]["log_dir"] = log_dir

    try:
        return SupervisorConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid command-line option: {e}")

def ensure_runnable(config: SupervisorConfig) -> None:
    """Raises ConfigurationError unless there is something to supervise."""
    if config.producer is None and config.consumer is None:
        raise ConfigurationError(
            "Nothing to supervise: configure a producer command, a consumer command, or both."
        )
