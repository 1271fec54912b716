# src/capsup/util/paths.py: XDG-compliant path resolution.
# Config, state (lock and status files) and logs live in the per-user
# platform directories so the supervisor never needs root to keep its own
# bookkeeping.

import os
from pathlib import Path
import platformdirs

APP_NAME = "capsup"

def get_config_dir() -> Path:
    """Get the XDG_CONFIG_HOME path for the application."""
    return Path(platformdirs.user_config_dir(APP_NAME))

def get_state_dir() -> Path:
    """Get the XDG_STATE_HOME path for the application."""
    return Path(platformdirs.user_state_dir(APP_NAME))

def get_log_dir() -> Path:
    """Get the directory session logs are written to."""
    return Path(platformdirs.user_log_dir(APP_NAME))

def get_default_config_path() -> Path:
    return get_config_dir() / "capsup.yaml"

def expand_path(path: str | Path) -> Path:
    """Expand environment variables and user home directory in a path."""
    return Path(os.path.expandvars(os.path.expanduser(str(path)))).resolve()
