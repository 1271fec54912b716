# src/capsup/util/shell.py: Subprocess execution wrapper.
# Short-lived helper commands (capability probes, module listings) are run
# with a hard timeout and their failures are mapped onto typed exceptions, so
# callers never see raw subprocess errors.

import subprocess
from typing import List

from .errors import DeviceUnavailable

def run_probe(args: List[str], timeout: float) -> str:
    """
    Run a capability probe against a device and return its stdout.

    Raises:
        DeviceUnavailable: If the command is missing, fails or times out.
    """
    try:
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True,
        )
        return result.stdout
    except FileNotFoundError:
        raise DeviceUnavailable(f"Probe command '{args[0]}' was not found.")
    except subprocess.CalledProcessError as e:
        error_message = (e.stderr or "").strip() or f"exit code {e.returncode}"
        raise DeviceUnavailable(f"Probe '{' '.join(args)}' failed: {error_message}")
    except subprocess.TimeoutExpired:
        raise DeviceUnavailable(f"Probe '{' '.join(args)}' timed out after {timeout} seconds.")
