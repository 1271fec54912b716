# src/capsup/util/errors.py: Typed exceptions and exit codes.
# Each failure class the supervisor distinguishes gets its own exception type,
# and each type carries the process exit code the CLI returns when that error
# ends a run.

class CapsupError(Exception):
    """Base exception for the application."""
    exit_code = 1

class ConfigurationError(CapsupError):
    """Bad or missing device handle, command or configuration file."""
    exit_code = 2

class DeviceUnavailable(CapsupError):
    """The capture device is missing or did not answer a capability probe."""
    exit_code = 3

class ProcessLaunchFailure(CapsupError):
    """A supervised executable could not be started."""
    exit_code = 4

class AlreadyRunning(CapsupError):
    """A producer start was requested while one is running."""
    exit_code = 5

class InstanceLocked(CapsupError):
    """Another supervisor already owns the device."""
    exit_code = 6

class RecoveryExhausted(CapsupError):
    """The crash threshold was reached and automatic recovery halted."""
    exit_code = 7
