# src/capsup/cli.py: Command-Line Interface (CLI) entry point.
# Implemented using Typer, this module provides the 'capsupctl' command. It
# starts the supervisor, queries and signals a running one, and exposes the
# one-shot diagnostics (health check, pre-flight report, capture validation).

import json
import os
import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import SupervisorConfig, apply_overrides, load_config
from .device import list_usb_power, loopback_module_loaded, resolve_device
from .health import DeviceHealth, check_health
from .preflight import check_commands
from .supervisor import SupervisorStatus, device_key, run_supervisor, status_path_for
from .util.errors import CapsupError, ConfigurationError
from .util.log import setup_logging
from .validate import advice, validate_capture

app = typer.Typer(
    help="Supervise a USB HDMI-capture pipeline (producer, consumer and device health).",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool):
    if value:
        print(f"capsupctl version: {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", callback=version_callback, is_eager=True, help="Show the version and exit."
    ),
):
    """Capture supervisor control."""


def get_config(config_path: Optional[Path]) -> SupervisorConfig:
    """Loads the config and handles errors."""
    try:
        return load_config(config_path)
    except CapsupError as e:
        err_console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(e.exit_code)


def read_status(device: Optional[str]) -> SupervisorStatus:
    path = status_path_for(device_key(device))
    if not path.is_file():
        err_console.print(f"[bold red]Error:[/bold red] No supervisor status found at '{path}'.")
        raise typer.Exit(1)
    return SupervisorStatus.model_validate_json(path.read_text())


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def signal_supervisor(device: Optional[str], signum: int) -> SupervisorStatus:
    current = read_status(device)
    if not current.running or not _alive(current.pid):
        err_console.print("[bold red]Error:[/bold red] The supervisor is not running.")
        raise typer.Exit(1)
    os.kill(current.pid, signum)
    return current


@app.command()
def run(
    device: Optional[str] = typer.Option(None, "--device", "-d", help="Device node or USB VID:PID."),
    producer_command: Optional[str] = typer.Option(None, "--producer-command", help="Capture producer command line."),
    consumer_command: Optional[str] = typer.Option(None, "--consumer-command", help="Consumer application command line."),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to a capsup.yaml file."),
    crash_threshold: Optional[int] = typer.Option(None, "--crash-threshold", help="Crashes before recovery halts."),
    backoff: Optional[float] = typer.Option(None, "--backoff", help="Base backoff in seconds."),
    stability: Optional[float] = typer.Option(None, "--stability", help="Stable seconds before crash history is forgiven."),
    poll_interval: Optional[float] = typer.Option(None, "--poll-interval", help="Device health poll interval in seconds."),
    log_dir: Optional[Path] = typer.Option(None, "--log-dir", help="Directory for session logs."),
):
    """Start the supervisor in the foreground."""
    config = get_config(config_path)
    try:
        config = apply_overrides(
            config,
            device=device,
            producer_command=producer_command,
            consumer_command=consumer_command,
            crash_threshold=crash_threshold,
            backoff_sec=backoff,
            stability_sec=stability,
            interval_sec=poll_interval,
            log_dir=log_dir,
        )
    except ConfigurationError as e:
        err_console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(e.exit_code)

    setup_logging(config.logging.level, config.logging.json_format)
    code = run_supervisor(config)
    raise typer.Exit(code)


@app.command()
def status(
    device: Optional[str] = typer.Option(None, "--device", "-d", help="Device node or USB VID:PID."),
    as_json: bool = typer.Option(False, "--json", help="Print the raw status document."),
):
    """Show the status of a running (or the last) supervisor."""
    current = read_status(device)
    if as_json:
        print(json.dumps(current.model_dump(mode="json"), indent=2))
        return

    alive = current.running and _alive(current.pid)
    table = Table("Field", "Value")
    table.add_row("Supervisor", f"running (PID {current.pid})" if alive else "stopped")
    table.add_row("Device", current.device or "none")
    table.add_row("Device health", current.device_health.value if current.device_health else "-")
    table.add_row("Policy", current.policy_state.value)
    table.add_row("Crashes", f"{current.crash_count}/{current.crash_threshold}")
    table.add_row("Last crash", current.last_crash_at.isoformat() if current.last_crash_at else "-")
    for role in ("producer", "consumer"):
        state = getattr(current, f"{role}_state")
        pid = getattr(current, f"{role}_pid")
        if state is not None:
            table.add_row(role.capitalize(), f"{state.value}" + (f" (PID {pid})" if pid else ""))
    table.add_row("Launches / restarts", f"{current.launches} / {current.restarts}")
    table.add_row("Log file", current.log_file or "-")
    table.add_row("Updated", current.updated_at.isoformat())
    console.print(table)


@app.command()
def check(
    device: str = typer.Option(..., "--device", "-d", help="Device node or USB VID:PID."),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to a capsup.yaml file."),
):
    """Run one health check against a device."""
    config = get_config(config_path)
    try:
        handle = resolve_device(device)
    except ConfigurationError as e:
        err_console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(e.exit_code)

    result = check_health(handle, config.health.probe_command, config.health.probe_timeout_sec)
    colour = "green" if result is DeviceHealth.HEALTHY else "red"
    console.print(f"{handle.describe()}: [bold {colour}]{result.value}[/bold {colour}]")
    if result is not DeviceHealth.HEALTHY:
        raise typer.Exit(1)


@app.command()
def resume(device: Optional[str] = typer.Option(None, "--device", "-d", help="Device node or USB VID:PID.")):
    """Reset a halted supervisor so it resumes automatic recovery."""
    current = signal_supervisor(device, signal.SIGUSR1)
    console.print(f"Reset requested for supervisor PID {current.pid} (was {current.policy_state.value}).")


@app.command()
def stop(device: Optional[str] = typer.Option(None, "--device", "-d", help="Device node or USB VID:PID.")):
    """Stop a running supervisor and everything it launched."""
    current = signal_supervisor(device, signal.SIGTERM)
    console.print(f"Stop requested for supervisor PID {current.pid}.")


@app.command()
def doctor(
    device: Optional[str] = typer.Option(None, "--device", "-d", help="Device node or USB VID:PID."),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to a capsup.yaml file."),
):
    """Pre-flight report: commands, loopback isolation and USB power management."""
    config = get_config(config_path)
    problems = 0

    table = Table("Role", "Command", "Found at")
    for item in check_commands(config):
        if item.path is None:
            problems += 1
        table.add_row(item.role, item.command, item.path or "[red]missing[/red]")
    console.print(table)

    loaded = loopback_module_loaded()
    console.print(f"v4l2loopback module: {'[green]loaded[/green]' if loaded else '[yellow]not loaded[/yellow]'}")
    if config.loopback.device:
        present = Path(config.loopback.device).exists()
        if not present:
            problems += 1
        console.print(
            f"Loopback device {config.loopback.device}: "
            f"{'[green]present[/green]' if present else '[red]missing[/red]'}"
        )

    target = device or config.device
    if target:
        try:
            handle = resolve_device(target)
            result = check_health(handle, config.health.probe_command, config.health.probe_timeout_sec)
            console.print(f"Device {handle.describe()}: {result.value}")
            if result is not DeviceHealth.HEALTHY:
                problems += 1
        except ConfigurationError as e:
            problems += 1
            console.print(f"[red]{e}[/red]")

    power = Table("USB device", "VID:PID", "power/control")
    for info in list_usb_power():
        control = f"[yellow]{info.control} (autosuspend)[/yellow]" if info.autosuspend else info.control
        power.add_row(info.bus_id, f"{info.vendor_id}:{info.product_id}", control)
    console.print(power)

    if problems:
        raise typer.Exit(1)


@app.command()
def validate(
    device: str = typer.Option(..., "--device", "-d", help="Device node or USB VID:PID."),
    resolution: str = typer.Option("3840x2160", "--resolution", help="Capture resolution to test."),
    duration: int = typer.Option(5, "--duration", help="Seconds of capture per test."),
):
    """Capture for a few seconds and report corrupted frames and timeouts."""
    try:
        handle = resolve_device(device)
        with console.status(f"Capturing from [bold cyan]{handle.path}[/bold cyan]...", spinner="dots"):
            report = validate_capture(handle.path, resolution, duration)
    except CapsupError as e:
        err_console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(e.exit_code)

    table = Table("Resolution", "Corrupted", "Timeouts", "Errors")
    for result in report.results:
        table.add_row(result.resolution, str(result.corrupted), str(result.timeouts), str(result.errors))
    console.print(table)
    console.print(f"Recommended resolution: [bold]{report.recommended_resolution}[/bold]")
    message = advice(report)
    if message:
        console.print(f"[bold red]✗[/bold red] {message}")
        raise typer.Exit(1)
    console.print("[bold green]✓ Device is stable.[/bold green]")


if __name__ == "__main__":
    app()
