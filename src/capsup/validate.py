# src/capsup/validate.py: Capture quality validation.
# Runs a short ffmpeg capture from the device into the null muxer and counts
# the corruption and timeout messages it prints. When problems show up at the
# requested resolution, the test is repeated at 1080p to see whether a lower
# resolution is a usable workaround.

import subprocess
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel

from .util.errors import DeviceUnavailable
from .util.log import get_logger

logger = get_logger(__name__)

FALLBACK_RESOLUTION = "1920x1080"
TIMEOUT_MARGIN_SEC = 5


class CaptureResult(BaseModel):
    resolution: str
    corrupted: int = 0
    timeouts: int = 0
    errors: int = 0

    @property
    def clean(self) -> bool:
        return self.corrupted == 0 and self.timeouts == 0


class ValidationReport(BaseModel):
    device: str
    results: List[CaptureResult]
    recommended_resolution: str

    @property
    def stable(self) -> bool:
        return self.results[0].clean


def capture_command(device: Path, resolution: str, duration: int, framerate: int = 30) -> List[str]:
    return [
        "ffmpeg", "-hide_banner", "-loglevel", "warning",
        "-f", "v4l2", "-framerate", str(framerate), "-video_size", resolution,
        "-i", str(device), "-t", str(duration), "-f", "null", "-",
    ]


def count_problems(output: str, resolution: str) -> CaptureResult:
    lines = [line.lower() for line in output.splitlines()]
    return CaptureResult(
        resolution=resolution,
        corrupted=sum("corrupted" in line for line in lines),
        timeouts=sum("timeout" in line for line in lines),
        errors=sum("error" in line for line in lines),
    )


def run_capture(device: Path, resolution: str, duration: int) -> CaptureResult:
    """
    Raises:
        DeviceUnavailable: If ffmpeg is missing or printed nothing at all.
    """
    try:
        result = subprocess.run(
            capture_command(device, resolution, duration),
            capture_output=True,
            text=True,
            timeout=duration + TIMEOUT_MARGIN_SEC,
        )
        output = (result.stdout or "") + (result.stderr or "")
    except FileNotFoundError:
        raise DeviceUnavailable("ffmpeg not found. Install ffmpeg.")
    except subprocess.TimeoutExpired as e:
        # A hung capture still tells us something; keep whatever was printed.
        output = _text(e.stdout) + _text(e.stderr) + "\ncapture timeout"

    if not output.strip():
        raise DeviceUnavailable(f"Device {device} not responding or permission denied.")
    return count_problems(output, resolution)


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="ignore")
    return value


def validate_capture(device: Path, resolution: str = "3840x2160", duration: int = 5) -> ValidationReport:
    """Runs the capture test and, on problems, the 1080p comparison."""
    first = run_capture(device, resolution, duration)
    results = [first]
    recommended = resolution
    if not first.clean and resolution != FALLBACK_RESOLUTION:
        logger.info(f"Problems at {resolution}; retesting at {FALLBACK_RESOLUTION}")
        second = run_capture(device, FALLBACK_RESOLUTION, duration)
        results.append(second)
        if second.corrupted < first.corrupted:
            recommended = FALLBACK_RESOLUTION
    return ValidationReport(device=str(device), results=results, recommended_resolution=recommended)


def advice(report: ValidationReport) -> Optional[str]:
    first = report.results[0]
    if first.clean:
        return None
    if first.corrupted:
        return ("Buffer corruption detected; this is a hardware/firmware issue. "
                "Use a lower resolution, make sure USB autosuspend is disabled "
                "(see 'capsupctl doctor') and check the card receives a valid input signal.")
    return "Timeouts detected; USB bandwidth or autosuspend issue (see 'capsupctl doctor')."
