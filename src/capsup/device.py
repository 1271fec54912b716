# src/capsup/device.py: Capture device handles and sysfs lookups.
# A device handle is resolved once at startup, either from a device node path
# or from a USB VID:PID pair, and is immutable afterwards. This module also
# reads the handful of host facts the pre-flight report needs: USB power
# management settings and whether the v4l2loopback module is loaded.

import re
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from .util.errors import ConfigurationError
from .util.fs import slugify

SYSFS_ROOT = Path("/sys")
DEV_ROOT = Path("/dev")
PROC_MODULES = Path("/proc/modules")

VIDPID_RE = re.compile(r"^([0-9a-fA-F]{4}):([0-9a-fA-F]{4})$")


class DeviceHandle(BaseModel):
    """A resolved capture device."""
    model_config = ConfigDict(frozen=True)

    path: Path
    vendor_id: Optional[str] = None
    product_id: Optional[str] = None

    @property
    def vidpid(self) -> Optional[str]:
        if self.vendor_id and self.product_id:
            return f"{self.vendor_id}:{self.product_id}"
        return None

    @property
    def key(self) -> str:
        """Lock/status key. Aliases such as /dev/v4l/by-id links share their target's key."""
        return slugify(str(self.path.resolve()))

    def describe(self) -> str:
        if self.vidpid:
            return f"{self.path} ({self.vidpid})"
        return str(self.path)


class UsbPowerInfo(BaseModel):
    bus_id: str
    vendor_id: str
    product_id: str
    control: str

    @property
    def autosuspend(self) -> bool:
        return self.control == "auto"


def _read(path: Path) -> Optional[str]:
    try:
        return path.read_text().strip()
    except OSError:
        return None


def _usb_ids(sys_device: Path, sysfs_root: Path) -> Tuple[Optional[str], Optional[str]]:
    """Walk up from a sysfs device directory to the USB device that owns it."""
    try:
        current = sys_device.resolve()
    except OSError:
        return None, None
    root = sysfs_root.resolve()
    while current != root and root in current.parents:
        vendor = _read(current / "idVendor")
        product = _read(current / "idProduct")
        if vendor and product:
            return vendor.lower(), product.lower()
        current = current.parent
    return None, None


def _video_index(entry: Path) -> int:
    digits = entry.name[len("video"):]
    return int(digits) if digits.isdigit() else 1 << 30


def find_video_node(vendor_id: str, product_id: str,
                    sysfs_root: Path = SYSFS_ROOT, dev_root: Path = DEV_ROOT) -> Optional[Path]:
    """Find the lowest-numbered /dev/videoN belonging to a USB VID:PID."""
    class_dir = sysfs_root / "class" / "video4linux"
    if not class_dir.is_dir():
        return None
    wanted = (vendor_id.lower(), product_id.lower())
    for entry in sorted(class_dir.glob("video*"), key=_video_index):
        if _usb_ids(entry / "device", sysfs_root) == wanted:
            return dev_root / entry.name
    return None


def read_usb_ids(node: Path, sysfs_root: Path = SYSFS_ROOT) -> Tuple[Optional[str], Optional[str]]:
    """VID/PID of the USB device behind a video node, if it is one."""
    try:
        name = node.resolve().name
    except OSError:
        return None, None
    return _usb_ids(sysfs_root / "class" / "video4linux" / name / "device", sysfs_root)


def resolve_device(device: str, sysfs_root: Path = SYSFS_ROOT, dev_root: Path = DEV_ROOT) -> DeviceHandle:
    """
    Resolves a device path or VID:PID into a DeviceHandle.

    Raises:
        ConfigurationError: If the device cannot be found.
    """
    device = device.strip()
    if not device:
        raise ConfigurationError("Device handle is empty.")

    match = VIDPID_RE.match(device)
    if match:
        vendor_id, product_id = match.group(1).lower(), match.group(2).lower()
        node = find_video_node(vendor_id, product_id, sysfs_root, dev_root)
        if node is None or not node.exists():
            raise ConfigurationError(f"No video device found for USB id '{device}'.")
        return DeviceHandle(path=node, vendor_id=vendor_id, product_id=product_id)

    path = Path(device)
    if not path.exists():
        raise ConfigurationError(f"Device '{device}' does not exist.")
    vendor_id, product_id = read_usb_ids(path, sysfs_root)
    return DeviceHandle(path=path, vendor_id=vendor_id, product_id=product_id)


def list_usb_power(sysfs_root: Path = SYSFS_ROOT) -> List[UsbPowerInfo]:
    """Power management setting of every USB device that exposes one."""
    devices = []
    usb_dir = sysfs_root / "bus" / "usb" / "devices"
    if not usb_dir.is_dir():
        return devices
    for entry in sorted(usb_dir.iterdir()):
        control = _read(entry / "power" / "control")
        vendor = _read(entry / "idVendor")
        if control is None or not vendor:
            continue
        devices.append(UsbPowerInfo(
            bus_id=entry.name,
            vendor_id=vendor,
            product_id=_read(entry / "idProduct") or "????",
            control=control,
        ))
    return devices


def loopback_module_loaded(proc_modules: Path = PROC_MODULES) -> bool:
    content = _read(proc_modules)
    if not content:
        return False
    return any(line.split(" ", 1)[0] == "v4l2loopback" for line in content.splitlines())
