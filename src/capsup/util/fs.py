# src/capsup/util/fs.py: Filesystem utilities.
# The status snapshot is read by other processes (`capsupctl status`) while the
# supervisor keeps rewriting it, so it is always replaced atomically.

import os
from pathlib import Path


def atomic_write(path, content: str):
    """Write content to a file atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f"{path.name}.tmp")
    with open(temp_path, "w") as f:
        f.write(content)
    os.replace(temp_path, path)


def slugify(value: str) -> str:
    """Turn a device path or VID:PID into a safe file name stem."""
    cleaned = "".join(ch if ch.isalnum() else "_" for ch in value)
    return "_".join(part for part in cleaned.split("_") if part) or "default"
