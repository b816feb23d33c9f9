"""Path utility functions for finding firmware files."""

import sys
from pathlib import Path

from .models import FirmwareKind


def get_application_path() -> Path:
    """
    Get the application's base path.

    Returns the correct path whether running from source or as a bundled executable.

    Returns:
        Path: Base path of the application
            - Development: Project root directory
            - Production: Directory containing the executable
    """
    if getattr(sys, "frozen", False):
        return Path(sys.executable).parent
    # src/smartburn/core/ -> project root
    return Path(__file__).resolve().parent.parent.parent.parent


def get_firmwares_path() -> Path:
    """
    Get the path to the firmwares directory.

    Returns:
        Path: Path to firmwares/ directory
    """
    return get_application_path() / "firmwares"


def get_firmware_dir(kind: FirmwareKind) -> Path:
    """Get the default directory for one kind of image (firmwares/boot, firmwares/app)."""
    return get_firmwares_path() / kind.value


def ensure_firmware_dirs() -> dict:
    """
    Create the default firmware directories if they are missing.

    Returns:
        dict: Directory per kind, e.g. {"boot": Path(...), "app": Path(...)}
    """
    dirs = {}
    for kind in FirmwareKind:
        path = get_firmware_dir(kind)
        path.mkdir(parents=True, exist_ok=True)
        dirs[kind.value] = path
    return dirs
