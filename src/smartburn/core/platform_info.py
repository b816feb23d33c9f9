"""Host platform detection."""

import platform


def detect_platform() -> str:
    """Detect if running on WSL, Windows, or Linux."""
    system = platform.system()

    if system == "Linux":
        # Check if running on WSL
        try:
            with open("/proc/version", "r", encoding="utf-8") as f:
                if "microsoft" in f.read().lower():
                    return "WSL"
        except FileNotFoundError:
            pass
        return "Linux"
    if system == "Windows":
        return "Windows"
    return system
