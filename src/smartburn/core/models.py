"""Value types shared by the programming core."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ConnectionStatus(Enum):
    """Link state of the debug probe."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ERROR = "error"


class FirmwareKind(Enum):
    """Role of a firmware image on the target."""

    BOOT = "boot"
    APP = "app"

    @property
    def default_address(self) -> int:
        """Default flash address for this kind of image."""
        return 0x08000000 if self is FirmwareKind.BOOT else 0x08010000

    @property
    def requires_full_erase(self) -> bool:
        """Bootloader images wipe the whole chip before writing."""
        return self is FirmwareKind.BOOT

    @property
    def runs_after_write(self) -> bool:
        """Application images are started once written."""
        return self is FirmwareKind.APP


class ErrorKind(Enum):
    """Typed failure reasons reported in a ProgramResult."""

    TOOL_NOT_FOUND = "tool_not_found"
    PORT_OPEN_FAILED = "port_open_failed"
    TIMEOUT = "timeout"
    DEVICE_NOT_DETECTED = "device_not_detected"
    CONNECT_FAILED = "connect_failed"
    ERASE_FAILED = "erase_failed"
    WRITE_FAILED = "write_failed"
    VERIFY_FAILED = "verify_failed"
    PROTOCOL_NACK = "protocol_nack"
    UNKNOWN_FAILURE = "unknown_failure"
    BUSY = "busy"
    INVALID_IMAGE = "invalid_image"


@dataclass(frozen=True)
class Device:
    """Snapshot of the probe and target as seen by one connection check.

    Instances are never mutated; every probe builds a new one.
    """

    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    serial_number: str = ""
    firmware_version: str = ""
    chip_type: str = ""
    chip_id: str = ""
    chip_connected: bool = False
    error_message: str = ""

    @property
    def is_connected(self) -> bool:
        """Check if the probe answered."""
        return self.status is ConnectionStatus.CONNECTED

    @property
    def ready_to_program(self) -> bool:
        """Check if both the probe and the target chip answered."""
        return self.is_connected and self.chip_connected

    def describe(self) -> str:
        """Return a one-line summary for status bars and logs."""
        if self.status is ConnectionStatus.CONNECTED:
            text = f"ST-LINK #{self.serial_number or '?'}"
            if self.firmware_version:
                text += f", firmware {self.firmware_version}"
            if self.chip_connected:
                text += f", target {self.chip_type or 'STM32'} ({self.chip_id or 'unknown id'})"
            else:
                text += ", no target"
            return text
        if self.status is ConnectionStatus.ERROR:
            return f"ST-LINK error: {self.error_message}"
        return "ST-LINK not connected"


@dataclass(frozen=True)
class ProgramResult:
    """Outcome of one flash request."""

    success: bool
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    verified: bool = False
    transport: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str, verified: bool = False, transport: str = "", **details: Any) -> "ProgramResult":
        """Create a successful result."""
        return cls(True, None, message, verified, transport, dict(details))

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, transport: str = "", **details: Any) -> "ProgramResult":
        """Create a failed result."""
        return cls(False, kind, message, False, transport, dict(details))

    def to_summary(self) -> str:
        """Generate a human-readable summary string."""
        if self.success:
            status = "SUCCESS" if self.verified else "SUCCESS (unverified)"
        else:
            status = f"FAILED [{self.error_kind.value if self.error_kind else '?'}]"
        return f"[{status}] {self.message}"
