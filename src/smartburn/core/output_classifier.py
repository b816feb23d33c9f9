"""Heuristic interpretation of STM32_Programmer_CLI text output.

The CLI has no machine-readable output mode, so every decision here is a
substring or regex match against text whose wording changes between tool
versions and locales. All patterns live in a PatternTable so a deployment
can extend them without touching the classification code.
"""

import re
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Sequence, Tuple

from .models import ErrorKind

FIELDS = ("serial_number", "firmware_version", "chip_id", "chip_type")


@dataclass(frozen=True)
class FailureMarker:
    """A phrase that identifies a specific failure in tool output."""

    kind: ErrorKind
    phrases: Tuple[str, ...]
    message: str


@dataclass(frozen=True)
class Classification:
    """Verdict for one program/erase invocation."""

    success: bool
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    verified: bool = False
    success_marker: str = ""


@dataclass(frozen=True)
class PatternTable:
    """All phrases and regexes the classifier relies on."""

    vendor_tokens: Tuple[str, ...] = ("ST-LINK", "STLINK")
    link_evidence_patterns: Tuple[str, ...] = (
        r"\bSN\b",
        r"\bSerial",
        r"\bVersion\b",
        r"\bFW\s*:",
        r"\bV\d+[A-Z0-9]*",
    )
    no_link_phrases: Tuple[str, ...] = (
        "No ST-LINK detected",
        "No STLink device detected",
        "No connected ST-LINK",
        "No debug probe detected",
        "Unable to connect",
        "Failed to connect",
        "Connection Failed",
        "No STM32 target found",
        "未检测到ST-LINK",
        "未检测到设备",
    )
    busy_phrases: Tuple[str, ...] = ("too busy", "ST-LINK is busy", "device busy", "DEV_USB_COMM_ERR")
    chip_info_phrases: Tuple[str, ...] = ("Device ID", "Device id", "Device type", "Device name")
    field_patterns: Dict[str, Tuple[str, ...]] = field(
        default_factory=lambda: {
            "serial_number": (
                r"ST-LINK SN\s*:\s*(\w+)",
                r"\bSN\s*:\s*(\w+)",
                r"Serial\s*(?:Number|No\.?)?\s*:\s*(\w+)",
            ),
            "firmware_version": (
                r"Firmware version\s*:\s*([\w.]+)",
                r"ST-LINK FW\s*:\s*(\w+)",
                r"\bFW\s*:\s*(\w+)",
            ),
            "chip_id": (
                r"Device [Ii][Dd]\s*:\s*(0x\w+)",
                r"\bID\s*:\s*(0x\w+)",
                r"芯片ID\s*:\s*(0x\w+)",
                r"Device\s*:\s*(0x\w+)",
            ),
            "chip_type": (
                r"Device name\s*:\s*([^\r\n]+?)\s*$",
                r"Device type\s*:\s*(\w+)",
                r"Name\s*:\s*(\w+)",
                r"芯片型号\s*:\s*(\w+)",
                r"ChipID\s*:\s*\w+ \((\w+)\)",
            ),
        }
    )
    # Checked in order; the first match decides the error kind.
    failure_markers: Tuple[FailureMarker, ...] = (
        FailureMarker(
            ErrorKind.TOOL_NOT_FOUND,
            ("is not recognized as an internal or external command", "command not found", "No such file or directory"),
            "STM32_Programmer_CLI could not be started",
        ),
        FailureMarker(
            ErrorKind.DEVICE_NOT_DETECTED,
            ("No ST-LINK detected", "No debug probe detected", "No STLink device detected", "未检测到ST-LINK"),
            "No ST-LINK probe detected, check the USB cable",
        ),
        FailureMarker(
            ErrorKind.CONNECT_FAILED,
            ("failed to configure debug port", "Unable to get core ID", "No STM32 target found", "Failed to connect"),
            "Debug port configuration failed, check the SWD wiring and target power",
        ),
        FailureMarker(
            ErrorKind.CONNECT_FAILED,
            ("Unknown device",),
            "Target device type is not recognised",
        ),
        FailureMarker(
            ErrorKind.ERASE_FAILED,
            ("Mass erase operation failed", "Erase operation failed", "flash erase failed"),
            "Flash erase failed",
        ),
        FailureMarker(
            ErrorKind.VERIFY_FAILED,
            ("Download verification failed", "Verification failed", "verify failed", "Verify failed"),
            "Read-back verification failed",
        ),
        FailureMarker(
            ErrorKind.WRITE_FAILED,
            ("Failed to download", "File download failed", "Failed to init", "Wrong verify command", "missing the filePath"),
            "Flash write failed",
        ),
    )
    generic_error_pattern: str = r"\bError\b"
    generic_error_excludes: Tuple[str, ...] = ("Warning",)
    # Highest-confidence marker first.
    success_markers: Tuple[str, ...] = (
        "Download verified successfully",
        "File download complete",
        "Mass erase successfully achieved",
        "Flash memory erased",
        "Successfully",
        "successfully",
        "成功",
    )
    verified_markers: Tuple[str, ...] = ("Download verified successfully", "verified successfully", "Verify successfully")
    reset_markers: Tuple[str, ...] = (
        "MCU Reset",
        "Software reset is performed",
        "Hardware reset is performed",
        "Application is running",
        "Start operation achieved successfully",
    )

    def extended(self, **extra: Sequence) -> "PatternTable":
        """Return a table with extra entries appended to tuple-valued fields.

        field_patterns accepts a dict of field name to extra patterns.
        """
        changes = {}
        for name, values in extra.items():
            current = getattr(self, name)
            if name == "field_patterns":
                merged = dict(current)
                for key, patterns in values.items():  # type: ignore[attr-defined]
                    merged[key] = tuple(merged.get(key, ())) + tuple(patterns)
                changes[name] = merged
            else:
                changes[name] = tuple(current) + tuple(values)
        return replace(self, **changes)


DEFAULT_PATTERNS = PatternTable()


def _contains_any(text: str, phrases: Sequence[str]) -> str:
    lowered = text.lower()
    for phrase in phrases:
        if phrase.lower() in lowered:
            return phrase
    return ""


class OutputClassifier:
    """Turns raw CLI output into facts. Never raises on odd input."""

    def __init__(self, patterns: PatternTable = DEFAULT_PATTERNS):
        """Initialize with a pattern table."""
        self.patterns = patterns

    def has_negative_phrase(self, text: Optional[str]) -> bool:
        """Check for an explicit "no device" style phrase."""
        return bool(_contains_any(text or "", self.patterns.no_link_phrases))

    def has_link_evidence(self, text: Optional[str]) -> bool:
        """Check if the output proves a probe is physically attached.

        Needs a vendor token plus a serial- or version-like token. A
        negative phrase anywhere wins over any positive evidence.
        """
        text = text or ""
        if self.has_negative_phrase(text):
            return False
        if not _contains_any(text, self.patterns.vendor_tokens):
            return False
        return any(re.search(p, text) for p in self.patterns.link_evidence_patterns)

    def is_busy(self, text: Optional[str]) -> bool:
        """Check if the probe reported it is in use by another process."""
        return bool(_contains_any(text or "", self.patterns.busy_phrases))

    def has_chip_info(self, text: Optional[str]) -> bool:
        """Check if the output contains target chip identification."""
        return bool(_contains_any(text or "", self.patterns.chip_info_phrases))

    def extract_field(self, text: Optional[str], name: str) -> str:
        """Return the first match for a field, or "" if nothing matched."""
        for pattern in self.patterns.field_patterns.get(name, ()):
            match = re.search(pattern, text or "", re.MULTILINE)
            if match:
                return match.group(1).strip()
        return ""

    def extract_fields(self, text: Optional[str]) -> Dict[str, str]:
        """Extract every known field from the output."""
        return {name: self.extract_field(text, name) for name in FIELDS}

    def has_reset_evidence(self, text: Optional[str]) -> bool:
        """Check if the tool reported the target was reset or started."""
        return bool(_contains_any(text or "", self.patterns.reset_markers))

    def find_failure(
        self,
        stdout: Optional[str],
        stderr: Optional[str],
        generic_kind: ErrorKind = ErrorKind.WRITE_FAILED,
    ) -> Optional[FailureMarker]:
        """Return the first recognised failure marker in either stream.

        A bare "Error" line with no specific marker is reported as
        generic_kind, the failure of the step that produced it.
        """
        combined = f"{stdout or ''}\n{stderr or ''}"
        for marker in self.patterns.failure_markers:
            if _contains_any(combined, marker.phrases):
                return marker
        for line in combined.splitlines():
            if re.search(self.patterns.generic_error_pattern, line) and not _contains_any(
                line, self.patterns.generic_error_excludes
            ):
                return FailureMarker(generic_kind, (line.strip(),), "The programmer reported an error")
        return None

    def classify_program(
        self,
        stdout: Optional[str],
        stderr: Optional[str],
        exit_code: Optional[int],
        failure_kind: ErrorKind = ErrorKind.UNKNOWN_FAILURE,
        generic_kind: ErrorKind = ErrorKind.WRITE_FAILED,
    ) -> Classification:
        """Decide whether a write/erase invocation succeeded.

        Error markers take precedence over success markers, and a non-zero
        exit code is never a success.
        """
        marker = self.find_failure(stdout, stderr, generic_kind)
        if marker is not None:
            return Classification(False, marker.kind, marker.message)

        if exit_code != 0:
            return Classification(
                False, failure_kind, f"The programmer exited with code {exit_code} and no recognised message"
            )

        verified = bool(_contains_any(stdout or "", self.patterns.verified_markers))
        success_marker = _contains_any(stdout or "", self.patterns.success_markers)
        message = success_marker or "Programmer finished without errors"
        return Classification(True, None, message, verified, success_marker)
