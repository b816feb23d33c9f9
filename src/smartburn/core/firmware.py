"""Firmware image descriptors, validation and discovery."""

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

from intelhex import IntelHex, IntelHexError

from .errors import FirmwareLoadError
from .models import FirmwareKind

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (".bin", ".hex")

PathLike = Union[str, Path]


def parse_address(value: Union[str, int]) -> int:
    """Parse a flash address given as int, "0x08000000" or "08000000h"."""
    if isinstance(value, int):
        return value
    text = value.strip().lower()
    if text.endswith("h"):
        return int(text[:-1], 16)
    return int(text, 0) if text.startswith("0x") else int(text, 16)


def format_address(address: int) -> str:
    """Format an address the way the programmer CLI expects it."""
    return f"0x{address:08X}"


def format_size(byte_count: int) -> str:
    """Format a byte count for display."""
    if byte_count < 1024:
        return f"{byte_count} B"
    if byte_count < 1024 * 1024:
        return f"{byte_count / 1024.0:.2f} KB"
    return f"{byte_count / (1024.0 * 1024.0):.2f} MB"


def compute_file_hash(path: PathLike) -> str:
    """Compute the SHA-256 of a file, or "" if it does not exist."""
    file_path = Path(path)
    if not file_path.is_file():
        return ""
    sha256 = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


@dataclass(frozen=True)
class FirmwareImage:
    """A firmware file selected for programming.

    Build instances through from_path() or with_path() so that size, hash
    and validity always describe the current path.
    """

    path: str
    kind: FirmwareKind
    start_address: int
    size_bytes: int = 0
    content_hash: str = ""
    valid: bool = False

    @classmethod
    def from_path(
        cls,
        path: PathLike,
        kind: FirmwareKind,
        start_address: Optional[Union[str, int]] = None,
    ) -> "FirmwareImage":
        """Create a validated image descriptor for a file."""
        address = kind.default_address if start_address in (None, "") else parse_address(start_address)
        file_path = Path(path)

        if not file_path.is_file():
            logger.warning("Firmware file not found: %s", file_path)
            return cls(str(file_path), kind, address)

        size = file_path.stat().st_size
        content_hash = compute_file_hash(file_path)
        valid = True

        if size == 0:
            logger.warning("Firmware file is empty: %s", file_path.name)
            valid = False
        elif file_path.suffix.lower() not in SUPPORTED_EXTENSIONS:
            logger.warning("Unsupported firmware format: %s", file_path.suffix)
            valid = False
        elif kind.value not in file_path.name.lower():
            # Naming convention only; not a reason to reject the file
            logger.warning("File name %s does not contain '%s'", file_path.name, kind.value)

        if valid:
            logger.info(
                "Firmware validated: %s, %s, sha256 %s...",
                file_path.name,
                format_size(size),
                content_hash[:8],
            )
        return cls(str(file_path), kind, address, size, content_hash, valid)

    @property
    def file_name(self) -> str:
        """Base name of the image file."""
        return Path(self.path).name

    @property
    def address_text(self) -> str:
        """Start address formatted for the CLI."""
        return format_address(self.start_address)

    def with_path(self, path: PathLike) -> "FirmwareImage":
        """Return a freshly validated image for a new path."""
        return FirmwareImage.from_path(path, self.kind, self.start_address)

    def with_address(self, start_address: Union[str, int]) -> "FirmwareImage":
        """Return a copy targeting a different start address."""
        return FirmwareImage(
            self.path, self.kind, parse_address(start_address),
            self.size_bytes, self.content_hash, self.valid,
        )

    def __str__(self) -> str:
        return f"{self.file_name} ({self.size_bytes // 1024} KB)"


def _candidate_files(search_dir: Path, kind: FirmwareKind) -> List[Path]:
    files = [
        p
        for p in search_dir.rglob("*")
        if p.is_file() and p.suffix.lower() in SUPPORTED_EXTENSIONS and kind.value in p.name.lower()
    ]
    return sorted(files, key=lambda p: p.stat().st_mtime, reverse=True)


def find_all_firmware(
    kind: FirmwareKind,
    search_dir: PathLike,
    start_address: Optional[Union[str, int]] = None,
) -> List[FirmwareImage]:
    """Find every image of a kind under a directory, newest first."""
    root = Path(search_dir)
    if not root.is_dir():
        logger.warning("Invalid search path: %s", root)
        return []
    images = [FirmwareImage.from_path(p, kind, start_address) for p in _candidate_files(root, kind)]
    logger.info("Found %d %s firmware file(s) in %s", len(images), kind.value.upper(), root)
    return images


def find_latest_firmware(
    kind: FirmwareKind,
    search_dir: PathLike,
    start_address: Optional[Union[str, int]] = None,
) -> Optional[FirmwareImage]:
    """Return the most recently modified image of a kind, if any."""
    root = Path(search_dir)
    if not root.is_dir():
        logger.warning("Invalid search path: %s", root)
        return None
    files = _candidate_files(root, kind)
    if not files:
        logger.info("No %s firmware found in %s", kind.value.upper(), root)
        return None
    logger.info("Latest %s firmware: %s", kind.value.upper(), files[0].name)
    return FirmwareImage.from_path(files[0], kind, start_address)


def load_image_bytes(image: FirmwareImage) -> Tuple[bytes, int]:
    """Read the image into (data, base_address).

    Raw .bin files are placed at the image's start address. Intel HEX
    files carry their own addresses; gaps are filled with 0xFF.
    """
    path = Path(image.path)
    try:
        if path.suffix.lower() == ".hex":
            hexfile = IntelHex()
            hexfile.padding = 0xFF
            hexfile.fromfile(str(path), format="hex")
            base = hexfile.minaddr()
            if base is None:
                raise FirmwareLoadError(f"HEX file has no data records: {path.name}")
            return hexfile.tobinstr(start=base), base
        return path.read_bytes(), image.start_address
    except (OSError, IntelHexError) as e:
        raise FirmwareLoadError(f"Cannot read firmware {path.name}: {e}") from e
