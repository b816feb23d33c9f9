"""Subprocess supervision for STM32_Programmer_CLI."""

import logging
import os
import platform
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from .models import FirmwareKind

logger = logging.getLogger(__name__)

ENV_VAR = "STM32_PROGRAMMER_CLI"

# Windows: Hide console window for subprocess calls
if platform.system() == "Windows":
    CREATE_NO_WINDOW = 0x08000000  # subprocess.CREATE_NO_WINDOW
else:
    CREATE_NO_WINDOW = 0

WINDOWS_PATHS = (
    r"C:\Program Files\STMicroelectronics\STM32Cube\STM32CubeProgrammer\bin\STM32_Programmer_CLI.exe",
    r"C:\Program Files (x86)\STMicroelectronics\STM32Cube\STM32CubeProgrammer\bin\STM32_Programmer_CLI.exe",
)

POSIX_PATHS = (
    "/usr/local/STMicroelectronics/STM32Cube/STM32CubeProgrammer/bin/STM32_Programmer_CLI",
    "/opt/st/STM32CubeProgrammer/bin/STM32_Programmer_CLI",
    os.path.expanduser("~/STMicroelectronics/STM32Cube/STM32CubeProgrammer/bin/STM32_Programmer_CLI"),
    # WSL access to Windows installation
    "/mnt/c/Program Files/STMicroelectronics/STM32Cube/STM32CubeProgrammer/bin/STM32_Programmer_CLI.exe",
    "/mnt/c/Program Files (x86)/STMicroelectronics/STM32Cube/STM32CubeProgrammer/bin/STM32_Programmer_CLI.exe",
)


def find_programmer_cli(configured_path: str = "") -> str:
    """Find STM32_Programmer_CLI path on Windows/Linux.

    Order: configured path, $STM32_PROGRAMMER_CLI, known install
    locations, PATH, and finally the bare executable name.
    """
    for candidate in (configured_path, os.environ.get(ENV_VAR, "")):
        if candidate and os.path.isfile(candidate):
            return candidate

    is_windows = platform.system() == "Windows"
    for path in WINDOWS_PATHS if is_windows else POSIX_PATHS:
        if os.path.isfile(path):
            return path

    name = "STM32_Programmer_CLI.exe" if is_windows else "STM32_Programmer_CLI"
    return shutil.which(name) or name


@dataclass(frozen=True)
class ToolResult:
    """Captured outcome of one CLI invocation."""

    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    timed_out: bool = False
    not_found: bool = False

    @property
    def output(self) -> str:
        """Both streams joined, for classification."""
        if self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.not_found


class ToolAdapter:
    """Runs the programmer CLI with a hard timeout.

    Expected negatives (timeout, missing binary) come back as a
    ToolResult. Other OS errors propagate to the caller.
    """

    def __init__(self, executable: str = ""):
        """Initialize ToolAdapter."""
        self.executable = executable or find_programmer_cli()

    def is_available(self) -> bool:
        """Check if the resolved executable exists."""
        return os.path.isfile(self.executable) or shutil.which(self.executable) is not None

    def invoke(self, args: Sequence[str], timeout: float) -> ToolResult:
        """Run the CLI with args, killing it if it outlives timeout seconds."""
        cmd = [self.executable, *args]
        logger.debug("Running: %s", " ".join(cmd))
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="ignore",  # Ignore encoding errors
                creationflags=CREATE_NO_WINDOW,
            )
        except FileNotFoundError as e:
            logger.debug("Executable not found: %s", e)
            return ToolResult(stderr=str(e), not_found=True)

        try:
            stdout, stderr = process.communicate(timeout=timeout)
            result = ToolResult(stdout or "", stderr or "", process.returncode)
        except subprocess.TimeoutExpired:
            logger.warning("Programmer did not finish within %.1fs, killing it", timeout)
            process.kill()
            try:
                stdout, stderr = process.communicate(timeout=2)
            except subprocess.TimeoutExpired:
                stdout, stderr = "", ""
            result = ToolResult(stdout or "", stderr or "", None, timed_out=True)
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()

        logger.debug("Exit code %s, output:\n%s", result.exit_code, result.output.strip())
        return result


@dataclass(frozen=True)
class CommandVariant:
    """One spelling of a CLI operation.

    Template tokens are str.format() templates; tokens that render empty
    are dropped so optional flags can be switched off by parameter.
    """

    name: str
    template: Tuple[str, ...]
    expects: str = ""
    kinds: FrozenSet[FirmwareKind] = frozenset()

    def applies_to(self, kind: Optional[FirmwareKind]) -> bool:
        """Check if the variant is meant for a firmware kind."""
        return not self.kinds or kind is None or kind in self.kinds

    def render(self, **params: str) -> List[str]:
        """Return the argv list for these parameters."""
        tokens = (token.format(**params) for token in self.template)
        return [token for token in tokens if token]


@dataclass
class VariantOutcome:
    """Result of walking a variant table."""

    winner: Optional[CommandVariant] = None
    attempts: List[Tuple[CommandVariant, ToolResult]] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.winner is not None

    @property
    def result(self) -> Optional[ToolResult]:
        """The winning result, or the last attempt when nothing won."""
        return self.attempts[-1][1] if self.attempts else None

    @property
    def all_timed_out(self) -> bool:
        return bool(self.attempts) and all(r.timed_out for _, r in self.attempts)

    @property
    def tool_missing(self) -> bool:
        return any(r.not_found for _, r in self.attempts)


def try_variants(
    adapter: ToolAdapter,
    variants: Sequence[CommandVariant],
    params: Dict[str, str],
    timeout: float,
    accept: Callable[[ToolResult], bool],
    busy: Optional[Callable[[ToolResult], bool]] = None,
    busy_backoff: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> VariantOutcome:
    """Try variants in order until accept() approves a result.

    A busy result backs off before the next variant. A missing
    executable stops the walk since no other spelling can help.
    """
    outcome = VariantOutcome()
    for variant in variants:
        result = adapter.invoke(variant.render(**params), timeout)
        outcome.attempts.append((variant, result))

        if result.not_found:
            logger.error("STM32_Programmer_CLI not found: %s", adapter.executable)
            break
        if accept(result):
            logger.debug("Variant '%s' accepted", variant.name)
            outcome.winner = variant
            break
        if result.timed_out:
            logger.info("Variant '%s' timed out after %.0fs", variant.name, timeout)
        elif busy is not None and busy(result):
            logger.info("Probe busy on variant '%s', backing off", variant.name)
            sleep(busy_backoff)
        else:
            logger.debug("Variant '%s' rejected (exit code %s)", variant.name, result.exit_code)
    return outcome


_ANY = frozenset()

LIST_PROBES = ("-l",)

CONNECT_VARIANTS = (
    CommandVariant("swd", ("-c", "port=SWD", "freq={freq}"), "link"),
    CommandVariant("swd-long-flag", ("--connect", "port=SWD", "freq={freq}"), "link"),
    CommandVariant("swd-slow", ("-c", "port=SWD", "freq=1000"), "link"),
    CommandVariant("swd-default-freq", ("-c", "port=SWD"), "link"),
    CommandVariant("list-only", ("-l",), "link"),
)

DEVICE_INFO_VARIANTS = (
    CommandVariant("swd-info", ("-c", "port=SWD", "freq={freq}", "mode=UR"), "chip"),
)

VERIFY_CONNECTION_VARIANTS = (
    CommandVariant("swd", ("-c", "port=SWD", "freq={freq}"), "link"),
)

ERASE_VARIANTS = (
    CommandVariant("swd-erase", ("-c", "port=SWD", "freq={freq}", "-e", "all"), "erased"),
    CommandVariant("swd-erase-long-flag", ("--connect", "port=SWD", "freq={freq}", "--erase", "all"), "erased"),
)

# {reset} renders to "-rst" or "" depending on the image kind.
WRITE_VARIANTS = (
    CommandVariant("swd", ("-c", "port=SWD", "freq={freq}", "-w", "{path}", "{address}", "-v", "{reset}"), "written", _ANY),
    CommandVariant("swd-slow", ("-c", "port=SWD", "freq=1000", "-w", "{path}", "{address}", "-v", "{reset}"), "written", _ANY),
    CommandVariant("swd-default-freq", ("-c", "port=SWD", "-w", "{path}", "{address}", "-v", "{reset}"), "written",
                   frozenset({FirmwareKind.APP})),
    CommandVariant("write-first", ("-w", "{path}", "{address}", "-v", "{reset}", "-c", "port=SWD", "freq={freq}"),
                   "written", frozenset({FirmwareKind.APP})),
    CommandVariant("swd-long-flag", ("--connect", "port=SWD", "freq={freq}", "--write", "{path}", "{address}",
                                     "--verify", "{reset}"), "written", _ANY),
    CommandVariant("swd-long-flag-slow", ("--connect", "port=SWD", "freq=1000", "--write", "{path}", "{address}",
                                          "--verify", "{reset}"), "written", frozenset({FirmwareKind.APP})),
)

RESET_VARIANTS = (
    CommandVariant("hard-reset", ("-c", "port=SWD", "-hardRst"), "reset"),
    CommandVariant("soft-reset", ("-c", "port=SWD", "freq={freq}", "-rst"), "reset"),
)

# Compare flash contents against an image without writing.
VERIFY_VARIANTS = (
    CommandVariant("swd-verify", ("-c", "port=SWD", "freq={freq}", "-v", "{path}", "{address}"), "verified"),
    CommandVariant("swd-verify-long-flag", ("--connect", "port=SWD", "freq={freq}", "--verify", "{path}", "{address}"),
                   "verified"),
)

QUICK_VERIFY_VARIANTS = (
    CommandVariant("swd-verify-fast", ("-c", "port=SWD", "freq={freq}", "-v", "fast", "{path}", "{address}"), "verified"),
)
