"""Erase, write, verify and reset over ST-LINK via STM32_Programmer_CLI."""

import logging
import threading
import time
from typing import Callable, List, Optional

from .connection_monitor import ConnectionMonitor
from .connection_probe import ConnectionProbe
from .firmware import FirmwareImage
from .models import ErrorKind, ProgramResult
from .output_classifier import Classification, OutputClassifier
from .settings import ProgrammerConfig
from .tool_adapter import (
    ERASE_VARIANTS,
    QUICK_VERIFY_VARIANTS,
    RESET_VARIANTS,
    VERIFY_VARIANTS,
    WRITE_VARIANTS,
    ToolAdapter,
    ToolResult,
    VariantOutcome,
    try_variants,
)

logger = logging.getLogger(__name__)

TRANSPORT = "stlink"

WRITE_TIMEOUT = 60.0
ERASE_TIMEOUT = 30.0
RESET_TIMEOUT = 10.0
VERIFY_TIMEOUT = 30.0
SETTLE_DELAY = 2.0
POST_ERASE_DELAY = 0.5

ProgressCallback = Callable[[int], None]


class ProgramOrchestrator:
    """Runs one flashing operation at a time against the ST-LINK.

    A second request while one is running returns a BUSY result instead
    of waiting. The optional monitor is paused for the whole operation
    and resumed after the settle delay.
    """

    def __init__(
        self,
        adapter: ToolAdapter,
        probe: Optional[ConnectionProbe] = None,
        classifier: Optional[OutputClassifier] = None,
        monitor: Optional[ConnectionMonitor] = None,
        frequency_khz: int = 4000,
        write_timeout: float = WRITE_TIMEOUT,
        erase_timeout: float = ERASE_TIMEOUT,
        reset_timeout: float = RESET_TIMEOUT,
        verify_timeout: float = VERIFY_TIMEOUT,
        settle_delay: float = SETTLE_DELAY,
        post_erase_delay: float = POST_ERASE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize ProgramOrchestrator."""
        self.adapter = adapter
        self.classifier = classifier or OutputClassifier()
        self.probe = probe or ConnectionProbe(adapter, self.classifier, frequency_khz, sleep=sleep)
        self.monitor = monitor
        self.frequency_khz = frequency_khz
        self.write_timeout = write_timeout
        self.erase_timeout = erase_timeout
        self.reset_timeout = reset_timeout
        self.verify_timeout = verify_timeout
        self.settle_delay = settle_delay
        self.post_erase_delay = post_erase_delay
        self._sleep = sleep
        self._busy = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: ProgrammerConfig,
        monitor: Optional[ConnectionMonitor] = None,
        probe: Optional[ConnectionProbe] = None,
    ) -> "ProgramOrchestrator":
        """Build an orchestrator (sharing the probe's adapter) from settings."""
        probe = probe or ConnectionProbe.from_config(config)
        return cls(
            probe.adapter,
            probe=probe,
            classifier=probe.classifier,
            monitor=monitor,
            frequency_khz=config.frequency_khz,
            write_timeout=config.write_timeout,
            erase_timeout=config.erase_timeout,
            settle_delay=config.settle_delay,
        )

    @property
    def is_busy(self) -> bool:
        return self._busy.locked()

    def _exclusive(self, operation: str, body: Callable[[], ProgramResult]) -> ProgramResult:
        if not self._busy.acquire(blocking=False):
            logger.warning("Cannot %s: another operation is in progress", operation)
            return ProgramResult.failure(ErrorKind.BUSY, "Another programming operation is in progress", TRANSPORT)
        try:
            if self.monitor is not None and not self.monitor.pause():
                self.monitor.resume()
                logger.error("Cannot %s: a connection check is still running", operation)
                return ProgramResult.failure(ErrorKind.BUSY, "A connection check is still running", TRANSPORT)
            try:
                return body()
            except Exception as e:
                logger.exception("Unexpected error during %s", operation)
                return ProgramResult.failure(ErrorKind.UNKNOWN_FAILURE, f"Unexpected error: {e}", TRANSPORT)
            finally:
                if self.monitor is not None:
                    self.monitor.resume(self.settle_delay)
        finally:
            self._busy.release()

    # -- public operations ----------------------------------------------

    def program(self, image: FirmwareImage, progress: Optional[ProgressCallback] = None) -> ProgramResult:
        """Flash one image. Never raises."""
        return self._exclusive("program", lambda: self._program(image, _Progress(progress)))

    def erase_chip(self, progress: Optional[ProgressCallback] = None) -> ProgramResult:
        """Mass-erase the target as a standalone operation."""

        def body() -> ProgramResult:
            report = _Progress(progress)
            report(10)
            if not self.adapter.is_available():
                return self._tool_missing()
            failure = self._erase()
            if failure is not None:
                return failure
            report(100)
            return ProgramResult.ok("Chip erased", transport=TRANSPORT)

        return self._exclusive("erase", body)

    def verify(
        self, image: FirmwareImage, progress: Optional[ProgressCallback] = None, quick: bool = False
    ) -> ProgramResult:
        """Compare the target flash with an image without writing it.

        quick uses the programmer's fast (checksum) comparison instead of
        a full read-back.
        """
        return self._exclusive("verify", lambda: self._verify(image, _Progress(progress), quick))

    def program_all(
        self,
        boot: Optional[FirmwareImage],
        app: Optional[FirmwareImage],
        progress: Optional[ProgressCallback] = None,
    ) -> List[ProgramResult]:
        """Flash the bootloader then the application; stop if the first fails."""
        images = [image for image in (boot, app) if image is not None]
        results: List[ProgramResult] = []
        for index, image in enumerate(images):
            share = 100 // len(images)
            offset = index * share
            scaled = _scaled(progress, offset, share) if progress is not None else None
            logger.info("Programming %s image %s", image.kind.value.upper(), image.file_name)
            result = self.program(image, scaled)
            results.append(result)
            if not result.success:
                logger.error("%s programming failed, skipping the rest", image.kind.value.upper())
                break
        return results

    def reset_target(self) -> bool:
        """Best-effort hardware reset, falling back to a software reset."""
        outcome = try_variants(
            self.adapter,
            RESET_VARIANTS,
            {"freq": str(self.frequency_khz)},
            self.reset_timeout,
            accept=lambda r: r.succeeded and self.classifier.find_failure(r.stdout, r.stderr) is None,
            sleep=self._sleep,
        )
        if outcome.accepted:
            logger.info("Target reset (%s)", outcome.winner.name)
        else:
            logger.warning("Target reset failed; power-cycle the board to start the application")
        return outcome.accepted

    # -- steps ----------------------------------------------------------

    def _tool_missing(self) -> ProgramResult:
        return ProgramResult.failure(
            ErrorKind.TOOL_NOT_FOUND,
            f"STM32_Programmer_CLI not found: {self.adapter.executable}",
            TRANSPORT,
        )

    def _program(self, image: FirmwareImage, report: "_Progress") -> ProgramResult:
        report(10)
        if not image.valid:
            return ProgramResult.failure(ErrorKind.INVALID_IMAGE, f"Firmware image is not valid: {image.path}", TRANSPORT)
        if not self.adapter.is_available():
            return self._tool_missing()

        logger.info("Programming %s at %s", image, image.address_text)
        if image.kind.requires_full_erase:
            logger.info("%s image: erasing the whole chip first", image.kind.value.upper())
            failure = self._erase()
            if failure is not None:
                return failure
            self._sleep(self.post_erase_delay)
        report(30)

        params = {
            "path": image.path,
            "address": image.address_text,
            "freq": str(self.frequency_khz),
            "reset": "-rst" if image.kind.runs_after_write else "",
        }
        variants = [v for v in WRITE_VARIANTS if v.applies_to(image.kind)]
        report(40)
        outcome = try_variants(
            self.adapter,
            variants,
            params,
            self.write_timeout,
            accept=lambda r: self._classify(r).success,
            busy=lambda r: self.classifier.is_busy(r.output),
            sleep=self._sleep,
        )
        report(90)

        if not outcome.accepted:
            return self._failure_from(outcome, ErrorKind.WRITE_FAILED, "Write")

        result = outcome.result
        verdict = self._classify(result)
        if image.kind.runs_after_write and not self.classifier.has_reset_evidence(result.output):
            logger.info("No reset reported by the programmer, resetting explicitly")
            self.reset_target()
        report(100)

        message = f"{image.file_name} written to {image.address_text}"
        logger.info("%s (%s)", message, "verified" if verdict.verified else "not verified")
        return ProgramResult.ok(
            message,
            verified=verdict.verified,
            transport=TRANSPORT,
            variant=outcome.winner.name,
            output=result.output,
        )

    def _verify(self, image: FirmwareImage, report: "_Progress", quick: bool) -> ProgramResult:
        report(10)
        if not image.valid:
            return ProgramResult.failure(ErrorKind.INVALID_IMAGE, f"Firmware image is not valid: {image.path}", TRANSPORT)
        if not self.adapter.is_available():
            return self._tool_missing()

        logger.info("Verifying %s at %s%s", image, image.address_text, " (fast)" if quick else "")
        report(30)
        params = {"path": image.path, "address": image.address_text, "freq": str(self.frequency_khz)}
        outcome = try_variants(
            self.adapter,
            QUICK_VERIFY_VARIANTS if quick else VERIFY_VARIANTS,
            params,
            self.verify_timeout,
            accept=lambda r: self._classify(r, ErrorKind.VERIFY_FAILED).success,
            busy=lambda r: self.classifier.is_busy(r.output),
            sleep=self._sleep,
        )
        report(80)
        if not outcome.accepted:
            return self._failure_from(outcome, ErrorKind.VERIFY_FAILED, "Verify")

        report(100)
        message = f"{image.file_name} matches flash at {image.address_text}"
        logger.info(message)
        return ProgramResult.ok(
            message,
            verified=True,
            transport=TRANSPORT,
            variant=outcome.winner.name,
            output=outcome.result.output,
            size_bytes=image.size_bytes,
        )

    def _erase(self) -> Optional[ProgramResult]:
        """Verify the link and mass-erase; returns a failure or None."""
        check = self.probe.verify_connection()
        if not check.accepted:
            return self._failure_from(check, ErrorKind.CONNECT_FAILED, "Connection check before erase")

        outcome = try_variants(
            self.adapter,
            ERASE_VARIANTS,
            {"freq": str(self.frequency_khz)},
            self.erase_timeout,
            accept=lambda r: self._classify(r, ErrorKind.ERASE_FAILED).success,
            busy=lambda r: self.classifier.is_busy(r.output),
            sleep=self._sleep,
        )
        if not outcome.accepted:
            failure = self._failure_from(outcome, ErrorKind.ERASE_FAILED, "Erase")
            if failure.error_kind in (ErrorKind.TIMEOUT, ErrorKind.TOOL_NOT_FOUND):
                return failure
            return ProgramResult.failure(ErrorKind.ERASE_FAILED, failure.message, TRANSPORT, **failure.details)
        logger.info("Full chip erase complete")
        return None

    def _classify(self, result: ToolResult, generic_kind: ErrorKind = ErrorKind.WRITE_FAILED) -> Classification:
        return self.classifier.classify_program(result.stdout, result.stderr, result.exit_code, generic_kind=generic_kind)

    def _failure_from(self, outcome: VariantOutcome, fallback: ErrorKind, step: str) -> ProgramResult:
        """Turn a rejected variant walk into a typed failure.

        The most recent attempt with a specific failure marker decides
        the kind. Only when every attempt timed out is the result TIMEOUT.
        """
        details = {"attempts": [v.name for v, _ in outcome.attempts]}
        if outcome.result is not None:
            details["output"] = outcome.result.output
        if outcome.tool_missing:
            return ProgramResult.failure(ErrorKind.TOOL_NOT_FOUND, "STM32_Programmer_CLI could not be started",
                                         TRANSPORT, **details)
        if outcome.all_timed_out:
            logger.error("%s timed out on every command variant", step)
            return ProgramResult.failure(ErrorKind.TIMEOUT, f"{step} timed out", TRANSPORT, **details)

        for variant, result in reversed(outcome.attempts):
            if result.timed_out:
                continue
            verdict = self._classify(result, fallback)
            if verdict.error_kind is not None and verdict.error_kind is not ErrorKind.UNKNOWN_FAILURE:
                logger.error("%s failed: %s (variant '%s')", step, verdict.message, variant.name)
                return ProgramResult.failure(verdict.error_kind, verdict.message, TRANSPORT, **details)

        kind = ErrorKind.UNKNOWN_FAILURE if fallback is ErrorKind.WRITE_FAILED else fallback
        logger.error("%s failed on every command variant", step)
        return ProgramResult.failure(kind, f"{step} failed on every command variant", TRANSPORT, **details)


class _Progress:
    """Forwards milestone percentages to an optional sink."""

    def __init__(self, sink: Optional[ProgressCallback]):
        self._sink = sink

    def __call__(self, percent: int) -> None:
        if self._sink is not None:
            self._sink(percent)


def _scaled(sink: ProgressCallback, offset: int, share: int) -> ProgressCallback:
    def report(percent: int) -> None:
        sink(offset + percent * share // 100)

    return report
