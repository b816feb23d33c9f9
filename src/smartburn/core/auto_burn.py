"""Production loop: flash every board that gets connected.

Polls for a target, programs it once when it appears, then waits for it
to be removed before arming again. Stop requests are honoured between
boards and during waits, never in the middle of a programming step.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .connection_monitor import ConnectionMonitor
from .connection_probe import ConnectionProbe
from .firmware import FirmwareImage
from .models import Device, ProgramResult
from .programmer import ProgramOrchestrator

logger = logging.getLogger(__name__)

BoardCallback = Callable[[int, List[ProgramResult]], None]


@dataclass
class AutoBurnStats:
    """Counters for one session."""

    boards: int = 0
    passed: int = 0
    failed: int = 0
    results: List[List[ProgramResult]] = field(default_factory=list)


class AutoBurnSession:
    """Runs the board-by-board flashing loop until stopped."""

    def __init__(
        self,
        orchestrator: ProgramOrchestrator,
        probe: ConnectionProbe,
        boot: Optional[FirmwareImage] = None,
        app: Optional[FirmwareImage] = None,
        monitor: Optional[ConnectionMonitor] = None,
        poll_interval: float = 1.0,
        max_boards: int = 0,
        on_board: Optional[BoardCallback] = None,
        on_device: Optional[Callable[[Device], None]] = None,
        on_progress: Optional[Callable[[int], None]] = None,
    ):
        if boot is None and app is None:
            raise ValueError("Auto-burn needs at least one firmware image")
        self.orchestrator = orchestrator
        self.probe = probe
        self.boot = boot
        self.app = app
        self.monitor = monitor
        self.poll_interval = poll_interval
        self.max_boards = max_boards
        self.on_board = on_board
        self.on_device = on_device
        self.on_progress = on_progress
        self.stats = AutoBurnStats()
        self._stop = threading.Event()

    def stop(self):
        """Ask the loop to finish after the current step."""
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def run(self) -> AutoBurnStats:
        """Block until stopped or max_boards boards have been handled."""
        logger.info("Auto-burn started, connect a board to program it")
        if self.monitor is not None and not self.monitor.pause():
            self.monitor.resume()
            logger.error("Auto-burn not started: a connection check is still running")
            return self.stats
        try:
            armed = True
            while not self._stop.is_set():
                device = self.probe.probe()
                if self.on_device is not None:
                    self.on_device(device)

                if device.ready_to_program and armed:
                    armed = False
                    self._burn_board(device)
                    if self.max_boards and self.stats.boards >= self.max_boards:
                        break
                    logger.info("Remove the board to continue")
                elif not device.ready_to_program and not armed:
                    logger.info("Board removed, waiting for the next one")
                    armed = True

                self._stop.wait(self.poll_interval)
        finally:
            if self.monitor is not None:
                self.monitor.resume(self.orchestrator.settle_delay)
        logger.info(
            "Auto-burn finished: %d board(s), %d passed, %d failed",
            self.stats.boards, self.stats.passed, self.stats.failed,
        )
        return self.stats

    def _burn_board(self, device: Device):
        self.stats.boards += 1
        number = self.stats.boards
        logger.info("Board #%d detected: %s", number, device.describe())

        results = self.orchestrator.program_all(self.boot, self.app, self.on_progress)
        self.stats.results.append(results)
        if results and all(r.success for r in results):
            self.stats.passed += 1
            logger.info("Board #%d PASSED", number)
        else:
            self.stats.failed += 1
            reason = results[-1].message if results else "nothing was programmed"
            logger.error("Board #%d FAILED: %s", number, reason)
        if self.on_board is not None:
            self.on_board(number, results)
