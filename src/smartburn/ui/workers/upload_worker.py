"""Flash and auto-burn worker threads for a Qt front end."""

import logging
from typing import Callable

from PySide6.QtCore import QThread, Signal

from ...core.auto_burn import AutoBurnSession
from ...core.firmware import FirmwareImage
from ...core.log_events import attach_callback, detach_callback
from ...core.models import ErrorKind, ProgramResult
from ...core.programmer import ProgramOrchestrator
from ...core.serial_bootloader import BootloaderEngine

logger = logging.getLogger(__name__)

Job = Callable[[Callable[[int], None]], ProgramResult]


class FlashWorkerThread(QThread):
    """Runs one flashing job off the GUI thread."""

    progress_update = Signal(int)  # percent
    log_message = Signal(str, str)  # level name, message
    result_ready = Signal(object)  # ProgramResult

    def __init__(self, job: Job, description: str = "", parent=None):
        """Initialize worker thread.

        Args:
            job: Callable taking a progress callback and returning a ProgramResult
            description: Short label used in log messages
        """
        super().__init__(parent)
        self.job = job
        self.description = description

    @classmethod
    def program(cls, orchestrator: ProgramOrchestrator, image: FirmwareImage, parent=None) -> "FlashWorkerThread":
        """Worker that flashes an image over ST-LINK."""
        return cls(lambda progress: orchestrator.program(image, progress), f"ST-LINK {image.file_name}", parent)

    @classmethod
    def erase(cls, orchestrator: ProgramOrchestrator, parent=None) -> "FlashWorkerThread":
        """Worker that mass-erases the target over ST-LINK."""
        return cls(orchestrator.erase_chip, "ST-LINK erase", parent)

    @classmethod
    def verify(
        cls, orchestrator: ProgramOrchestrator, image: FirmwareImage, quick: bool = False, parent=None
    ) -> "FlashWorkerThread":
        """Worker that compares the target flash with an image over ST-LINK."""
        return cls(
            lambda progress: orchestrator.verify(image, progress, quick), f"ST-LINK verify {image.file_name}", parent
        )

    @classmethod
    def serial_flash(cls, engine: BootloaderEngine, image: FirmwareImage, parent=None) -> "FlashWorkerThread":
        """Worker that flashes an image through the serial bootloader."""
        return cls(lambda progress: engine.flash(image, progress), f"serial {image.file_name}", parent)

    def run(self):
        """Execute the job and emit its result."""
        handler = attach_callback(self.log_message.emit)
        try:
            result = self.job(self.progress_update.emit)
        except Exception as e:
            logger.exception("Worker job %s failed", self.description)
            result = ProgramResult.failure(ErrorKind.UNKNOWN_FAILURE, f"Unexpected error: {e}")
        finally:
            detach_callback(handler)
        self.result_ready.emit(result)


class AutoBurnWorkerThread(QThread):
    """Runs an AutoBurnSession until request_stop() is called."""

    progress_update = Signal(int)
    log_message = Signal(str, str)
    device_changed = Signal(object)  # Device
    board_finished = Signal(int, bool, str)  # board number, success, message
    session_finished = Signal(object)  # AutoBurnStats

    def __init__(self, session_factory: Callable[..., AutoBurnSession], parent=None):
        """Initialize worker thread.

        Args:
            session_factory: Builds the session given on_board, on_device and
                on_progress keyword callbacks
        """
        super().__init__(parent)
        self.session = session_factory(
            on_board=self._on_board,
            on_device=self.device_changed.emit,
            on_progress=self.progress_update.emit,
        )

    def _on_board(self, number, results):
        success = bool(results) and all(r.success for r in results)
        message = results[-1].message if results else "nothing was programmed"
        self.board_finished.emit(number, success, message)

    def request_stop(self):
        """Request the loop to stop after the current board."""
        self.session.stop()

    def run(self):
        """Run the session and emit its stats."""
        handler = attach_callback(self.log_message.emit)
        try:
            stats = self.session.run()
        finally:
            detach_callback(handler)
        self.session_finished.emit(stats)
