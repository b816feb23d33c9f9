"""STM32 USART ROM bootloader client (AN3155).

Every exchange is bounded by the port's read timeout. NACKs and timeouts
come back as StepResult values; only a port that cannot be opened
raises (PortOpenError), and flash() turns that into a ProgramResult.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple

import serial

from . import bootloader_protocol as bp
from .errors import FirmwareLoadError, PortOpenError
from .firmware import FirmwareImage, format_address, format_size, load_image_bytes
from .models import ErrorKind, ProgramResult
from .serial_boot_controller import SerialBootController
from .settings import SerialConfig

logger = logging.getLogger(__name__)

TRANSPORT = "serial"
SYNC_RETRY_DELAY = 0.1
WRITE_ALIGNMENT = 4


class EngineState(Enum):
    """Where the engine is in a flashing session."""

    DISCONNECTED = "disconnected"
    SYNC_PENDING = "sync_pending"
    READY = "ready"
    ERASING = "erasing"
    WRITING = "writing"
    VERIFYING = "verifying"
    RESETTING = "resetting"


@dataclass(frozen=True)
class StepResult:
    """Outcome of one bootloader exchange."""

    ok: bool
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    data: bytes = b""

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def failed(cls, kind: ErrorKind, message: str) -> "StepResult":
        return cls(False, kind, message)


class BootloaderEngine:
    """Talks to the ROM bootloader over one serial port."""

    def __init__(
        self,
        config: SerialConfig,
        serial_factory: Callable[..., serial.Serial] = serial.Serial,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize BootloaderEngine.

        Args:
            config: Port, framing and entry strategy
            serial_factory: Opens the port; tests pass a fake
            sleep: Delay function used between retries
        """
        self.config = config
        self._serial_factory = serial_factory
        self._sleep = sleep
        self._busy = threading.Lock()
        self.connection: Optional[serial.Serial] = None
        self.controller: Optional[SerialBootController] = None
        self.state = EngineState.DISCONNECTED
        self.bootloader_version: Optional[int] = None
        self.supported_commands: Tuple[int, ...] = ()
        self.product_id: Optional[int] = None

    # -- port -----------------------------------------------------------

    def connect(self):
        """Open the port with the bootloader's 8E1 framing."""
        try:
            self.connection = self._serial_factory(
                port=self.config.port,
                baudrate=self.config.baud_rate,
                bytesize=self.config.bytesize,
                parity=self.config.parity,
                stopbits=self.config.stopbits,
                timeout=self.config.timeout,
                write_timeout=self.config.timeout,
                # Control lines are driven by hand
                rtscts=False,
                dsrdtr=False,
            )
        except (serial.SerialException, OSError, ValueError) as e:
            raise PortOpenError(f"Could not open serial port {self.config.port}: {e}") from e
        self.controller = SerialBootController(
            self.connection, boot_active_high=self.config.boot_active_high, sleep=self._sleep
        )
        self.state = EngineState.SYNC_PENDING
        logger.info("Opened %s at %d baud", self.config.port, self.config.baud_rate)

    def disconnect(self):
        """Close the port if open."""
        if self.connection is not None and self.connection.is_open:
            self.connection.close()
        self.connection = None
        self.controller = None
        self.state = EngineState.DISCONNECTED

    def enter_bootloader(self) -> bool:
        """Put the target into its ROM bootloader with the configured strategy."""
        if self.config.boot_strategy == "command":
            return self.controller.send_enter_command(self.config.enter_command)
        return self.controller.enter_bootloader()

    # -- primitives -----------------------------------------------------

    def _read_exact(self, count: int) -> Optional[bytes]:
        data = self.connection.read(count)
        if len(data) != count:
            logger.debug("Expected %d byte(s), got %d", count, len(data))
            return None
        return bytes(data)

    def _wait_ack(self, what: str) -> StepResult:
        reply = self.connection.read(1)
        if not reply:
            return StepResult.failed(ErrorKind.TIMEOUT, f"No reply to {what}")
        if reply[0] == bp.ACK:
            return StepResult(True)
        if reply[0] == bp.NACK:
            return StepResult.failed(ErrorKind.PROTOCOL_NACK, f"{what} rejected (NACK)")
        return StepResult.failed(ErrorKind.PROTOCOL_NACK, f"Unexpected reply 0x{reply[0]:02X} to {what}")

    def _send(self, frame: bytes):
        self.connection.write(frame)
        self.connection.flush()

    def send_sync_byte(self) -> StepResult:
        """Send 0x7F until the bootloader answers, with escalating delays."""
        for attempt in range(1, self.config.sync_attempts + 1):
            self.connection.reset_input_buffer()
            self.connection.reset_output_buffer()
            self._send(bytes([bp.SYNC]))
            reply = self.connection.read(1)
            if reply and reply[0] == bp.ACK:
                logger.info("Bootloader synchronised (attempt %d)", attempt)
                self.state = EngineState.READY
                return StepResult(True)
            if reply:
                logger.debug("Unexpected sync reply 0x%02X on attempt %d", reply[0], attempt)
            else:
                logger.debug("No sync reply on attempt %d", attempt)
            if attempt < self.config.sync_attempts:
                self._sleep(SYNC_RETRY_DELAY * attempt)
        return StepResult.failed(
            ErrorKind.TIMEOUT,
            f"Bootloader did not answer sync after {self.config.sync_attempts} attempts",
        )

    def send_command(self, code: int) -> StepResult:
        """Send a command frame and wait for its ACK."""
        self._send(bp.command_frame(code))
        return self._wait_ack(bp.COMMAND_NAMES.get(code, f"command 0x{code:02X}"))

    # -- commands -------------------------------------------------------

    def get_commands(self) -> StepResult:
        """GET: bootloader version and supported command codes."""
        step = self.send_command(bp.CMD_GET)
        if not step:
            return step
        count = self._read_exact(1)
        payload = self._read_exact(count[0] + 1) if count else None
        if payload is None:
            return StepResult.failed(ErrorKind.TIMEOUT, "Short GET reply")
        step = self._wait_ack("GET payload")
        if not step:
            return step
        self.bootloader_version = payload[0]
        self.supported_commands = tuple(payload[1:])
        logger.debug(
            "Bootloader v%d.%d, commands %s",
            payload[0] >> 4, payload[0] & 0x0F, " ".join(f"{c:02X}" for c in payload[1:]),
        )
        return StepResult(True, data=payload)

    def get_version(self) -> StepResult:
        """GET_VERSION: version byte and two option bytes."""
        step = self.send_command(bp.CMD_GET_VERSION)
        if not step:
            return step
        payload = self._read_exact(3)
        if payload is None:
            return StepResult.failed(ErrorKind.TIMEOUT, "Short GET_VERSION reply")
        step = self._wait_ack("GET_VERSION payload")
        if not step:
            return step
        self.bootloader_version = payload[0]
        return StepResult(True, data=payload)

    def get_id(self) -> StepResult:
        """GET_ID: product id bytes."""
        step = self.send_command(bp.CMD_GET_ID)
        if not step:
            return step
        count = self._read_exact(1)
        payload = self._read_exact(count[0] + 1) if count else None
        if payload is None:
            return StepResult.failed(ErrorKind.TIMEOUT, "Short GET_ID reply")
        step = self._wait_ack("GET_ID payload")
        if not step:
            return step
        self.product_id = int.from_bytes(payload, "big")
        logger.info("Product ID: 0x%04X", self.product_id)
        return StepResult(True, data=payload)

    def read_memory(self, address: int, count: int) -> StepResult:
        """READ_MEMORY: up to 256 bytes from address."""
        step = self.send_command(bp.CMD_READ_MEMORY)
        if not step:
            return step
        self._send(bp.address_frame(address))
        step = self._wait_ack(f"read address {format_address(address)}")
        if not step:
            return step
        self._send(bp.length_frame(count))
        step = self._wait_ack("read length")
        if not step:
            return step
        data = self._read_exact(count)
        if data is None:
            return StepResult.failed(ErrorKind.TIMEOUT, f"Short read at {format_address(address)}")
        return StepResult(True, data=data)

    def mass_erase(self, extended: Optional[bool] = None) -> StepResult:
        """Erase all of flash.

        Uses EXTENDED_ERASE when GET reported it, unless told otherwise.
        The read timeout is raised for the completion ACK and always
        restored afterwards.
        """
        if extended is None:
            extended = bp.CMD_EXTENDED_ERASE in self.supported_commands
        code, request = (
            (bp.CMD_EXTENDED_ERASE, bp.EXTENDED_MASS_ERASE) if extended else (bp.CMD_ERASE, bp.MASS_ERASE)
        )

        self.state = EngineState.ERASING
        step = self.send_command(code)
        if not step:
            return step

        logger.info("Mass erase started (%s)", bp.COMMAND_NAMES[code])
        normal_timeout = self.connection.timeout
        try:
            self.connection.timeout = self.config.erase_timeout
            self._send(request)
            step = self._wait_ack("mass erase")
        finally:
            self.connection.timeout = normal_timeout

        if not step:
            if step.error_kind is ErrorKind.TIMEOUT:
                return StepResult.failed(
                    ErrorKind.ERASE_FAILED, f"Mass erase did not finish within {self.config.erase_timeout:.0f}s"
                )
            return StepResult.failed(ErrorKind.ERASE_FAILED, f"Mass erase failed: {step.message}")
        logger.info("Mass erase complete")
        return StepResult(True)

    def write_memory(self, address: int, block: bytes) -> StepResult:
        """WRITE_MEMORY: one block of at most 256 bytes.

        Blocks are padded with 0xFF to a multiple of four bytes.
        """
        remainder = len(block) % WRITE_ALIGNMENT
        if remainder:
            block = bytes(block) + b"\xff" * (WRITE_ALIGNMENT - remainder)

        step = self.send_command(bp.CMD_WRITE_MEMORY)
        if not step:
            return step
        self._send(bp.address_frame(address))
        step = self._wait_ack(f"write address {format_address(address)}")
        if not step:
            return step
        self._send(bp.data_frame(block))
        return self._wait_ack(f"data block at {format_address(address)}")

    def write_image(
        self,
        data: bytes,
        base_address: int,
        progress: Optional[Callable[[int], None]] = None,
    ) -> StepResult:
        """Write data in 256-byte blocks, reporting percent of bytes written."""
        self.state = EngineState.WRITING
        total = len(data)
        written = 0
        for address, block in bp.iter_blocks(data, base_address):
            step = self.write_memory(address, block)
            if not step:
                logger.error("Write stopped at %s: %s", format_address(address), step.message)
                return step
            written += len(block)
            if progress is not None:
                progress(written * 100 // total)
        logger.info("Wrote %s from %s", format_size(total), format_address(base_address))
        return StepResult(True)

    def verify_image(self, data: bytes, base_address: int) -> StepResult:
        """Read the image back and compare it block by block."""
        self.state = EngineState.VERIFYING
        for address, block in bp.iter_blocks(data, base_address):
            step = self.read_memory(address, len(block))
            if not step:
                return step
            if step.data != block:
                return StepResult.failed(ErrorKind.VERIFY_FAILED, f"Read-back mismatch at {format_address(address)}")
        logger.info("Read-back verification passed")
        return StepResult(True)

    def go(self, address: int) -> StepResult:
        """Start the application; falls back to a pin reset if GO is not acknowledged."""
        self.state = EngineState.RESETTING
        step = self.send_command(bp.CMD_GO)
        if step:
            self._send(bp.address_frame(address))
            normal_timeout = self.connection.timeout
            try:
                self.connection.timeout = self.config.go_timeout
                step = self._wait_ack(f"GO {format_address(address)}")
            finally:
                self.connection.timeout = normal_timeout
        if step:
            logger.info("Application started at %s", format_address(address))
            return StepResult(True, message="GO")

        logger.warning("GO not acknowledged (%s), resetting through NRST", step.message)
        if self.controller is not None and self.controller.reset_to_application():
            return StepResult(True, message="pin reset")
        return StepResult(True, message="no reset; power-cycle the board")

    # -- full sequence --------------------------------------------------

    def flash(self, image: FirmwareImage, progress: Optional[Callable[[int], None]] = None) -> ProgramResult:
        """Erase, write, optionally verify, and start one image. Never raises."""
        if not self._busy.acquire(blocking=False):
            return ProgramResult.failure(ErrorKind.BUSY, "Another serial operation is in progress", TRANSPORT)
        try:
            return self._flash(image, progress or (lambda _: None))
        except PortOpenError as e:
            logger.error("%s", e)
            return ProgramResult.failure(ErrorKind.PORT_OPEN_FAILED, str(e), TRANSPORT)
        except FirmwareLoadError as e:
            logger.error("%s", e)
            return ProgramResult.failure(ErrorKind.INVALID_IMAGE, str(e), TRANSPORT)
        except (serial.SerialException, OSError) as e:
            logger.exception("Serial I/O failed")
            return ProgramResult.failure(ErrorKind.UNKNOWN_FAILURE, f"Serial I/O failed: {e}", TRANSPORT)
        finally:
            self.disconnect()
            self._busy.release()

    def _flash(self, image: FirmwareImage, progress: Callable[[int], None]) -> ProgramResult:
        if not image.valid:
            return ProgramResult.failure(ErrorKind.INVALID_IMAGE, f"Firmware image is not valid: {image.path}", TRANSPORT)
        data, base = load_image_bytes(image)
        if not data:
            return ProgramResult.failure(ErrorKind.INVALID_IMAGE, f"Firmware image is empty: {image.path}", TRANSPORT)

        self.connect()
        progress(2)
        if not self.enter_bootloader():
            return self._abort("enter bootloader", StepResult.failed(ErrorKind.UNKNOWN_FAILURE, "Control line error"))

        stages = (
            ("sync", self.send_sync_byte),
            ("get commands", self.get_commands),
            ("get id", self.get_id),
        )
        for stage, run in stages:
            step = run()
            if not step:
                return self._abort(stage, step)
        progress(10)

        step = self.mass_erase()
        if not step:
            return self._abort("erase", step)
        progress(20)

        step = self.write_image(data, base, lambda p: progress(20 + p * 70 // 100))
        if not step:
            return self._abort("write", step)

        verified = False
        if self.config.verify:
            step = self.verify_image(data, base)
            if not step:
                return self._abort("verify", step)
            verified = True
        progress(95)

        start = self.go(base)
        progress(100)
        message = f"{image.file_name} written over {self.config.port} ({format_size(len(data))})"
        logger.info("%s, started via %s", message, start.message)
        return ProgramResult.ok(
            message,
            verified=verified,
            transport=TRANSPORT,
            product_id=self.product_id,
            bootloader_version=self.bootloader_version,
            start=start.message,
        )

    def identify(self) -> ProgramResult:
        """Enter the bootloader, read its identity, and restart the application.

        The details carry bootloader_version, commands, product_id and
        option_bytes.
        """
        if not self._busy.acquire(blocking=False):
            return ProgramResult.failure(ErrorKind.BUSY, "Another serial operation is in progress", TRANSPORT)
        try:
            self.connect()
            if not self.enter_bootloader():
                return self._abort("enter bootloader", StepResult.failed(ErrorKind.UNKNOWN_FAILURE, "Control line error"))
            for stage, run in (("sync", self.send_sync_byte), ("get commands", self.get_commands)):
                step = run()
                if not step:
                    return self._abort(stage, step)
            version = self.get_version()
            if not version:
                return self._abort("get version", version)
            step = self.get_id()
            if not step:
                return self._abort("get id", step)
            self.controller.reset_to_application()
            return ProgramResult.ok(
                f"Bootloader v{self.bootloader_version >> 4}.{self.bootloader_version & 0x0F}, "
                f"product ID 0x{self.product_id:04X}",
                transport=TRANSPORT,
                bootloader_version=self.bootloader_version,
                commands=[bp.COMMAND_NAMES.get(c, f"0x{c:02X}") for c in self.supported_commands],
                product_id=self.product_id,
                option_bytes=version.data[1:].hex(),
            )
        except PortOpenError as e:
            logger.error("%s", e)
            return ProgramResult.failure(ErrorKind.PORT_OPEN_FAILED, str(e), TRANSPORT)
        except (serial.SerialException, OSError) as e:
            logger.exception("Serial I/O failed")
            return ProgramResult.failure(ErrorKind.UNKNOWN_FAILURE, f"Serial I/O failed: {e}", TRANSPORT)
        finally:
            self.disconnect()
            self._busy.release()

    def _abort(self, stage: str, step: StepResult) -> ProgramResult:
        logger.error("Serial flashing failed at %s: %s", stage, step.message)
        return ProgramResult.failure(
            step.error_kind or ErrorKind.UNKNOWN_FAILURE,
            f"{stage}: {step.message}",
            TRANSPORT,
            stage=stage,
        )
