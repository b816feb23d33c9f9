"""BOOT0/NRST control for STM32 boards wired to a USB-UART adapter."""

import logging
import time
from typing import Callable

import serial

logger = logging.getLogger(__name__)

SIGNAL_MAPPING = """Expected USB-UART adapter connections:

DTR -> NRST (reset pin)
RTS -> BOOT0 (boot select, through an inverter or transistor)
TX  -> PA10 (USART1_RX)
RX  <- PA9  (USART1_TX)
GND -- GND

Signal logic:
- DTR/RTS are active LOW on the adapter
- DTR=True  -> NRST=LOW (target held in reset)
- RTS=True  -> BOOT0=HIGH (ROM bootloader) with the usual inverter

Bootloader entry:
1. BOOT0 high
2. NRST low, then high
3. BOOT0 released once the ROM has sampled it
"""


class SerialBootController:
    """Drives BOOT0 and NRST through the RTS and DTR lines of an open port."""

    def __init__(
        self,
        connection: serial.Serial,
        boot_active_high: bool = True,
        reset_hold: float = 0.1,
        startup_delay: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize serial boot controller.

        Args:
            connection: Open serial port shared with the bootloader engine
            boot_active_high: True when asserting RTS drives BOOT0 high
            reset_hold: Seconds NRST is held low
            startup_delay: Seconds to wait after releasing NRST
        """
        self.connection = connection
        self.boot_active_high = boot_active_high
        self.reset_hold = reset_hold
        self.startup_delay = startup_delay
        self._sleep = sleep

    def set_boot_select(self, bootloader: bool):
        """Select the ROM bootloader (True) or user flash (False) for the next reset."""
        self.connection.rts = bootloader if self.boot_active_high else not bootloader

    def hold_reset(self, active: bool):
        """Hold NRST low (True) or release it (False)."""
        self.connection.dtr = active

    def pulse_reset(self) -> bool:
        """Pulse NRST low then high."""
        try:
            self.hold_reset(True)
            self._sleep(self.reset_hold)
            self.hold_reset(False)
            self._sleep(self.startup_delay)
            return True
        except (serial.SerialException, OSError) as e:
            logger.error("Reset pulse failed: %s", e)
            return False

    def enter_bootloader(self) -> bool:
        """Reset into the ROM bootloader using the BOOT0 line.

        Returns:
            True if the line sequence completed
        """
        try:
            logger.debug("Entering bootloader: BOOT0 high, pulsing NRST")
            self.set_boot_select(True)
            self._sleep(self.reset_hold)
            if not self.pulse_reset():
                return False
            # BOOT0 is sampled on reset release; the rest of the session does not need it
            self.set_boot_select(False)
            return True
        except (serial.SerialException, OSError) as e:
            logger.error("Error entering bootloader: %s", e)
            return False

    def send_enter_command(self, payload: bytes, response_delay: float = 0.2) -> bool:
        """Ask a running application to jump to its bootloader, then reset.

        The application is expected to leave a marker that survives the
        reset and sends it into the ROM bootloader on the next start.
        """
        try:
            logger.debug("Sending application bootloader request: %s", payload.hex())
            self.connection.reset_input_buffer()
            self.connection.write(payload)
            self.connection.flush()
            self._sleep(response_delay)
            self.set_boot_select(False)
            return self.pulse_reset()
        except (serial.SerialException, OSError) as e:
            logger.error("Error sending bootloader request: %s", e)
            return False

    def reset_to_application(self) -> bool:
        """Reset with BOOT0 low so the target starts from user flash."""
        try:
            logger.debug("Resetting into application")
            self.set_boot_select(False)
            return self.pulse_reset()
        except (serial.SerialException, OSError) as e:
            logger.error("Error during application reset: %s", e)
            return False

    @staticmethod
    def get_signal_mapping_info() -> str:
        """Describe the expected wiring."""
        return SIGNAL_MAPPING
