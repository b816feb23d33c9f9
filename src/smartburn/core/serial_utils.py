"""Serial port management module."""

import platform
from typing import Any, Dict, List

import serial
import serial.tools.list_ports

# Common USB-UART bridges used to reach the STM32 USART bootloader
USB_UART_KEYWORDS = ("cp210", "ch340", "ch341", "ftdi", "pl2303", "silicon labs", "usb-serial", "usb serial")
USB_UART_VIDS = (0x10C4, 0x1A86, 0x0403, 0x067B)
ST_KEYWORDS = ("st-link", "stlink", "stm32", "stmicroelectronics")
ST_VID = 0x0483


class SerialPortManager:
    """Class responsible for serial port management."""

    @staticmethod
    def get_available_ports() -> List[Dict[str, Any]]:
        """Return information for all available serial ports."""
        ports = []
        for port in serial.tools.list_ports.comports():
            ports.append(
                {
                    "device": port.device,
                    "description": port.description or "",
                    "hwid": port.hwid or "Unknown",
                    "manufacturer": getattr(port, "manufacturer", None) or "Unknown",
                    "vid": getattr(port, "vid", None),
                    "pid": getattr(port, "pid", None),
                }
            )
        return ports

    @staticmethod
    def get_port_names() -> List[str]:
        """Return list of available serial port names."""
        return [port.device for port in serial.tools.list_ports.comports()]

    @staticmethod
    def is_port_available(port_name: str) -> bool:
        """Check if the specified port is available."""
        return port_name in SerialPortManager.get_port_names()

    @staticmethod
    def _matches(port: Dict[str, Any], keywords, vids) -> bool:
        text = f"{port['description']} {port['hwid']} {port['manufacturer']}".lower()
        return any(keyword in text for keyword in keywords) or port["vid"] in vids

    @staticmethod
    def get_stlink_ports() -> List[Dict[str, Any]]:
        """Find ST-LINK virtual COM ports."""
        return [
            p for p in SerialPortManager.get_available_ports()
            if SerialPortManager._matches(p, ST_KEYWORDS, (ST_VID,))
        ]

    @staticmethod
    def get_usb_uart_ports() -> List[Dict[str, Any]]:
        """Find USB-UART adapters suitable for the serial bootloader."""
        return [
            p for p in SerialPortManager.get_available_ports()
            if SerialPortManager._matches(p, USB_UART_KEYWORDS, USB_UART_VIDS)
        ]

    @staticmethod
    def describe_port(port: Dict[str, Any]) -> str:
        """Return "stlink", "usb-uart" or "" for a port entry."""
        if SerialPortManager._matches(port, ST_KEYWORDS, (ST_VID,)):
            return "stlink"
        if SerialPortManager._matches(port, USB_UART_KEYWORDS, USB_UART_VIDS):
            return "usb-uart"
        return ""

    @staticmethod
    def test_port_connection(port_name: str, baudrate: int = 115200, timeout: float = 1.0) -> bool:
        """Test that a serial port can be opened."""
        try:
            with serial.Serial(port_name, baudrate, timeout=timeout) as ser:
                return ser.is_open
        except (serial.SerialException, OSError):
            return False

    @staticmethod
    def get_default_baudrates() -> List[int]:
        """Return baud rates the ROM bootloader auto-detects reliably."""
        return [9600, 19200, 38400, 57600, 115200]

    @staticmethod
    def get_system_info() -> Dict[str, str]:
        """Return system information."""
        return {
            "platform": platform.system(),
            "release": platform.release(),
            "architecture": platform.architecture()[0],
        }
