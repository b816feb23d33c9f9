"""Exceptions for conditions the transports cannot classify on their own."""


class SmartBurnError(Exception):
    """Base error for smartburn."""


class PortOpenError(SmartBurnError):
    """Raised when the serial port cannot be opened."""


class FrameError(SmartBurnError, ValueError):
    """Raised when a bootloader frame fails its length or checksum check."""


class FirmwareLoadError(SmartBurnError):
    """Raised when an image file cannot be read or parsed."""
