"""Shared fakes for the programmer CLI and the serial port."""

from typing import Callable, List, Optional, Sequence

import pytest

from smartburn.core.tool_adapter import ToolResult

STLINK_LISTING = """
-------------------------------------------------------------------
                      STM32CubeProgrammer v2.15.0
-------------------------------------------------------------------

=====  DFU Interface   =====

No STM32 device in DFU mode connected

===== STLink Interface =====

-------- Connected ST-LINK Probes List --------

ST-Link Probe 0 :
   ST-LINK SN  : 066DFF515055657867173838
   ST-LINK FW  : V2J40M27
   Access Port Number  : 0
-----------------------------------------------------------------
"""

STLINK_CONNECTED = STLINK_LISTING + """
ST-LINK SN  : 066DFF515055657867173838
ST-LINK FW  : V2J40M27
Board       : --
Voltage     : 3.24V
SWD freq    : 4000 KHz
Connect mode: Normal
Reset mode  : Software reset
Device ID   : 0x413
Device name : STM32F405xx/F407xx/F415xx/F417xx
Flash size  : 1 MBytes
Device type : MCU
Device CPU  : Cortex-M4
"""

NO_STLINK = """
===== STLink Interface =====
Error: No ST-LINK detected!
"""

WRITE_OK = """
Memory Programming ...
Opening and parsing file: app.bin
  File          : app.bin
  Size          : 48.00 KB
  Address       : 0x08010000

Download in Progress:
File download complete
Time elapsed during download operation: 00:00:01.512

Verifying ...
Download verified successfully
"""

ERASE_OK = """
Mass erase ...
Mass erase successfully achieved
"""


def ok(stdout: str = "") -> ToolResult:
    return ToolResult(stdout, "", 0)


def failed(stdout: str = "", exit_code: int = 1) -> ToolResult:
    return ToolResult(stdout, "", exit_code)


def timed_out() -> ToolResult:
    return ToolResult(timed_out=True)


class FakeAdapter:
    """Stands in for ToolAdapter; answers from a script function."""

    def __init__(self, script: Callable[[List[str]], ToolResult], available: bool = True):
        self.script = script
        self.available = available
        self.executable = "STM32_Programmer_CLI"
        self.calls: List[List[str]] = []

    def is_available(self) -> bool:
        return self.available

    def invoke(self, args: Sequence[str], timeout: float) -> ToolResult:
        args = list(args)
        self.calls.append(args)
        return self.script(args)

    def calls_with(self, flag: str) -> List[List[str]]:
        return [call for call in self.calls if flag in call]


class FakeSerial:
    """In-memory serial port.

    Replies are queued with feed(); read() returns what is queued, up to
    the requested count, and records the timeout in force at each read.
    """

    def __init__(self, port: str = "COM3", timeout: float = 1.0, **kwargs):
        self.port = port
        self.timeout = timeout
        self.kwargs = kwargs
        self.is_open = True
        self.rts = False
        self.dtr = False
        self.written: List[bytes] = []
        self.read_timeouts: List[Optional[float]] = []
        self.input_resets = 0
        self._rx = bytearray()

    def feed(self, *chunks) -> "FakeSerial":
        for chunk in chunks:
            self._rx.extend(bytes([chunk]) if isinstance(chunk, int) else chunk)
        return self

    def read(self, size: int = 1) -> bytes:
        self.read_timeouts.append(self.timeout)
        data = bytes(self._rx[:size])
        del self._rx[:size]
        return data

    def write(self, data: bytes) -> int:
        self.written.append(bytes(data))
        return len(data)

    def flush(self):
        pass

    def reset_input_buffer(self):
        self.input_resets += 1

    def reset_output_buffer(self):
        pass

    def close(self):
        self.is_open = False


@pytest.fixture
def fake_serial():
    return FakeSerial()


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested delays."""
    delays: List[float] = []
    delays_append = delays.append

    def sleep(seconds: float):
        delays_append(seconds)

    sleep.delays = delays
    return sleep


@pytest.fixture(scope="session")
def qt_app():
    """A QCoreApplication for signal tests."""
    from PySide6.QtCore import QCoreApplication

    app = QCoreApplication.instance() or QCoreApplication([])
    yield app
