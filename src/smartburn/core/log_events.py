"""Forward smartburn log records to GUI or CLI collaborators."""

import logging
from typing import Callable

LOGGER_NAME = "smartburn"

LogCallback = Callable[[str, str], None]


class CallbackLogHandler(logging.Handler):
    """Sends (level_name, message) pairs to a callback."""

    def __init__(self, callback: LogCallback, level: int = logging.INFO):
        super().__init__(level)
        self.callback = callback
        self.setFormatter(logging.Formatter("%(message)s"))

    def emit(self, record: logging.LogRecord):
        try:
            self.callback(record.levelname, self.format(record))
        except Exception:
            self.handleError(record)


def attach_callback(callback: LogCallback, level: int = logging.INFO) -> CallbackLogHandler:
    """Attach a callback to the package logger and return its handler."""
    handler = CallbackLogHandler(callback, level)
    root = logging.getLogger(LOGGER_NAME)
    root.addHandler(handler)
    if root.level == logging.NOTSET or root.level > level:
        root.setLevel(level)
    return handler


def detach_callback(handler: logging.Handler):
    """Remove a handler added by attach_callback()."""
    logging.getLogger(LOGGER_NAME).removeHandler(handler)
