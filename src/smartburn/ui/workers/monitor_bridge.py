"""Qt bridge for ConnectionMonitor notifications."""

from PySide6.QtCore import QObject, Signal

from ...core.connection_monitor import ConnectionMonitor
from ...core.models import Device


class DeviceMonitorBridge(QObject):
    """Re-emits monitor snapshots as Qt signals.

    Snapshots arrive on poll worker threads; Qt queues the signals to the
    receivers' threads.
    """

    device_changed = Signal(object)  # Device
    status_text = Signal(str)

    def __init__(self, monitor: ConnectionMonitor, parent=None):
        super().__init__(parent)
        self.monitor = monitor
        self._last = None
        monitor.subscribe(self._on_device)

    def _on_device(self, device: Device):
        self.device_changed.emit(device)
        text = device.describe()
        if text != self._last:
            self._last = text
            self.status_text.emit(text)

    def detach(self):
        """Stop receiving monitor snapshots."""
        self.monitor.unsubscribe(self._on_device)
