"""Worker threads package."""

from .monitor_bridge import DeviceMonitorBridge
from .upload_worker import AutoBurnWorkerThread, FlashWorkerThread

__all__ = ["AutoBurnWorkerThread", "DeviceMonitorBridge", "FlashWorkerThread"]
