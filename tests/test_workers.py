"""Tests for the Qt worker threads and the monitor bridge."""

import logging

import pytest

pytest.importorskip("PySide6")

from smartburn.core.firmware import FirmwareImage  # noqa: E402
from smartburn.core.log_events import LOGGER_NAME  # noqa: E402
from smartburn.core.models import ConnectionStatus, Device, ErrorKind, FirmwareKind, ProgramResult  # noqa: E402
from smartburn.ui.workers import AutoBurnWorkerThread, DeviceMonitorBridge, FlashWorkerThread  # noqa: E402


class FakeMonitor:
    def __init__(self):
        self.callbacks = []

    def subscribe(self, callback):
        self.callbacks.append(callback)

    def unsubscribe(self, callback):
        self.callbacks.remove(callback)

    def publish(self, device):
        for callback in list(self.callbacks):
            callback(device)


class TestFlashWorkerThread:
    """Test job execution and signal emission."""

    def test_emits_progress_logs_and_result(self, qt_app):
        def job(progress):
            logging.getLogger(LOGGER_NAME + ".job").info("writing block")
            progress(50)
            progress(100)
            return ProgramResult.ok("done", verified=True)

        worker = FlashWorkerThread(job, "test job")
        progress, logs, results = [], [], []
        worker.progress_update.connect(lambda value: progress.append(value))
        worker.log_message.connect(lambda level, message: logs.append((level, message)))
        worker.result_ready.connect(lambda result: results.append(result))

        worker.run()

        assert progress == [50, 100]
        assert ("INFO", "writing block") in logs
        assert results[0].success and results[0].verified

    def test_job_exception_becomes_failure(self, qt_app):
        def job(progress):
            raise RuntimeError("driver crashed")

        worker = FlashWorkerThread(job)
        results = []
        worker.result_ready.connect(lambda result: results.append(result))
        worker.run()
        assert results[0].error_kind is ErrorKind.UNKNOWN_FAILURE
        assert "driver crashed" in results[0].message

    def test_log_handler_detached(self, qt_app):
        handlers_before = list(logging.getLogger(LOGGER_NAME).handlers)
        FlashWorkerThread(lambda progress: ProgramResult.ok("done")).run()
        assert logging.getLogger(LOGGER_NAME).handlers == handlers_before

    def test_verify_worker(self, qt_app, tmp_path):
        class StubOrchestrator:
            def verify(self, image, progress=None, quick=False):
                progress(100)
                return ProgramResult.ok(f"quick={quick}", verified=True)

        path = tmp_path / "a_app.bin"
        path.write_bytes(b"\x00" * 8)
        image = FirmwareImage.from_path(path, FirmwareKind.APP)
        worker = FlashWorkerThread.verify(StubOrchestrator(), image, quick=True)
        results = []
        worker.result_ready.connect(lambda result: results.append(result))
        worker.run()
        assert worker.description == "ST-LINK verify a_app.bin"
        assert results[0].message == "quick=True"


class TestDeviceMonitorBridge:
    """Test re-emission of monitor snapshots."""

    def test_status_text_only_on_change(self, qt_app):
        monitor = FakeMonitor()
        bridge = DeviceMonitorBridge(monitor)
        devices, texts = [], []
        bridge.device_changed.connect(lambda device: devices.append(device))
        bridge.status_text.connect(lambda text: texts.append(text))

        connected = Device(status=ConnectionStatus.CONNECTED, serial_number="ABC")
        monitor.publish(connected)
        monitor.publish(connected)
        monitor.publish(Device())

        assert len(devices) == 3
        assert texts == [connected.describe(), "ST-LINK not connected"]

    def test_detach(self, qt_app):
        monitor = FakeMonitor()
        bridge = DeviceMonitorBridge(monitor)
        bridge.detach()
        assert monitor.callbacks == []


class StubSession:
    def __init__(self, on_board=None, on_device=None, on_progress=None):
        self.on_board = on_board
        self.on_device = on_device
        self.on_progress = on_progress
        self.stopped = False

    def run(self):
        self.on_device(Device())
        self.on_progress(40)
        self.on_board(1, [ProgramResult.ok("written")])
        self.on_board(2, [ProgramResult.failure(ErrorKind.WRITE_FAILED, "write failed")])
        return "stats"

    def stop(self):
        self.stopped = True


class TestAutoBurnWorkerThread:
    """Test signal wiring for the production loop."""

    def test_board_and_session_signals(self, qt_app):
        worker = AutoBurnWorkerThread(StubSession)
        boards, finished, progress = [], [], []
        worker.board_finished.connect(lambda number, ok, message: boards.append((number, ok, message)))
        worker.session_finished.connect(lambda stats: finished.append(stats))
        worker.progress_update.connect(lambda value: progress.append(value))

        worker.run()

        assert boards == [(1, True, "written"), (2, False, "write failed")]
        assert finished == ["stats"]
        assert progress == [40]

    def test_request_stop(self, qt_app):
        worker = AutoBurnWorkerThread(StubSession)
        worker.request_stop()
        assert worker.session.stopped
