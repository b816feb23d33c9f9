"""Tests for the automatic production loop."""

import pytest

from smartburn.core.auto_burn import AutoBurnSession
from smartburn.core.firmware import FirmwareImage
from smartburn.core.models import ConnectionStatus, Device, ErrorKind, FirmwareKind, ProgramResult

READY = Device(status=ConnectionStatus.CONNECTED, serial_number="1", chip_id="0x413", chip_connected=True)
ABSENT = Device(status=ConnectionStatus.CONNECTED, serial_number="1")


class ScriptedProbe:
    """Returns devices from a list, then stops the session."""

    def __init__(self, devices):
        self.devices = list(devices)
        self.session = None

    def probe(self):
        if self.devices:
            return self.devices.pop(0)
        self.session.stop()
        return ABSENT


class FakeOrchestrator:
    settle_delay = 2.0

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = 0

    def program_all(self, boot, app, progress=None):
        self.calls += 1
        success = self.outcomes.pop(0) if self.outcomes else True
        if success:
            return [ProgramResult.ok("written")]
        return [ProgramResult.failure(ErrorKind.WRITE_FAILED, "write failed")]


class RecordingMonitor:
    def __init__(self):
        self.events = []

    def pause(self):
        self.events.append("pause")
        return True

    def resume(self, settle_delay=0.0):
        self.events.append(("resume", settle_delay))


class BusyMonitor(RecordingMonitor):
    """A monitor whose in-flight poll never finishes in time."""

    def pause(self):
        super().pause()
        return False


@pytest.fixture
def app_image(tmp_path):
    path = tmp_path / "line_app.bin"
    path.write_bytes(b"\x00" * 16)
    return FirmwareImage.from_path(path, FirmwareKind.APP)


def make_session(devices, app_image, orchestrator=None, **kwargs):
    probe = ScriptedProbe(devices)
    session = AutoBurnSession(orchestrator or FakeOrchestrator(), probe, app=app_image, poll_interval=0, **kwargs)
    probe.session = session
    return session


class TestAutoBurnSession:
    """Test board detection and counting."""

    def test_flashes_each_board_once(self, app_image):
        """A board that stays connected is not flashed twice."""
        orchestrator = FakeOrchestrator()
        session = make_session([READY, READY, ABSENT, READY], app_image, orchestrator)
        stats = session.run()
        assert orchestrator.calls == 2
        assert stats.boards == 2
        assert stats.passed == 2

    def test_counts_failures(self, app_image):
        boards = []
        session = make_session(
            [READY, ABSENT, READY],
            app_image,
            FakeOrchestrator([False, True]),
            on_board=lambda number, results: boards.append((number, results[-1].success)),
        )
        stats = session.run()
        assert (stats.passed, stats.failed) == (1, 1)
        assert boards == [(1, False), (2, True)]

    def test_max_boards(self, app_image):
        orchestrator = FakeOrchestrator()
        session = make_session([READY, ABSENT, READY, ABSENT, READY], app_image, orchestrator, max_boards=2)
        stats = session.run()
        assert stats.boards == 2
        assert orchestrator.calls == 2
        assert not session.stop_requested

    def test_stop_before_run(self, app_image):
        orchestrator = FakeOrchestrator()
        session = make_session([READY], app_image, orchestrator)
        session.stop()
        assert session.run().boards == 0
        assert orchestrator.calls == 0

    def test_monitor_held_paused(self, app_image):
        monitor = RecordingMonitor()
        session = make_session([READY], app_image, monitor=monitor)
        session.run()
        assert monitor.events == ["pause", ("resume", 2.0)]

    def test_not_started_while_connection_check_runs(self, app_image):
        monitor = BusyMonitor()
        orchestrator = FakeOrchestrator()
        session = make_session([READY], app_image, orchestrator, monitor=monitor)
        assert session.run().boards == 0
        assert orchestrator.calls == 0
        assert monitor.events == ["pause", ("resume", 0.0)]

    def test_device_callback(self, app_image):
        seen = []
        session = make_session([ABSENT, READY], app_image, on_device=seen.append)
        session.run()
        assert seen[:2] == [ABSENT, READY]

    def test_needs_an_image(self):
        with pytest.raises(ValueError):
            AutoBurnSession(FakeOrchestrator(), ScriptedProbe([]))
