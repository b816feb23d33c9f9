"""Tests for ST-LINK presence and connection checks."""

from conftest import NO_STLINK, STLINK_CONNECTED, STLINK_LISTING, FakeAdapter, failed, ok, timed_out

from smartburn.core.connection_probe import ConnectionProbe
from smartburn.core.models import ConnectionStatus
from smartburn.core.settings import ProgrammerConfig
from smartburn.core.tool_adapter import ToolResult


def make_probe(script, available=True, sleep=None):
    adapter = FakeAdapter(script, available)
    return ConnectionProbe(adapter, sleep=sleep or (lambda s: None)), adapter


class TestProbe:
    """Test Device snapshots built by probe()."""

    def test_no_link_skips_connect_variants(self):
        """Without link evidence only the listing runs."""
        probe, adapter = make_probe(lambda args: ok(NO_STLINK))
        device = probe.probe()
        assert device.status is ConnectionStatus.DISCONNECTED
        assert not device.is_connected
        assert adapter.calls == [["-l"]]

    def test_connected_with_chip(self):
        def script(args):
            if args == ["-l"]:
                return ok(STLINK_LISTING)
            return ok(STLINK_CONNECTED)

        probe, adapter = make_probe(script)
        device = probe.probe()
        assert device.status is ConnectionStatus.CONNECTED
        assert device.chip_connected
        assert device.ready_to_program
        assert device.serial_number == "066DFF515055657867173838"
        assert device.chip_id == "0x413"
        assert adapter.calls[1] == ["-c", "port=SWD", "freq=4000"]

    def test_falls_back_to_device_info(self):
        """Chip fields missing from the connect report come from mode=UR."""

        def script(args):
            if "mode=UR" in args:
                return ok(STLINK_CONNECTED)
            return ok(STLINK_LISTING)

        probe, adapter = make_probe(script)
        device = probe.probe()
        assert device.chip_connected
        assert device.chip_type.startswith("STM32F405")
        assert adapter.calls_with("mode=UR")

    def test_probe_without_target(self):
        probe, _ = make_probe(lambda args: ok(STLINK_LISTING))
        device = probe.probe()
        assert device.is_connected
        assert not device.chip_connected
        assert not device.ready_to_program

    def test_connect_variants_fall_through(self):
        """A failing first spelling moves on to the next one."""

        def script(args):
            if args == ["-l"]:
                return ok(STLINK_LISTING)
            if "freq=4000" in args and "-c" in args:
                return failed("Error: Unable to get core ID")
            return ok(STLINK_CONNECTED)

        probe, adapter = make_probe(script)
        assert probe.probe().is_connected
        assert ["--connect", "port=SWD", "freq=4000"] in adapter.calls

    def test_all_connects_time_out(self):
        """The list-only fallback still reports the probe, without a target."""
        probe, adapter = make_probe(lambda args: ok(STLINK_LISTING) if args == ["-l"] else timed_out())
        device = probe.probe()
        assert device.status is ConnectionStatus.CONNECTED
        assert not device.chip_connected
        assert adapter.calls[-2] == ["-l"]
        assert "mode=UR" in adapter.calls[-1]

    def test_disconnected_when_every_connect_fails(self):
        """Only the first listing answers; every connect variant times out."""
        replies = iter([ok(STLINK_LISTING)])
        probe, adapter = make_probe(lambda args: next(replies, timed_out()))
        device = probe.probe()
        assert device.status is ConnectionStatus.DISCONNECTED
        assert "timed out" in device.error_message
        assert len(adapter.calls) == 6

    def test_tool_unavailable(self):
        probe, adapter = make_probe(lambda args: ok(), available=False)
        device = probe.probe()
        assert device.status is ConnectionStatus.ERROR
        assert adapter.calls == []

    def test_tool_cannot_start(self):
        probe, _ = make_probe(lambda args: ToolResult(not_found=True))
        assert probe.probe().status is ConnectionStatus.ERROR

    def test_listing_timeout(self):
        probe, _ = make_probe(lambda args: timed_out())
        device = probe.probe()
        assert device.status is ConnectionStatus.DISCONNECTED
        assert "timed out" in device.error_message


class TestVerifyConnection:
    """Test the pre-erase connection check."""

    def test_accepts_clean_exit(self):
        probe, _ = make_probe(lambda args: ok(STLINK_CONNECTED))
        assert probe.verify_connection().accepted

    def test_rejects_negative_phrase(self):
        probe, _ = make_probe(lambda args: ok("Error: No STM32 target found!"))
        assert not probe.verify_connection().accepted


def test_from_config_uses_frequency():
    config = ProgrammerConfig(frequency_khz=1800, connect_timeout=7.0)
    probe = ConnectionProbe.from_config(config, adapter=FakeAdapter(lambda args: ok()))
    assert probe.params == {"freq": "1800"}
    assert probe.connect_timeout == 7.0


def test_from_config_extends_patterns():
    """Configured phrases are recognised alongside the built-in ones."""
    config = ProgrammerConfig(extra_patterns={"no_link_phrases": ("Aucune sonde",)})
    probe = ConnectionProbe.from_config(config, adapter=FakeAdapter(lambda args: ok()))
    assert probe.classifier.has_negative_phrase("Aucune sonde ST-LINK")
    assert probe.classifier.has_negative_phrase("No ST-LINK detected")
