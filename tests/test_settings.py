"""Tests for persisted settings."""

import json

import pytest

from smartburn.core.settings import ProgrammerConfig, SerialConfig, SettingsManager


@pytest.fixture
def config_file(tmp_path):
    return tmp_path / "settings.json"


class TestSettingsManager:
    """Test loading, saving and merging."""

    def test_defaults_without_file(self, config_file):
        settings = SettingsManager(config_file)
        assert settings.get_frequency() == 4000
        assert settings.get_boot_strategy() == "pins"
        assert settings.get_counters("stlink") == (0, 0, 0)

    def test_round_trip(self, config_file):
        settings = SettingsManager(config_file)
        settings.set_cli_path("/opt/st/bin/STM32_Programmer_CLI")
        settings.set_serial_last_port("/dev/ttyUSB0")
        settings.set_firmware_address("app", "0x08020000")
        assert settings.save_settings()

        reloaded = SettingsManager(config_file)
        assert reloaded.get_cli_path() == "/opt/st/bin/STM32_Programmer_CLI"
        assert reloaded.get_serial_last_port() == "/dev/ttyUSB0"
        assert reloaded.get_firmware_address("app") == "0x08020000"

    def test_merge_keeps_new_defaults(self, config_file):
        """Older files missing keys still get every default."""
        config_file.write_text(json.dumps({"programmer": {"frequency_khz": 1800}, "unknown": 1}))
        settings = SettingsManager(config_file)
        assert settings.get_frequency() == 1800
        assert settings.settings["programmer"]["write_timeout"] == 60.0
        assert "unknown" not in settings.settings

    def test_corrupt_file_uses_defaults(self, config_file):
        config_file.write_text("{not json")
        settings = SettingsManager(config_file)
        assert not settings.load_settings()
        assert settings.get_frequency() == 4000

    def test_counters(self, config_file):
        settings = SettingsManager(config_file)
        settings.record_result("serial", True)
        settings.record_result("serial", False)
        settings.record_result("serial", True)
        assert settings.get_counters("serial") == (3, 2, 1)
        assert settings.get_counters("stlink") == (0, 0, 0)
        settings.reset_counters("serial")
        assert settings.get_counters("serial") == (0, 0, 0)

    def test_cleanup_missing_files(self, config_file, tmp_path):
        present = tmp_path / "x_boot.bin"
        present.write_bytes(b"\x00")
        settings = SettingsManager(config_file)
        settings.set_firmware_path("boot", str(present))
        settings.set_firmware_path("app", str(tmp_path / "gone_app.bin"))
        settings.cleanup_missing_files()
        assert settings.get_firmware_path("boot") == str(present)
        assert settings.get_firmware_path("app") == ""

    def test_interval_floor(self, config_file):
        settings = SettingsManager(config_file)
        settings.set_monitor_interval(0.2)
        assert settings.get_monitor_interval() == 1.0

    def test_auto_burn_kinds(self, config_file):
        settings = SettingsManager(config_file)
        assert settings.get_auto_burn_kinds() == (True, True)
        settings.set_auto_burn_kinds(False, True)
        settings.save_settings()
        assert SettingsManager(config_file).get_auto_burn_kinds() == (False, True)

    def test_invalid_strategy(self, config_file):
        with pytest.raises(ValueError):
            SettingsManager(config_file).set_boot_strategy("jtag")


class TestTypedViews:
    """Test the config objects handed to the core."""

    def test_programmer_config(self, config_file):
        settings = SettingsManager(config_file)
        settings.set_monitor_interval(5)
        config = settings.programmer_config()
        assert isinstance(config, ProgrammerConfig)
        assert config.poll_interval == 5.0
        assert config.write_timeout == 60.0

    def test_serial_config(self, config_file):
        settings = SettingsManager(config_file)
        settings.settings["serial"]["enter_command"] = "55aa01"
        settings.set_boot_strategy("command")
        config = settings.serial_config("COM7")
        assert isinstance(config, SerialConfig)
        assert config.port == "COM7"
        assert config.parity == "E"
        assert config.enter_command == b"\x55\xaa\x01"

    def test_serial_config_uses_last_port(self, config_file):
        settings = SettingsManager(config_file)
        settings.set_serial_last_port("/dev/ttyACM0")
        assert settings.serial_config().port == "/dev/ttyACM0"


class TestPatterns:
    """Test user additions to the output pattern table."""

    def test_no_additions_by_default(self, config_file):
        assert SettingsManager(config_file).programmer_config().extra_patterns == {}

    def test_additions_survive_reload(self, config_file):
        settings = SettingsManager(config_file)
        settings.add_pattern("busy_phrases", "Sonde occupée")
        settings.settings["patterns"]["field_patterns"]["chip_type"].append(r"Modèle\s*:\s*(\w+)")
        settings.save_settings()

        extra = SettingsManager(config_file).programmer_config().extra_patterns
        assert extra["busy_phrases"] == ("Sonde occupée",)
        assert extra["field_patterns"] == {"chip_type": (r"Modèle\s*:\s*(\w+)",)}

    def test_unknown_pattern_list(self, config_file):
        with pytest.raises(ValueError):
            SettingsManager(config_file).add_pattern("failure_markers", "oops")
