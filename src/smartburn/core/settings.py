"""Settings management module."""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from .path_utils import get_application_path

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = ".smartburn_config.json"

BOOT_STRATEGIES = ("pins", "command")
TRANSPORTS = ("stlink", "serial")


@dataclass(frozen=True)
class ProgrammerConfig:
    """Options for the ST-LINK transport."""

    cli_path: str = ""
    frequency_khz: int = 4000
    presence_timeout: float = 3.0
    connect_timeout: float = 5.0
    write_timeout: float = 60.0
    erase_timeout: float = 30.0
    settle_delay: float = 2.0
    poll_interval: float = 3.0
    # Extra classifier phrases, keyed by PatternTable field name
    extra_patterns: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SerialConfig:
    """Options for the USART bootloader transport.

    8E1 framing is what the ROM bootloader expects; the other values are
    wiring- and board-specific.
    """

    port: str = ""
    baud_rate: int = 115200
    bytesize: int = 8
    parity: str = "E"
    stopbits: int = 1
    timeout: float = 1.0
    boot_strategy: str = "pins"
    enter_command: bytes = b""
    erase_timeout: float = 30.0
    go_timeout: float = 1.0
    sync_attempts: int = 3
    verify: bool = False
    boot_active_high: bool = True

    def __post_init__(self):
        if self.boot_strategy not in BOOT_STRATEGIES:
            raise ValueError(f"Unknown boot strategy '{self.boot_strategy}', expected one of {BOOT_STRATEGIES}")
        if self.boot_strategy == "command" and not self.enter_command:
            raise ValueError("The 'command' boot strategy needs enter_command bytes")


class SettingsManager:
    """Manages application settings and configuration."""

    def __init__(self, config_file: Optional[Union[str, Path]] = None):
        """Initialize settings manager.

        Args:
            config_file: JSON file to use; defaults to one next to the application.
        """
        self.config_file = Path(config_file) if config_file else get_application_path() / CONFIG_FILE_NAME
        self.settings = self._load_default_settings()
        self.load_settings()

    def _load_default_settings(self) -> Dict[str, Any]:
        """Load default settings."""
        return {
            "version": "1.0",
            "programmer": {
                "cli_path": "",
                "frequency_khz": 4000,
                "presence_timeout": 3.0,
                "connect_timeout": 5.0,
                "write_timeout": 60.0,
                "erase_timeout": 30.0,
                "settle_delay": 2.0,
            },
            "monitor": {"enabled": True, "interval": 3.0},
            # Appended to the built-in output patterns for other CLI versions or locales
            "patterns": {
                "vendor_tokens": [],
                "link_evidence_patterns": [],
                "no_link_phrases": [],
                "busy_phrases": [],
                "chip_info_phrases": [],
                "success_markers": [],
                "verified_markers": [],
                "reset_markers": [],
                "field_patterns": {"serial_number": [], "firmware_version": [], "chip_id": [], "chip_type": []},
            },
            "serial": {
                "last_port": "",
                "baud_rate": 115200,
                "bytesize": 8,
                "parity": "E",
                "stopbits": 1,
                "timeout": 1.0,
                "boot_strategy": "pins",  # pins or command
                "enter_command": "",  # hex string, e.g. "55aa01"
                "erase_timeout": 30.0,
                "go_timeout": 1.0,
                "verify": False,
                "boot_active_high": True,
            },
            "firmware": {
                "search_dir": "",
                "boot_path": "",
                "app_path": "",
                "boot_address": "0x08000000",
                "app_address": "0x08010000",
            },
            "auto_burn": {"flash_boot": True, "flash_app": True},
            "counters": {
                "stlink": {"total": 0, "pass": 0, "fail": 0},
                "serial": {"total": 0, "pass": 0, "fail": 0},
            },
        }

    def load_settings(self) -> bool:
        """Load settings from file."""
        try:
            if self.config_file.exists():
                with open(self.config_file, "r", encoding="utf-8") as f:
                    loaded_settings = json.load(f)
                    # Merge with defaults to ensure all keys exist
                    self._merge_settings(self.settings, loaded_settings)
                return True
        except (json.JSONDecodeError, PermissionError, OSError) as e:
            # If loading fails, keep default settings
            logger.warning("Could not load %s, using defaults: %s", self.config_file, e)
        return False

    def save_settings(self) -> bool:
        """Save settings to file."""
        try:
            # Create parent directory if it doesn't exist
            self.config_file.parent.mkdir(parents=True, exist_ok=True)

            with open(self.config_file, "w", encoding="utf-8") as f:
                json.dump(self.settings, f, indent=2, ensure_ascii=False)
            return True
        except (PermissionError, OSError) as e:
            logger.error("Could not save settings to %s: %s", self.config_file, e)
            return False

    def _merge_settings(self, target: Dict[str, Any], source: Dict[str, Any]):
        """Merge source settings into target, preserving structure."""
        for key, value in source.items():
            if key in target:
                if isinstance(target[key], dict) and isinstance(value, dict):
                    self._merge_settings(target[key], value)
                else:
                    target[key] = value

    # Typed views consumed by the core
    def programmer_config(self) -> ProgrammerConfig:
        """Build the ST-LINK transport options."""
        p = self.settings["programmer"]
        return ProgrammerConfig(
            cli_path=p["cli_path"],
            frequency_khz=int(p["frequency_khz"]),
            presence_timeout=float(p["presence_timeout"]),
            connect_timeout=float(p["connect_timeout"]),
            write_timeout=float(p["write_timeout"]),
            erase_timeout=float(p["erase_timeout"]),
            settle_delay=float(p["settle_delay"]),
            poll_interval=float(self.settings["monitor"]["interval"]),
            extra_patterns=self.extra_patterns(),
        )

    def extra_patterns(self) -> Dict[str, Any]:
        """Non-empty user additions to the output pattern table."""
        extra: Dict[str, Any] = {}
        for name, values in self.settings["patterns"].items():
            if name == "field_patterns":
                fields = {key: tuple(patterns) for key, patterns in values.items() if patterns}
                if fields:
                    extra[name] = fields
            elif values:
                extra[name] = tuple(values)
        return extra

    def add_pattern(self, name: str, value: str):
        """Append one phrase or regex to a pattern list, e.g. "busy_phrases"."""
        patterns = self.settings["patterns"]
        if name not in patterns or name == "field_patterns":
            raise ValueError(f"Unknown pattern list: {name}")
        if value not in patterns[name]:
            patterns[name].append(value)

    def serial_config(self, port: Optional[str] = None) -> SerialConfig:
        """Build the serial bootloader options, optionally for another port."""
        s = self.settings["serial"]
        return SerialConfig(
            port=port if port is not None else s["last_port"],
            baud_rate=int(s["baud_rate"]),
            bytesize=int(s["bytesize"]),
            parity=s["parity"],
            stopbits=int(s["stopbits"]),
            timeout=float(s["timeout"]),
            boot_strategy=s["boot_strategy"],
            enter_command=bytes.fromhex(s["enter_command"]),
            erase_timeout=float(s["erase_timeout"]),
            go_timeout=float(s["go_timeout"]),
            verify=bool(s["verify"]),
            boot_active_high=bool(s["boot_active_high"]),
        )

    # Programmer settings
    def get_cli_path(self) -> str:
        """Get the configured STM32_Programmer_CLI path."""
        return self.settings["programmer"]["cli_path"]

    def set_cli_path(self, path: str):
        """Set the STM32_Programmer_CLI path."""
        self.settings["programmer"]["cli_path"] = path

    def get_frequency(self) -> int:
        """Get SWD frequency in kHz."""
        return self.settings["programmer"]["frequency_khz"]

    def set_frequency(self, khz: int):
        """Set SWD frequency in kHz."""
        self.settings["programmer"]["frequency_khz"] = max(1, khz)

    # Monitor settings
    def get_monitor_enabled(self) -> bool:
        """Get automatic connection monitoring setting."""
        return self.settings["monitor"]["enabled"]

    def set_monitor_enabled(self, enabled: bool):
        """Set automatic connection monitoring setting."""
        self.settings["monitor"]["enabled"] = enabled

    def get_monitor_interval(self) -> float:
        """Get polling interval in seconds."""
        return self.settings["monitor"]["interval"]

    def set_monitor_interval(self, seconds: float):
        """Set polling interval in seconds (at least 1s)."""
        self.settings["monitor"]["interval"] = max(1.0, seconds)

    # Serial settings
    def get_serial_last_port(self) -> str:
        """Get last serial bootloader port."""
        return self.settings["serial"]["last_port"]

    def set_serial_last_port(self, port: str):
        """Set last serial bootloader port."""
        self.settings["serial"]["last_port"] = port

    def get_serial_baud_rate(self) -> int:
        """Get serial bootloader baud rate."""
        return self.settings["serial"]["baud_rate"]

    def set_serial_baud_rate(self, baud_rate: int):
        """Set serial bootloader baud rate."""
        self.settings["serial"]["baud_rate"] = baud_rate

    def get_boot_strategy(self) -> str:
        """Get bootloader entry strategy."""
        return self.settings["serial"]["boot_strategy"]

    def set_boot_strategy(self, strategy: str):
        """Set bootloader entry strategy ("pins" or "command")."""
        if strategy not in BOOT_STRATEGIES:
            raise ValueError(f"Unknown boot strategy: {strategy}")
        self.settings["serial"]["boot_strategy"] = strategy

    # Firmware settings
    def get_firmware_path(self, kind: str) -> str:
        """Get last firmware path for "boot" or "app"."""
        return self.settings["firmware"][f"{kind}_path"]

    def set_firmware_path(self, kind: str, path: str):
        """Set last firmware path for "boot" or "app"."""
        self.settings["firmware"][f"{kind}_path"] = path

    def get_firmware_address(self, kind: str) -> str:
        """Get flash address for "boot" or "app"."""
        return self.settings["firmware"][f"{kind}_address"]

    def set_firmware_address(self, kind: str, address: str):
        """Set flash address for "boot" or "app"."""
        self.settings["firmware"][f"{kind}_address"] = address

    def get_search_dir(self) -> str:
        """Get the firmware search directory."""
        return self.settings["firmware"]["search_dir"]

    def set_search_dir(self, path: str):
        """Set the firmware search directory."""
        self.settings["firmware"]["search_dir"] = path

    # Auto-burn settings
    def get_auto_burn_kinds(self) -> Tuple[bool, bool]:
        """Get whether auto-burn flashes the (boot, app) images."""
        auto = self.settings["auto_burn"]
        return bool(auto["flash_boot"]), bool(auto["flash_app"])

    def set_auto_burn_kinds(self, flash_boot: bool, flash_app: bool):
        """Set which images auto-burn flashes."""
        self.settings["auto_burn"] = {"flash_boot": flash_boot, "flash_app": flash_app}

    # Validation helpers
    def validate_file_exists(self, filepath: str) -> bool:
        """Check if file exists."""
        return bool(filepath and Path(filepath).exists())

    def cleanup_missing_files(self):
        """Remove missing files from settings."""
        for kind in ("boot", "app"):
            path = self.get_firmware_path(kind)
            if path and not self.validate_file_exists(path):
                logger.info("Forgetting missing %s firmware: %s", kind, path)
                self.set_firmware_path(kind, "")

    # Programming counters
    def get_counters(self, transport: str) -> Tuple[int, int, int]:
        """Get programming counters for a transport.

        Args:
            transport: "stlink" or "serial"

        Returns:
            Tuple of (total, pass, fail)
        """
        key = transport.lower()
        if key not in self.settings["counters"]:
            return (0, 0, 0)

        counters = self.settings["counters"][key]
        return (
            counters.get("total", 0),
            counters.get("pass", 0),
            counters.get("fail", 0),
        )

    def set_counters(self, transport: str, total: int, passed: int, failed: int):
        """Set programming counters for a transport."""
        self.settings["counters"][transport.lower()] = {
            "total": total,
            "pass": passed,
            "fail": failed,
        }

    def record_result(self, transport: str, success: bool):
        """Count one programming attempt."""
        total, passed, failed = self.get_counters(transport)
        if success:
            self.set_counters(transport, total + 1, passed + 1, failed)
        else:
            self.set_counters(transport, total + 1, passed, failed + 1)

    def reset_counters(self, transport: str):
        """Reset all counters for a transport to zero."""
        self.set_counters(transport, 0, 0, 0)
