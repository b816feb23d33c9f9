"""ST-LINK presence and target connection checks."""

import logging
import time
from typing import Callable, Dict, Optional

from .models import ConnectionStatus, Device
from .output_classifier import DEFAULT_PATTERNS, OutputClassifier
from .settings import ProgrammerConfig
from .tool_adapter import (
    CONNECT_VARIANTS,
    DEVICE_INFO_VARIANTS,
    LIST_PROBES,
    VERIFY_CONNECTION_VARIANTS,
    ToolAdapter,
    ToolResult,
    VariantOutcome,
    find_programmer_cli,
    try_variants,
)

logger = logging.getLogger(__name__)

PRESENCE_TIMEOUT = 3.0
CONNECT_TIMEOUT = 5.0
BUSY_BACKOFF = 0.5


class ConnectionProbe:
    """Builds a Device snapshot from a cheap listing plus connect attempts."""

    def __init__(
        self,
        adapter: ToolAdapter,
        classifier: Optional[OutputClassifier] = None,
        frequency_khz: int = 4000,
        presence_timeout: float = PRESENCE_TIMEOUT,
        connect_timeout: float = CONNECT_TIMEOUT,
        busy_backoff: float = BUSY_BACKOFF,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize ConnectionProbe."""
        self.adapter = adapter
        self.classifier = classifier or OutputClassifier()
        self.frequency_khz = frequency_khz
        self.presence_timeout = presence_timeout
        self.connect_timeout = connect_timeout
        self.busy_backoff = busy_backoff
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: ProgrammerConfig, adapter: Optional[ToolAdapter] = None) -> "ConnectionProbe":
        """Build a probe from settings."""
        classifier = None
        if config.extra_patterns:
            classifier = OutputClassifier(DEFAULT_PATTERNS.extended(**config.extra_patterns))
        return cls(
            adapter or ToolAdapter(find_programmer_cli(config.cli_path)),
            classifier,
            frequency_khz=config.frequency_khz,
            presence_timeout=config.presence_timeout,
            connect_timeout=config.connect_timeout,
        )

    @property
    def params(self) -> Dict[str, str]:
        return {"freq": str(self.frequency_khz)}

    def _merge_fields(self, fields: Dict[str, str], text: str) -> Dict[str, str]:
        """Fill empty fields from text, keeping values already found."""
        found = self.classifier.extract_fields(text)
        return {name: fields.get(name) or found.get(name, "") for name in found}

    def _has_link(self, result: ToolResult) -> bool:
        return self.classifier.has_link_evidence(result.output)

    def probe(self) -> Device:
        """Check for a probe and, if one is attached, for a target chip."""
        if not self.adapter.is_available():
            return Device(
                status=ConnectionStatus.ERROR,
                error_message=f"STM32_Programmer_CLI not found: {self.adapter.executable}",
            )

        listing = self.adapter.invoke(list(LIST_PROBES), self.presence_timeout)
        if listing.not_found:
            return Device(status=ConnectionStatus.ERROR, error_message="STM32_Programmer_CLI could not be started")
        if listing.timed_out:
            return Device(error_message="Probe listing timed out")
        if not self._has_link(listing):
            return Device(error_message="No ST-LINK detected")

        fields = self._merge_fields({}, listing.output)
        outcome = try_variants(
            self.adapter,
            CONNECT_VARIANTS,
            self.params,
            self.connect_timeout,
            accept=self._has_link,
            busy=lambda r: self.classifier.is_busy(r.output),
            busy_backoff=self.busy_backoff,
            sleep=self._sleep,
        )
        if not outcome.accepted:
            last = outcome.result
            if outcome.all_timed_out:
                reason = "every connect attempt timed out"
            elif last is not None and self.classifier.is_busy(last.output):
                reason = "probe is busy"
            else:
                reason = "no connect variant reported a link"
            logger.info("ST-LINK listed but %s", reason)
            return Device(error_message=f"ST-LINK listed but {reason}")

        logger.debug("Connected using variant '%s'", outcome.winner.name)
        fields = self._merge_fields(fields, outcome.result.output)
        if not (fields["chip_id"] or fields["chip_type"]):
            fields = self._merge_fields(fields, self.read_device_info())

        chip_connected = bool(fields["chip_id"] or fields["chip_type"])
        if not chip_connected:
            logger.info("ST-LINK connected but the target chip did not answer")
        return Device(status=ConnectionStatus.CONNECTED, chip_connected=chip_connected, **fields)

    def read_device_info(self) -> str:
        """Run the supplementary device-info query and return its output."""
        outcome = try_variants(
            self.adapter,
            DEVICE_INFO_VARIANTS,
            self.params,
            self.connect_timeout,
            accept=lambda r: self.classifier.has_chip_info(r.output),
            sleep=self._sleep,
        )
        return outcome.result.output if outcome.result is not None else ""

    def verify_connection(self) -> VariantOutcome:
        """Cheap connect-only re-check used before destructive steps."""
        return try_variants(
            self.adapter,
            VERIFY_CONNECTION_VARIANTS,
            self.params,
            self.connect_timeout,
            accept=lambda r: r.succeeded and not self.classifier.has_negative_phrase(r.output),
            sleep=self._sleep,
        )
