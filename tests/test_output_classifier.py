"""Tests for programmer output classification."""

from conftest import ERASE_OK, NO_STLINK, STLINK_CONNECTED, STLINK_LISTING, WRITE_OK

from smartburn.core.models import ErrorKind
from smartburn.core.output_classifier import OutputClassifier, PatternTable


class TestLinkEvidence:
    """Test probe presence detection."""

    def setup_method(self):
        self.classifier = OutputClassifier()

    def test_listing_with_serial_is_a_link(self):
        """Vendor token plus a serial number proves a probe."""
        assert self.classifier.has_link_evidence(STLINK_LISTING)

    def test_negative_phrase_wins(self):
        """An explicit "no probe" phrase beats positive tokens."""
        text = STLINK_LISTING + "\nError: No ST-LINK detected!"
        assert self.classifier.has_negative_phrase(text)
        assert not self.classifier.has_link_evidence(text)

    def test_vendor_token_alone_is_not_enough(self):
        """A banner without serial or version is not evidence."""
        assert not self.classifier.has_link_evidence("===== STLink Interface =====")

    def test_empty_and_none(self):
        """Missing output never raises."""
        assert not self.classifier.has_link_evidence("")
        assert not self.classifier.has_link_evidence(None)
        assert self.classifier.extract_field(None, "chip_id") == ""

    def test_no_stlink_output(self):
        assert not self.classifier.has_link_evidence(NO_STLINK)

    def test_busy(self):
        assert self.classifier.is_busy("Error: ST-LINK is busy, retry later")
        assert not self.classifier.is_busy(STLINK_LISTING)


class TestFieldExtraction:
    """Test device field parsing."""

    def test_connected_fields(self):
        """Serial, firmware and chip fields come from a connect report."""
        fields = OutputClassifier().extract_fields(STLINK_CONNECTED)
        assert fields["serial_number"] == "066DFF515055657867173838"
        assert fields["firmware_version"] == "V2J40M27"
        assert fields["chip_id"] == "0x413"
        assert fields["chip_type"] == "STM32F405xx/F407xx/F415xx/F417xx"

    def test_listing_has_no_chip(self):
        """A probe listing alone does not identify a target."""
        fields = OutputClassifier().extract_fields(STLINK_LISTING)
        assert fields["serial_number"] == "066DFF515055657867173838"
        assert fields["chip_id"] == ""
        assert fields["chip_type"] == ""

    def test_chip_info_phrase(self):
        classifier = OutputClassifier()
        assert classifier.has_chip_info(STLINK_CONNECTED)
        assert not classifier.has_chip_info(STLINK_LISTING)


class TestClassifyProgram:
    """Test write/erase verdicts."""

    def setup_method(self):
        self.classifier = OutputClassifier()

    def test_verified_write(self):
        verdict = self.classifier.classify_program(WRITE_OK, "", 0)
        assert verdict.success
        assert verdict.verified
        assert verdict.success_marker == "Download verified successfully"

    def test_erase_success(self):
        verdict = self.classifier.classify_program(ERASE_OK, "", 0)
        assert verdict.success
        assert not verdict.verified

    def test_error_marker_beats_success_marker(self):
        """Output with both markers is a failure."""
        stdout = "File download complete\nError: Download verification failed"
        verdict = self.classifier.classify_program(stdout, "", 0)
        assert not verdict.success
        assert verdict.error_kind is ErrorKind.VERIFY_FAILED

    def test_marker_in_stderr(self):
        verdict = self.classifier.classify_program(WRITE_OK, "failed to configure debug port", 0)
        assert not verdict.success
        assert verdict.error_kind is ErrorKind.CONNECT_FAILED

    def test_nonzero_exit_without_message(self):
        """A non-zero exit is never a success."""
        verdict = self.classifier.classify_program("Successfully", "", 3)
        assert not verdict.success
        assert verdict.error_kind is ErrorKind.UNKNOWN_FAILURE

    def test_nonzero_exit_uses_requested_kind(self):
        verdict = self.classifier.classify_program("", "", 1, failure_kind=ErrorKind.ERASE_FAILED)
        assert verdict.error_kind is ErrorKind.ERASE_FAILED

    def test_generic_error_line(self):
        """An unrecognised "Error" line still fails the write."""
        verdict = self.classifier.classify_program("Error: something odd happened", "", 0)
        assert not verdict.success
        assert verdict.error_kind is ErrorKind.WRITE_FAILED

    def test_generic_error_line_takes_step_kind(self):
        verdict = self.classifier.classify_program(
            "Error: ST-LINK error (DEV_CONNECT_ERR)", "", 1, generic_kind=ErrorKind.CONNECT_FAILED
        )
        assert verdict.error_kind is ErrorKind.CONNECT_FAILED

    def test_specific_marker_ignores_step_kind(self):
        marker = self.classifier.find_failure("Error: Mass erase operation failed", "", ErrorKind.VERIFY_FAILED)
        assert marker.kind is ErrorKind.ERASE_FAILED

    def test_warning_line_is_not_an_error(self):
        verdict = self.classifier.classify_program("Warning: Error counter reset\n" + WRITE_OK, "", 0)
        assert verdict.success

    def test_missing_probe_marker(self):
        marker = self.classifier.find_failure(NO_STLINK, "")
        assert marker is not None
        assert marker.kind is ErrorKind.DEVICE_NOT_DETECTED


class TestPatternTable:
    """Test extending the pattern table."""

    def test_extended_appends(self):
        """Extra phrases are added without losing the defaults."""
        table = PatternTable().extended(busy_phrases=("Probe locked",))
        classifier = OutputClassifier(table)
        assert classifier.is_busy("Probe locked by another tool")
        assert classifier.is_busy("ST-LINK is busy")

    def test_extended_field_patterns(self):
        table = PatternTable().extended(field_patterns={"chip_type": (r"Target\s*=\s*(\w+)",)})
        classifier = OutputClassifier(table)
        assert classifier.extract_field("Target = STM32G0", "chip_type") == "STM32G0"

    def test_defaults_unchanged(self):
        base = PatternTable()
        base.extended(success_markers=("DONE",))
        assert "DONE" not in base.success_markers
