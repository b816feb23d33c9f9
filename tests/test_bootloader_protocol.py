"""Tests for USART bootloader framing."""

import pytest

from smartburn.core import bootloader_protocol as bp
from smartburn.core.errors import FrameError


class TestFrames:
    """Test frame construction."""

    def test_command_frame(self):
        assert bp.command_frame(bp.CMD_WRITE_MEMORY) == bytes([0x31, 0xCE])
        assert bp.command_frame(bp.CMD_GET) == bytes([0x00, 0xFF])

    def test_address_frame(self):
        """Four big-endian bytes and their XOR."""
        assert bp.address_frame(0x08000000) == bytes([0x08, 0x00, 0x00, 0x00, 0x08])
        assert bp.address_frame(0x08010000) == bytes([0x08, 0x01, 0x00, 0x00, 0x09])

    def test_data_frame_four_bytes(self):
        """Length byte is N-1 and the checksum covers it and the payload."""
        frame = bp.data_frame(bytes([0x01, 0x02, 0x03, 0x04]))
        assert frame[:5] == bytes([0x03, 0x01, 0x02, 0x03, 0x04])
        assert frame[5] == 0x03 ^ 0x01 ^ 0x02 ^ 0x03 ^ 0x04
        assert len(frame) == 6

    def test_data_frame_limits(self):
        assert len(bp.data_frame(b"\xff" * 256)) == 258
        with pytest.raises(FrameError):
            bp.data_frame(b"")
        with pytest.raises(FrameError):
            bp.data_frame(b"\x00" * 257)

    def test_length_frame(self):
        assert bp.length_frame(256) == bytes([0xFF, 0x00])
        assert bp.length_frame(4) == bytes([0x03, 0xFC])

    def test_out_of_range(self):
        with pytest.raises(FrameError):
            bp.address_frame(0x1_0000_0000)
        with pytest.raises(FrameError):
            bp.command_frame(0x100)

    def test_frame_error_is_value_error(self):
        with pytest.raises(ValueError):
            bp.length_frame(0)

    def test_mass_erase_requests(self):
        assert bp.MASS_ERASE == bytes([0xFF, 0x00])
        assert bp.EXTENDED_MASS_ERASE == bytes([0xFF, 0xFF, 0x00])


class TestDecode:
    """Test decoding and checksum checks."""

    def test_decode_address(self):
        assert bp.decode_address_frame(bp.address_frame(0x20001000)) == 0x20001000

    def test_decode_address_bad_checksum(self):
        with pytest.raises(FrameError):
            bp.decode_address_frame(bytes([0x08, 0x00, 0x00, 0x00, 0x00]))

    def test_decode_address_bad_length(self):
        with pytest.raises(FrameError):
            bp.decode_address_frame(bytes([0x08, 0x00, 0x00]))

    def test_decode_data(self):
        assert bp.decode_data_frame(bytes([0x01, 0xAA, 0xBB, 0x01 ^ 0xAA ^ 0xBB])) == bytes([0xAA, 0xBB])

    def test_decode_data_length_mismatch(self):
        with pytest.raises(FrameError):
            bp.decode_data_frame(bytes([0x03, 0x01, 0x02, 0x00]))

    def test_decode_data_bad_checksum(self):
        with pytest.raises(FrameError):
            bp.decode_data_frame(bytes([0x00, 0x10, 0x11]))


class TestChecksumLaw:
    """Every frame XORs to zero and decodes back to its input."""

    @pytest.mark.parametrize(
        "address", [0x00000000, 0x08000000, 0x08010000, 0x0801FFFC, 0x1FFF7800, 0x20001000, 0xDEADBEEF, 0xFFFFFFFF]
    )
    def test_address_frames(self, address):
        frame = bp.address_frame(address)
        assert bp.xor_checksum(frame) == 0
        assert bp.decode_address_frame(frame) == address

    def test_data_frames_of_every_length(self):
        for length in range(1, bp.MAX_BLOCK + 1):
            payload = bytes((length * 7 + i * 31) & 0xFF for i in range(length))
            frame = bp.data_frame(payload)
            assert frame[0] == length - 1
            assert bp.xor_checksum(frame) == 0, length
            assert bp.decode_data_frame(frame) == payload, length

    def test_corrupted_byte_is_detected(self):
        frame = bytearray(bp.data_frame(bytes(range(16))))
        for index in range(1, len(frame)):
            damaged = bytearray(frame)
            damaged[index] ^= 0x40
            with pytest.raises(FrameError):
                bp.decode_data_frame(bytes(damaged))


class TestBlocks:
    """Test image splitting."""

    def test_blocks_cover_image(self):
        data = bytes(range(256)) * 2 + b"\x01\x02"
        blocks = list(bp.iter_blocks(data, 0x08000000))
        assert [address for address, _ in blocks] == [0x08000000, 0x08000100, 0x08000200]
        assert [len(block) for _, block in blocks] == [256, 256, 2]
        assert b"".join(block for _, block in blocks) == data

    def test_empty_image(self):
        assert list(bp.iter_blocks(b"", 0x08000000)) == []

    def test_bad_block_size(self):
        with pytest.raises(FrameError):
            list(bp.iter_blocks(b"\x00", 0, block_size=512))


def test_xor_checksum():
    assert bp.xor_checksum(b"") == 0
    assert bp.xor_checksum(bytes([0x03, 0x01, 0x02, 0x03, 0x04])) == 0x07
