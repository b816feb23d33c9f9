"""Byte-level framing for the STM32 USART ROM bootloader."""

from functools import reduce
from typing import Iterable, Iterator, Tuple

from .errors import FrameError

SYNC = 0x7F
ACK = 0x79
NACK = 0x1F

CMD_GET = 0x00
CMD_GET_VERSION = 0x01
CMD_GET_ID = 0x02
CMD_READ_MEMORY = 0x11
CMD_GO = 0x21
CMD_WRITE_MEMORY = 0x31
CMD_ERASE = 0x43
CMD_EXTENDED_ERASE = 0x44

COMMAND_NAMES = {
    CMD_GET: "GET",
    CMD_GET_VERSION: "GET_VERSION",
    CMD_GET_ID: "GET_ID",
    CMD_READ_MEMORY: "READ_MEMORY",
    CMD_GO: "GO",
    CMD_WRITE_MEMORY: "WRITE_MEMORY",
    CMD_ERASE: "ERASE",
    CMD_EXTENDED_ERASE: "EXTENDED_ERASE",
}

MAX_BLOCK = 256

# Global erase requests, checksum included.
MASS_ERASE = bytes([0xFF, 0x00])
EXTENDED_MASS_ERASE = bytes([0xFF, 0xFF, 0x00])


def xor_checksum(data: Iterable[int]) -> int:
    """XOR of every byte."""
    return reduce(lambda a, b: a ^ b, data, 0)


def command_frame(code: int) -> bytes:
    """Command code followed by its complement."""
    if not 0 <= code <= 0xFF:
        raise FrameError(f"Command code out of range: {code}")
    return bytes([code, code ^ 0xFF])


def address_frame(address: int) -> bytes:
    """Four big-endian address bytes and their XOR."""
    if not 0 <= address <= 0xFFFFFFFF:
        raise FrameError(f"Address out of range: 0x{address:X}")
    raw = address.to_bytes(4, "big")
    return raw + bytes([xor_checksum(raw)])


def data_frame(payload: bytes) -> bytes:
    """Length-1 byte, payload, and XOR over both."""
    if not 1 <= len(payload) <= MAX_BLOCK:
        raise FrameError(f"Payload must be 1..{MAX_BLOCK} bytes, got {len(payload)}")
    head = bytes([len(payload) - 1]) + bytes(payload)
    return head + bytes([xor_checksum(head)])


def length_frame(count: int) -> bytes:
    """READ_MEMORY byte-count request: count-1 and its complement."""
    if not 1 <= count <= MAX_BLOCK:
        raise FrameError(f"Read length must be 1..{MAX_BLOCK}, got {count}")
    return bytes([count - 1, (count - 1) ^ 0xFF])


def decode_address_frame(frame: bytes) -> int:
    """Inverse of address_frame(); checks length and checksum."""
    if len(frame) != 5:
        raise FrameError(f"Address frame must be 5 bytes, got {len(frame)}")
    if xor_checksum(frame[:4]) != frame[4]:
        raise FrameError("Address frame checksum mismatch")
    return int.from_bytes(frame[:4], "big")


def decode_data_frame(frame: bytes) -> bytes:
    """Inverse of data_frame(); checks length and checksum."""
    if len(frame) < 3:
        raise FrameError("Data frame too short")
    count = frame[0] + 1
    if len(frame) != count + 2:
        raise FrameError(f"Data frame declares {count} bytes but carries {len(frame) - 2}")
    if xor_checksum(frame[:-1]) != frame[-1]:
        raise FrameError("Data frame checksum mismatch")
    return bytes(frame[1:-1])


def iter_blocks(data: bytes, base_address: int, block_size: int = MAX_BLOCK) -> Iterator[Tuple[int, bytes]]:
    """Split an image into (address, block) pairs of at most block_size bytes."""
    if not 1 <= block_size <= MAX_BLOCK:
        raise FrameError(f"Block size must be 1..{MAX_BLOCK}")
    for offset in range(0, len(data), block_size):
        yield base_address + offset, data[offset:offset + block_size]
