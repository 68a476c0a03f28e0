from __future__ import annotations

from typing import TYPE_CHECKING, BinaryIO, Optional
from uuid import UUID

from dissect.util.hash.crc32c import crc32c

from dissect.vhdx.c_vhdx import CHECKSUM_SIZE, c_vhdx
from dissect.vhdx.exceptions import ChecksumMismatch, ReadError

if TYPE_CHECKING:
    from dissect.cstruct import BaseType


def read(fh: BinaryIO, size: int, offset: Optional[int] = None) -> bytes:
    """Read exactly ``size`` bytes from a file-like object.

    Args:
        fh: The file-like object to read from.
        size: The amount of bytes to read.
        offset: Absolute offset to seek to before reading. Reads from the current position if ``None``.

    Raises:
        ReadError: If seeking or reading fails, or fewer than ``size`` bytes are available.
    """
    try:
        if offset is None:
            offset = fh.tell()
        else:
            fh.seek(offset)
        buf = fh.read(size)
    except (OSError, ValueError) as e:
        raise ReadError(f"Failed to read {size:#x} bytes at offset {offset}: {e}") from e

    if len(buf) != size:
        raise ReadError(f"Short read at offset {offset:#x}: expected {size:#x} bytes, got {len(buf):#x}")

    return buf


def read_struct(fh: BinaryIO, type_: type[BaseType], offset: Optional[int] = None) -> BaseType:
    """Read and parse a structure or type from ``c_vhdx``."""
    return type_(read(fh, len(type_), offset))


def read_uint16(fh: BinaryIO, offset: Optional[int] = None) -> int:
    return read_struct(fh, c_vhdx.uint16, offset)


def read_uint32(fh: BinaryIO, offset: Optional[int] = None) -> int:
    return read_struct(fh, c_vhdx.uint32, offset)


def read_uint64(fh: BinaryIO, offset: Optional[int] = None) -> int:
    return read_struct(fh, c_vhdx.uint64, offset)


def read_uint128(fh: BinaryIO, offset: Optional[int] = None) -> int:
    return read_struct(fh, c_vhdx.uint128, offset)


def read_guid(fh: BinaryIO, offset: Optional[int] = None) -> UUID:
    """Read a GUID, which is stored in its mixed-endian (little-endian) form on disk."""
    return UUID(bytes_le=read(fh, 16, offset))


def read_utf16(fh: BinaryIO, length: int, offset: Optional[int] = None) -> str:
    """Read a UTF-16-LE string of ``length`` code units.

    Raises:
        UnicodeDecodeError: If the data is not valid UTF-16-LE.
    """
    return read(fh, length * 2, offset).decode("utf-16-le")


def calculate_checksum(buf: bytes, offset: int) -> int:
    """Calculate the CRC32C of ``buf`` with the checksum field at ``offset`` set to zero."""
    buf = bytearray(buf)
    buf[offset : offset + CHECKSUM_SIZE] = b"\x00" * CHECKSUM_SIZE
    return crc32c(bytes(buf))


def verify_checksum(buf: bytes, offset: int, expected: int, name: str) -> None:
    """Verify the embedded checksum of ``buf``.

    Args:
        buf: The complete block the checksum covers.
        offset: Offset of the checksum field within ``buf``.
        expected: The checksum value that was stored on disk.
        name: Name of the structure, used in the error message.

    Raises:
        ChecksumMismatch: If the calculated checksum does not match ``expected``.
    """
    checksum = calculate_checksum(buf, offset)
    if checksum != expected:
        raise ChecksumMismatch(f"Invalid {name} checksum (expected {expected:#010x}, got {checksum:#010x})")


def ceil_div(n: int, d: int) -> int:
    """Integer division rounding towards positive infinity."""
    return -(-n // d)


def floor_div(n: int, d: int) -> int:
    """Integer division rounding towards negative infinity."""
    return n // d
