from __future__ import annotations

import struct
from io import BytesIO
from uuid import UUID

import pytest

from dissect.vhdx.exceptions import ChecksumMismatch, ReadError
from dissect.vhdx.util import (
    calculate_checksum,
    ceil_div,
    floor_div,
    read,
    read_guid,
    read_uint16,
    read_uint32,
    read_uint64,
    read_uint128,
    read_utf16,
    verify_checksum,
)


def test_read_at_offset_and_current_position() -> None:
    fh = BytesIO(bytes(range(16)))

    assert read(fh, 4, 8) == b"\x08\x09\x0a\x0b"
    # Continues from where the previous read ended
    assert read(fh, 2) == b"\x0c\x0d"


def test_read_short() -> None:
    fh = BytesIO(b"\x00" * 8)

    with pytest.raises(ReadError, match="Short read at offset 0x4"):
        read(fh, 8, 4)


def test_read_closed() -> None:
    fh = BytesIO(b"\x00" * 8)
    fh.close()

    with pytest.raises(ReadError):
        read(fh, 4, 0)


def test_read_integers() -> None:
    buf = struct.pack("<HIQ", 0x1234, 0x12345678, 0x123456789ABCDEF0) + (2**127 + 5).to_bytes(16, "little")
    fh = BytesIO(buf)

    assert read_uint16(fh, 0) == 0x1234
    assert read_uint32(fh, 2) == 0x12345678
    assert read_uint64(fh, 6) == 0x123456789ABCDEF0
    assert read_uint128(fh, 14) == 2**127 + 5

    # Same values decoded sequentially from the current position
    fh.seek(0)
    assert read_uint16(fh) == 0x1234
    assert read_uint32(fh) == 0x12345678
    assert read_uint64(fh) == 0x123456789ABCDEF0
    assert read_uint128(fh) == 2**127 + 5


def test_read_guid() -> None:
    guid = UUID("2DC27766-F623-4200-9D64-115E9BFD4A08")
    fh = BytesIO(b"\xff" + guid.bytes_le)

    assert guid.bytes_le[:4] == b"\x66\x77\xc2\x2d"
    assert read_guid(fh, 1) == guid


def test_read_utf16() -> None:
    fh = BytesIO("relative_path".encode("utf-16-le"))

    assert read_utf16(fh, 8, 0) == "relative"
    assert read_utf16(fh, 5) == "_path"


def test_checksum_ignores_stored_value() -> None:
    assert calculate_checksum(b"regi\x12\x34\x56\x78" + b"\x00" * 8, 4) == calculate_checksum(b"regi" + b"\x00" * 12, 4)


def test_verify_checksum() -> None:
    buf = bytearray(b"head" + b"\x00" * 60)
    struct.pack_into("<I", buf, 4, calculate_checksum(buf, 4))

    verify_checksum(bytes(buf), 4, struct.unpack_from("<I", buf, 4)[0], "header")

    with pytest.raises(ChecksumMismatch, match="Invalid header checksum"):
        verify_checksum(bytes(buf), 4, 0x12345678, "header")


def test_checksum_single_bit_flips() -> None:
    buf = bytearray(bytes(range(64)))
    struct.pack_into("<I", buf, 4, calculate_checksum(buf, 4))
    expected = struct.unpack_from("<I", buf, 4)[0]

    for bit in range(len(buf) * 8):
        byte_idx, bit_idx = divmod(bit, 8)
        flipped = bytearray(buf)
        flipped[byte_idx] ^= 1 << bit_idx

        if 4 <= byte_idx < 8:
            # Bits in the checksum window are zeroed before calculating
            assert calculate_checksum(flipped, 4) == expected
        else:
            assert calculate_checksum(flipped, 4) != expected


def test_ceil_div_bounds() -> None:
    for n in range(1, 200):
        for d in range(1, 20):
            result = ceil_div(n, d)
            assert (result - 1) * d < n <= result * d


@pytest.mark.parametrize(
    ("n", "d", "floor", "ceil"),
    [
        (7, 2, 3, 4),
        (-7, 2, -4, -3),
        (7, -2, -4, -3),
        (-7, -2, 3, 4),
        (8, 2, 4, 4),
        (-1, 2048, -1, 0),
        (0, 5, 0, 0),
    ],
)
def test_signed_division(n: int, d: int, floor: int, ceil: int) -> None:
    assert floor_div(n, d) == floor
    assert ceil_div(n, d) == ceil
