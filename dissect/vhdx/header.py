from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import BinaryIO
from uuid import UUID

from dissect.vhdx.c_vhdx import (
    CHECKSUM_OFFSET,
    HEADER_OFFSETS,
    HEADER_SIGNATURE,
    HEADER_SIZE,
    c_vhdx,
)
from dissect.vhdx.exceptions import InconsistentRedundancy, InvalidSignature
from dissect.vhdx.util import read, verify_checksum

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_VHDX", "CRITICAL"))


@dataclass
class Header:
    """A decoded and verified VHDX header."""

    checksum: int
    sequence_number: int
    file_write_id: UUID
    data_write_id: UUID
    log_id: UUID
    log_version: int
    version: int
    log_length: int
    log_offset: int

    @classmethod
    def read(cls, fh: BinaryIO, offset: int) -> Header:
        """Read and verify a single header copy at the given offset.

        Raises:
            InvalidSignature: If the header signature is not ``head``.
            ChecksumMismatch: If the CRC32C of the 4 KiB header block doesn't match.
        """
        buf = read(fh, HEADER_SIZE, offset)
        header = c_vhdx.header(buf)

        if header.signature != HEADER_SIGNATURE:
            raise InvalidSignature(f"Invalid header signature at {offset:#x}: {header.signature}")

        verify_checksum(buf, CHECKSUM_OFFSET, header.checksum, f"header at {offset:#x}")

        return cls(
            checksum=header.checksum,
            sequence_number=header.sequence_number,
            file_write_id=UUID(bytes_le=header.file_write_guid),
            data_write_id=UUID(bytes_le=header.data_write_guid),
            log_id=UUID(bytes_le=header.log_guid),
            log_version=header.log_version,
            version=header.version,
            log_length=header.log_length,
            log_offset=header.log_offset,
        )


def read_header(fh: BinaryIO) -> tuple[int, Header]:
    """Read both header copies and select the current one.

    The header with the highest sequence number is the current header. Both copies must be valid and
    their sequence numbers must differ.

    Returns:
        A tuple of the offset of the selected header and the header itself.

    Raises:
        InconsistentRedundancy: If both headers have the same sequence number.
    """
    first, second = (Header.read(fh, offset) for offset in HEADER_OFFSETS)
    log.debug("Header sequence numbers: %d, %d", first.sequence_number, second.sequence_number)

    if first.sequence_number == second.sequence_number:
        raise InconsistentRedundancy(f"Header sequence numbers are identical: {first.sequence_number}")

    if first.sequence_number > second.sequence_number:
        return HEADER_OFFSETS[0], first
    return HEADER_OFFSETS[1], second
