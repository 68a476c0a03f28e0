from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import BinaryIO, Optional
from uuid import UUID

from dissect.vhdx.c_vhdx import (
    CHECKSUM_OFFSET,
    REGION_ALIGNMENT,
    REGION_KINDS,
    REGION_MIN_OFFSET,
    REGION_TABLE_MAX_ENTRIES,
    REGION_TABLE_OFFSETS,
    REGION_TABLE_SIGNATURE,
    REGION_TABLE_SIZE,
    RegionKind,
    c_vhdx,
)
from dissect.vhdx.exceptions import (
    InconsistentRedundancy,
    InvalidSignature,
    InvalidVirtualDisk,
    StructuralBoundsViolation,
    UnsupportedRequiredFeature,
)
from dissect.vhdx.util import read, verify_checksum

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_VHDX", "CRITICAL"))


@dataclass
class RegionEntry:
    object_id: UUID
    kind: RegionKind
    offset: int
    length: int
    required: bool

    @classmethod
    def from_entry(cls, entry: c_vhdx.region_table_entry) -> RegionEntry:
        object_id = UUID(bytes_le=entry.guid)
        return cls(
            object_id=object_id,
            kind=REGION_KINDS.get(object_id, RegionKind.UNKNOWN),
            offset=entry.file_offset,
            length=entry.length,
            required=bool(entry.required),
        )

    def validate(self) -> None:
        """Validate the region placement and whether we know how to handle it.

        Raises:
            StructuralBoundsViolation: If the offset or length isn't properly aligned.
            UnsupportedRequiredFeature: If the region is unknown but marked as required.
        """
        if self.offset < REGION_MIN_OFFSET:
            raise StructuralBoundsViolation(
                f"Region {self.object_id} offset {self.offset:#x} is below the minimum of {REGION_MIN_OFFSET:#x}"
            )

        if self.offset % REGION_ALIGNMENT:
            raise StructuralBoundsViolation(
                f"Region {self.object_id} offset {self.offset:#x} is not a multiple of {REGION_ALIGNMENT:#x}"
            )

        if self.length % REGION_ALIGNMENT:
            raise StructuralBoundsViolation(
                f"Region {self.object_id} length {self.length:#x} is not a multiple of {REGION_ALIGNMENT:#x}"
            )

        if self.kind == RegionKind.UNKNOWN and self.required:
            raise UnsupportedRequiredFeature(f"Unknown region {self.object_id} is marked as required")


@dataclass
class RegionTable:
    """A single decoded copy of the region table."""

    offset: int
    checksum: int
    entry_count: int
    entries: list[RegionEntry] = field(default_factory=list)

    @classmethod
    def read(cls, fh: BinaryIO, offset: int) -> RegionTable:
        """Read and verify a single region table copy at the given offset.

        Raises:
            InvalidSignature: If the signature is not ``regi``.
            ChecksumMismatch: If the CRC32C of the 64 KiB region table doesn't match.
            StructuralBoundsViolation: If the entry count exceeds the maximum of 2047.
        """
        buf = read(fh, REGION_TABLE_SIZE, offset)
        header = c_vhdx.region_table_header(buf)

        if header.signature != REGION_TABLE_SIGNATURE:
            raise InvalidSignature(f"Invalid region table signature at {offset:#x}: {header.signature}")

        verify_checksum(buf, CHECKSUM_OFFSET, header.checksum, f"region table at {offset:#x}")

        if header.entry_count > REGION_TABLE_MAX_ENTRIES:
            raise StructuralBoundsViolation(
                f"Region table entry count {header.entry_count} exceeds the maximum of {REGION_TABLE_MAX_ENTRIES}"
            )

        table = cls(offset, header.checksum, header.entry_count)

        entry_offset = len(c_vhdx.region_table_header)
        entry_size = len(c_vhdx.region_table_entry)
        for _ in range(header.entry_count):
            entry = RegionEntry.from_entry(c_vhdx.region_table_entry(buf[entry_offset : entry_offset + entry_size]))
            entry.validate()

            log.debug("Region %s (%s) at %#x, length %#x", entry.object_id, entry.kind.value, entry.offset, entry.length)
            table.entries.append(entry)
            entry_offset += entry_size

        return table

    def get(self, guid: UUID, required: bool = True) -> Optional[RegionEntry]:
        for entry in self.entries:
            if entry.object_id == guid:
                return entry

        if required:
            raise InvalidVirtualDisk(f"Missing required region: {guid}")
        return None

    def find(self, kind: RegionKind) -> list[RegionEntry]:
        return [entry for entry in self.entries if entry.kind == kind]


def read_region_table(fh: BinaryIO) -> RegionTable:
    """Read both region table copies and verify they're identical.

    Unlike the headers, there's no tie-break between the two copies. Their entries must match exactly.

    Raises:
        InconsistentRedundancy: If the entries of the two region table copies differ.
    """
    first, second = (RegionTable.read(fh, offset) for offset in REGION_TABLE_OFFSETS)

    if first.entries != second.entries:
        raise InconsistentRedundancy(
            f"Region tables at {first.offset:#x} and {second.offset:#x} do not match "
            f"({first.entry_count} and {second.entry_count} entries)"
        )

    return first
