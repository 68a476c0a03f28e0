from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import BinaryIO

from dissect.vhdx.c_vhdx import (
    BAT_ENTRY_SIZE,
    BAT_FILE_OFFSET_MASK,
    BAT_FILE_OFFSET_SHIFT,
    BAT_STATE_MASK,
    CHUNK_RATIO_MULTIPLIER,
    PAYLOAD_BLOCK_STATES,
    SECTOR_BLOCK_STATES,
    PayloadBlockState,
    SectorBlockState,
    c_vhdx,
)
from dissect.vhdx.exceptions import DegenerateComputation, InvalidStateCode, StructuralBoundsViolation
from dissect.vhdx.metadata import Metadata
from dissect.vhdx.region import RegionEntry
from dissect.vhdx.util import ceil_div, floor_div, read

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_VHDX", "CRITICAL"))


@dataclass
class BlockValues:
    chunk_ratio: int
    payload_block_count: int
    sector_block_count: int
    total_bat_entries: int


@dataclass
class PayloadEntry:
    state: PayloadBlockState
    file_offset_mb: int


@dataclass
class SectorEntry:
    state: SectorBlockState
    file_offset_mb: int


def calculate_block_values(metadata: Metadata, has_parent: bool) -> BlockValues:
    """Calculate the chunk ratio and the amount of BAT entries.

    Args:
        metadata: The metadata of the VHDX file.
        has_parent: Whether the file is being decoded as part of a differencing chain.

    Raises:
        DegenerateComputation: If the block size or chunk ratio is zero.
    """
    block_size = metadata.file_parameters.block_size
    if block_size == 0:
        raise DegenerateComputation("Block size is 0, can't calculate the BAT layout")

    chunk_ratio = (CHUNK_RATIO_MULTIPLIER * metadata.logical_sector_size) // block_size
    if chunk_ratio == 0:
        raise DegenerateComputation(
            f"Chunk ratio is 0 (block size {block_size:#x}, logical sector size {metadata.logical_sector_size:#x})"
        )

    payload_block_count = ceil_div(metadata.virtual_disk_size, block_size)
    sector_block_count = ceil_div(payload_block_count, chunk_ratio)

    if has_parent:
        total_bat_entries = payload_block_count + floor_div(payload_block_count - 1, chunk_ratio)
    else:
        total_bat_entries = sector_block_count * (chunk_ratio + 1)

    return BlockValues(chunk_ratio, payload_block_count, sector_block_count, total_bat_entries)


def classify_entry(index: int, chunk_ratio: int, interleaved: bool = True) -> tuple[bool, int]:
    """Determine whether a BAT entry is a sector bitmap entry and its index within its own kind.

    In an interleaved BAT, every ``chunk_ratio`` payload entries are followed by one sector bitmap entry.
    Counting entries from one, every multiple of ``chunk_ratio + 1`` is a sector bitmap entry. For a chunk
    ratio of 2048 that means indices 2048, 4097, 6146 and so on.

    Args:
        index: The index of the entry in the BAT.
        chunk_ratio: The chunk ratio of the VHDX file.
        interleaved: Whether the BAT contains interleaved sector bitmap entries.

    Returns:
        A tuple of whether the entry is a sector bitmap entry and the index of that payload or sector bitmap entry.
    """
    if not interleaved:
        return False, index

    chunk, position = divmod(index + 1, chunk_ratio + 1)
    if position == 0:
        return True, chunk - 1
    return False, index - chunk


def decode_entry(raw: int, sector: bool) -> PayloadEntry | SectorEntry:
    """Decode a raw 64-bit BAT entry.

    .. rubric :: Encoding
    .. code-block:: c

        0b00000000 00000000 00000000 00000000 00000000 00000000 00000000 00000111  (state)
        0b00000000 00000000 00000000 00000000 00000000 00001111 11111111 11111000  (reserved)
        0b11111111 11111111 11111111 11111111 11111111 11110000 00000000 00000000  (file offset in MiB)

    Raises:
        InvalidStateCode: If the state is not valid for the kind of entry.
    """
    state = raw & BAT_STATE_MASK
    file_offset_mb = (raw & BAT_FILE_OFFSET_MASK) >> BAT_FILE_OFFSET_SHIFT

    if sector:
        if state not in SECTOR_BLOCK_STATES:
            raise InvalidStateCode(f"Invalid sector bitmap block state: {state}")
        return SectorEntry(SectorBlockState(state), file_offset_mb)

    if state not in PAYLOAD_BLOCK_STATES:
        raise InvalidStateCode(f"Invalid payload block state: {state}")
    return PayloadEntry(PayloadBlockState(state), file_offset_mb)


class BlockAllocationTable:
    """VHDX Block Allocation Table (BAT).

    Without a parent, the BAT interleaves one sector bitmap entry after every ``chunk_ratio`` payload entries,
    so the BAT always ends in a sector bitmap entry.
    When decoding a file as part of a differencing chain, all entries are read as payload entries.

    Args:
        fh: The file-like object of the VHDX file.
        region: The region table entry of the BAT region.
        metadata: The metadata of the VHDX file.
        has_parent: Whether the file is being decoded as part of a differencing chain.
    """

    def __init__(self, fh: BinaryIO, region: RegionEntry, metadata: Metadata, has_parent: bool = False):
        self.fh = fh
        self.offset = region.offset
        self.length = region.length
        self.has_parent = has_parent

        self.values = calculate_block_values(metadata, has_parent)
        self.chunk_ratio = self.values.chunk_ratio
        self.entry_count = max(self.values.total_bat_entries, 0)

        # The last entry may start at, but not beyond, the end of the region
        if self.entry_count and (self.entry_count - 1) * BAT_ENTRY_SIZE > self.length:
            raise StructuralBoundsViolation(
                f"BAT with {self.entry_count} entries is larger than the BAT region ({self.length:#x} bytes)"
            )

        log.debug(
            "BAT at %#x: chunk ratio %d, %d payload blocks, %d sector blocks, %d entries",
            self.offset,
            self.chunk_ratio,
            self.values.payload_block_count,
            self.values.sector_block_count,
            self.entry_count,
        )

        buf = read(fh, self.entry_count * BAT_ENTRY_SIZE, self.offset)
        raw_entries = c_vhdx.uint64[self.entry_count](buf) if self.entry_count else []

        self.payload_entries: list[PayloadEntry] = []
        self.sector_entries: list[SectorEntry] = []
        for index, raw in enumerate(raw_entries):
            is_sector, _ = classify_entry(index, self.chunk_ratio, not has_parent)
            entry = decode_entry(raw, is_sector)

            if is_sector:
                self.sector_entries.append(entry)
            else:
                self.payload_entries.append(entry)

    def pb(self, block: int) -> PayloadEntry:
        """Get the payload block entry for a given block."""
        return self.payload_entries[block]

    def sb(self, block: int) -> SectorEntry:
        """Get the sector bitmap entry of the chunk a given block is part of."""
        return self.sector_entries[block // self.chunk_ratio]
