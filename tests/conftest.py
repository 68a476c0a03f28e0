from __future__ import annotations

import struct
from io import BytesIO
from typing import Optional
from uuid import UUID

import pytest
from dissect.util.hash.crc32c import crc32c

from dissect.vhdx.c_vhdx import (
    BAT_REGION_GUID,
    FILE_PARAMETERS_GUID,
    HEADER_OFFSETS,
    HEADER_SIZE,
    KB,
    LOGICAL_SECTOR_SIZE_GUID,
    MB,
    METADATA_REGION_GUID,
    PARENT_LOCATOR_GUID,
    PHYSICAL_SECTOR_SIZE_GUID,
    REGION_TABLE_OFFSETS,
    REGION_TABLE_SIZE,
    VHDX_PARENT_LOCATOR_GUID,
    VIRTUAL_DISK_ID_GUID,
    VIRTUAL_DISK_SIZE_GUID,
)

IS_USER = 1
IS_VIRTUAL_DISK = 2
IS_REQUIRED = 4

METADATA_ITEM_OFFSET = 64 * KB


def with_checksum(buf: bytearray) -> bytes:
    buf[4:8] = b"\x00" * 4
    struct.pack_into("<I", buf, 4, crc32c(bytes(buf)))
    return bytes(buf)


def parent_locator_item(locator_type: UUID, pairs: list[tuple[str, str]]) -> bytes:
    header = struct.pack("<16sHH", locator_type.bytes_le, 0, len(pairs))

    descriptors = b""
    strings = b""
    data_offset = len(header) + 12 * len(pairs)
    for key, value in pairs:
        key_data = key.encode("utf-16-le")
        value_data = value.encode("utf-16-le")

        key_offset = data_offset + len(strings)
        strings += key_data
        value_offset = data_offset + len(strings)
        strings += value_data

        descriptors += struct.pack("<IIHH", key_offset, value_offset, len(key_data), len(value_data))

    return header + descriptors + strings


class VHDXBuilder:
    """Builds small in-memory VHDX images.

    The default image is a 10 MiB dynamic disk with 2 MiB blocks and an empty BAT. The log region sits at 1 MiB,
    the metadata region at 2 MiB and the BAT region at 3 MiB.
    """

    def __init__(self):
        self.size = 4 * MB

        self.sequence_numbers = [1, 2]
        self.file_write_guid = UUID("6b9c4f2e-7bd4-4c1a-9d1e-3c2f1f5d0a11")
        self.data_write_guid = UUID("1d5e7c3a-9a62-4f0b-8e7d-0c4b2a6f9e22")
        self.log_guid = UUID("00000000-0000-0000-0000-000000000000")
        self.log_offset = 1 * MB
        self.log_length = 1 * MB

        self.regions = [
            (BAT_REGION_GUID, 3 * MB, 1 * MB, True),
            (METADATA_REGION_GUID, 2 * MB, 1 * MB, True),
        ]
        self.second_regions: Optional[list[tuple[UUID, int, int, bool]]] = None
        self.region_entry_count: Optional[int] = None

        self.block_size = 2 * MB
        self.leave_block_allocated = False
        self.has_parent = False
        self.virtual_disk_size = 10 * MB
        self.virtual_disk_id = UUID("4a49d245-db0a-4634-9818-9f93db5ba6c1")
        self.logical_sector_size = 512
        self.physical_sector_size = 4096

        self.locator_type = VHDX_PARENT_LOCATOR_GUID
        self.parent_locator: Optional[list[tuple[str, str]]] = None
        self.extra_metadata: list[tuple[UUID, bytes, int]] = []

        self.bat: dict[int, int] = {}

    def header(self, sequence_number: int) -> bytes:
        buf = bytearray(HEADER_SIZE)
        struct.pack_into(
            "<4sIQ16s16s16sHHIQ",
            buf,
            0,
            b"head",
            0,
            sequence_number,
            self.file_write_guid.bytes_le,
            self.data_write_guid.bytes_le,
            self.log_guid.bytes_le,
            0,
            1,
            self.log_length,
            self.log_offset,
        )
        return with_checksum(buf)

    def region_table(self, regions: list[tuple[UUID, int, int, bool]]) -> bytes:
        buf = bytearray(REGION_TABLE_SIZE)
        entry_count = len(regions) if self.region_entry_count is None else self.region_entry_count
        struct.pack_into("<4sII4x", buf, 0, b"regi", 0, entry_count)

        for idx, (guid, offset, length, required) in enumerate(regions):
            struct.pack_into("<16sQII", buf, 16 + idx * 32, guid.bytes_le, offset, length, int(required))

        return with_checksum(buf)

    def metadata_items(self) -> list[tuple[UUID, bytes, int]]:
        flags = self.leave_block_allocated | (self.has_parent << 1)
        items = [
            (FILE_PARAMETERS_GUID, struct.pack("<II", self.block_size, flags), IS_REQUIRED),
            (VIRTUAL_DISK_SIZE_GUID, struct.pack("<Q", self.virtual_disk_size), IS_VIRTUAL_DISK | IS_REQUIRED),
            (VIRTUAL_DISK_ID_GUID, self.virtual_disk_id.bytes_le, IS_VIRTUAL_DISK | IS_REQUIRED),
            (LOGICAL_SECTOR_SIZE_GUID, struct.pack("<I", self.logical_sector_size), IS_VIRTUAL_DISK | IS_REQUIRED),
            (PHYSICAL_SECTOR_SIZE_GUID, struct.pack("<I", self.physical_sector_size), IS_VIRTUAL_DISK | IS_REQUIRED),
        ]

        if self.parent_locator is not None:
            items.append((PARENT_LOCATOR_GUID, parent_locator_item(self.locator_type, self.parent_locator), IS_REQUIRED))

        return items + self.extra_metadata

    def metadata_region(self) -> bytes:
        items = self.metadata_items()

        table = bytearray(struct.pack("<8s2xH20x", b"metadata", len(items)))
        data = bytearray()
        for guid, payload, flags in items:
            table += struct.pack("<16sIII4x", guid.bytes_le, METADATA_ITEM_OFFSET + len(data), len(payload), flags)
            data += payload

        return bytes(table.ljust(METADATA_ITEM_OFFSET, b"\x00") + data)

    def region_offset(self, guid: UUID) -> Optional[int]:
        for region_guid, offset, _, _ in self.regions:
            if region_guid == guid:
                return offset
        return None

    def build_bytes(self) -> bytearray:
        image = bytearray(self.size)
        image[0:8] = b"vhdxfile"

        for offset, sequence_number in zip(HEADER_OFFSETS, self.sequence_numbers):
            image[offset : offset + HEADER_SIZE] = self.header(sequence_number)

        for offset, regions in zip(REGION_TABLE_OFFSETS, (self.regions, self.second_regions or self.regions)):
            image[offset : offset + REGION_TABLE_SIZE] = self.region_table(regions)

        metadata_offset = self.region_offset(METADATA_REGION_GUID)
        if metadata_offset is not None:
            metadata = self.metadata_region()
            image[metadata_offset : metadata_offset + len(metadata)] = metadata

        bat_offset = self.region_offset(BAT_REGION_GUID)
        if bat_offset is not None:
            for index, raw in self.bat.items():
                struct.pack_into("<Q", image, bat_offset + index * 8, raw)

        return image

    def build(self) -> BytesIO:
        return BytesIO(bytes(self.build_bytes()))


@pytest.fixture
def builder() -> VHDXBuilder:
    return VHDXBuilder()


@pytest.fixture
def parent_builder() -> VHDXBuilder:
    builder = VHDXBuilder()
    builder.data_write_guid = UUID("83b0f6fd-4cb4-4d0e-9a6a-2f5b0d1c7e33")
    builder.virtual_disk_id = UUID("788015f0-5e93-4bd2-a5de-b0cd8459db11")
    return builder


@pytest.fixture
def child_builder(parent_builder: VHDXBuilder) -> VHDXBuilder:
    builder = VHDXBuilder()
    builder.has_parent = True
    builder.parent_locator = [
        ("parent_linkage", f"{{{parent_builder.data_write_guid}}}"),
        ("relative_path", ".\\parent.vhdx"),
        ("volume_path", "\\\\?\\Volume{26a21bda-a627-11d7-9931-806e6f6e6963}\\disks\\parent.vhdx"),
        ("absolute_win32_path", "C:\\disks\\parent.vhdx"),
    ]
    return builder
