from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, Optional
from uuid import UUID

from dissect.vhdx.c_vhdx import (
    METADATA_KINDS,
    METADATA_TABLE_MAX_ENTRIES,
    METADATA_TABLE_SIGNATURE,
    PARENT_LINKAGE_KEYS,
    PARENT_LOCATOR_TYPES,
    PARENT_PATH_KEYS,
    MetadataKind,
    ParentLocatorType,
    c_vhdx,
)
from dissect.vhdx.exceptions import (
    InvalidSignature,
    InvalidVirtualDisk,
    MissingExpectedField,
    StructuralBoundsViolation,
    UnsupportedRequiredFeature,
)
from dissect.vhdx.util import read_guid, read_struct, read_uint32, read_uint64, read_utf16

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_VHDX", "CRITICAL"))


@dataclass
class MetadataEntry:
    object_id: UUID
    kind: MetadataKind
    offset: int
    length: int
    is_user: bool
    is_virtual_disk: bool
    is_required: bool

    @classmethod
    def from_entry(cls, entry: c_vhdx.metadata_table_entry) -> MetadataEntry:
        object_id = UUID(bytes_le=entry.item_id)
        return cls(
            object_id=object_id,
            kind=METADATA_KINDS.get(object_id, MetadataKind.UNKNOWN),
            offset=entry.offset,
            length=entry.length,
            is_user=bool(entry.is_user),
            is_virtual_disk=bool(entry.is_virtual_disk),
            is_required=bool(entry.is_required),
        )


@dataclass
class FileParameters:
    block_size: int = 0
    leave_block_allocated: bool = False
    has_parent: bool = False


@dataclass
class ParentLocatorEntry:
    key_offset: int
    value_offset: int
    key_length: int
    value_length: int
    key: str
    value: str


@dataclass
class ParentLocatorDict:
    """The raw key/value dictionary of a parent locator."""

    locator_type: ParentLocatorType
    locator_type_id: UUID
    key_value_count: int
    entries: list[ParentLocatorEntry] = field(default_factory=list)


@dataclass
class ParentLocator:
    """A parent locator resolved from its key/value dictionary."""

    locator_type: ParentLocatorType
    parent_linkage: Optional[UUID] = None
    parent_linkage2: Optional[UUID] = None
    relative_path: Optional[str] = None
    volume_path: Optional[str] = None
    absolute_win32_path: Optional[str] = None

    def update(self, key: str, value: str) -> None:
        """Set a field from a parent locator key/value pair.

        Raises:
            MissingExpectedField: If the key is unknown or a linkage value is not a valid GUID.
        """
        if key in PARENT_LINKAGE_KEYS:
            try:
                setattr(self, key, UUID(value))
            except ValueError as e:
                raise MissingExpectedField(f"Parent locator {key} is not a valid GUID: {value!r}") from e
        elif key in PARENT_PATH_KEYS:
            setattr(self, key, value)
        else:
            raise MissingExpectedField(f"Unknown parent locator key: {key!r}")


@dataclass
class Metadata:
    file_parameters: FileParameters = field(default_factory=FileParameters)
    virtual_disk_size: int = 0
    virtual_disk_id: Optional[UUID] = None
    logical_sector_size: int = 0
    physical_sector_size: int = 0
    parent_locator_dict: Optional[ParentLocatorDict] = None
    parent_locator: Optional[ParentLocator] = None


class MetadataTable:
    """VHDX metadata region.

    The metadata region starts with a table of entries, each pointing to a metadata item relative to the start of
    the region. The table is read and validated in full before any of the items it points to are resolved.

    Args:
        fh: The file-like object of the VHDX file.
        offset: Offset of the metadata region.
        length: Length of the metadata region as recorded in the region table.
    """

    def __init__(self, fh: BinaryIO, offset: int, length: int):
        self.fh = fh
        self.offset = offset
        self.length = length

        self.header = read_struct(fh, c_vhdx.metadata_table_header, offset)
        if self.header.signature != METADATA_TABLE_SIGNATURE:
            raise InvalidSignature(f"Invalid metadata table signature: {self.header.signature}")

        self.entry_count = self.header.entry_count
        if self.entry_count > METADATA_TABLE_MAX_ENTRIES:
            raise StructuralBoundsViolation(
                f"Metadata table entry count {self.entry_count} exceeds the maximum of {METADATA_TABLE_MAX_ENTRIES}"
            )

        header_size = len(c_vhdx.metadata_table_header)
        entry_size = len(c_vhdx.metadata_table_entry)
        if header_size + self.entry_count * entry_size > length:
            raise StructuralBoundsViolation(
                f"Metadata table with {self.entry_count} entries is larger than the metadata region ({length:#x} bytes)"
            )

        self.entries: list[MetadataEntry] = []
        for idx in range(self.entry_count):
            entry = MetadataEntry.from_entry(
                read_struct(fh, c_vhdx.metadata_table_entry, offset + header_size + idx * entry_size)
            )

            if entry.kind == MetadataKind.UNKNOWN and entry.is_required:
                raise UnsupportedRequiredFeature(f"Unknown metadata item {entry.object_id} is marked as required")

            self.entries.append(entry)

        self.metadata = self._read_values()

    def get(self, guid: UUID, required: bool = True) -> Optional[MetadataEntry]:
        for entry in self.entries:
            if entry.object_id == guid:
                return entry

        if required:
            raise InvalidVirtualDisk(f"Missing required metadata item: {guid}")
        return None

    def _read_values(self) -> Metadata:
        readers: dict[MetadataKind, Callable[[int], Any]] = {
            MetadataKind.FILE_PARAMETERS: self._read_file_parameters,
            MetadataKind.VIRTUAL_DISK_SIZE: self._read_uint64,
            MetadataKind.VIRTUAL_DISK_ID: self._read_guid,
            MetadataKind.LOGICAL_SECTOR_SIZE: self._read_uint32,
            MetadataKind.PHYSICAL_SECTOR_SIZE: self._read_uint32,
            MetadataKind.PARENT_LOCATOR: self._read_parent_locator,
        }

        self._cursor = self.offset
        metadata = Metadata()

        for entry in self.entries:
            if entry.kind == MetadataKind.UNKNOWN:
                raise InvalidVirtualDisk(f"Unknown metadata item {entry.object_id} can't be resolved")

            log.debug("Reading metadata item %s at %#x", entry.kind.value, self.offset + entry.offset)
            value = readers[entry.kind](self.offset + entry.offset)

            if entry.kind == MetadataKind.PARENT_LOCATOR:
                metadata.parent_locator_dict, metadata.parent_locator = value
            else:
                setattr(metadata, entry.kind.value, value)

        end = self.offset + self.length
        if self._cursor > end:
            raise StructuralBoundsViolation(
                f"Metadata items extend to {self._cursor:#x}, beyond the end of the metadata region at {end:#x}"
            )

        if metadata.file_parameters.has_parent and metadata.parent_locator is None:
            raise MissingExpectedField("File parameters indicate a parent, but the file has no parent locator")

        return metadata

    def _track(self, value: Any) -> Any:
        self._cursor = max(self._cursor, self.fh.tell())
        return value

    def _read_uint32(self, offset: int) -> int:
        return self._track(read_uint32(self.fh, offset))

    def _read_uint64(self, offset: int) -> int:
        return self._track(read_uint64(self.fh, offset))

    def _read_guid(self, offset: int) -> UUID:
        return self._track(read_guid(self.fh, offset))

    def _read_file_parameters(self, offset: int) -> FileParameters:
        file_parameters = self._track(read_struct(self.fh, c_vhdx.file_parameters, offset))
        return FileParameters(
            block_size=file_parameters.block_size,
            leave_block_allocated=bool(file_parameters.leave_block_allocated),
            has_parent=bool(file_parameters.has_parent),
        )

    def _read_string(self, offset: int, length: int) -> str:
        if length % 2:
            raise InvalidVirtualDisk(f"Parent locator string at {offset:#x} has an odd UTF-16 byte length: {length}")

        try:
            value = self._track(read_utf16(self.fh, length // 2, offset))
        except UnicodeDecodeError as e:
            raise InvalidVirtualDisk(f"Invalid UTF-16 string in parent locator at {offset:#x}") from e

        if "\x00" in value:
            raise InvalidVirtualDisk(f"Parent locator string at {offset:#x} contains a null character: {value!r}")

        return value

    def _read_parent_locator(self, offset: int) -> tuple[ParentLocatorDict, ParentLocator]:
        header = self._track(read_struct(self.fh, c_vhdx.parent_locator_header, offset))

        locator_type_id = UUID(bytes_le=header.locator_type)
        locator_type = PARENT_LOCATOR_TYPES.get(locator_type_id, ParentLocatorType.UNKNOWN)

        table = ParentLocatorDict(locator_type, locator_type_id, header.key_value_count)
        locator = ParentLocator(locator_type)

        entry_offset = offset + len(c_vhdx.parent_locator_header)
        for _ in range(header.key_value_count):
            descriptor = self._track(read_struct(self.fh, c_vhdx.parent_locator_entry, entry_offset))
            entry_offset += len(c_vhdx.parent_locator_entry)

            # Key and value offsets are relative to the start of the parent locator item
            entry = ParentLocatorEntry(
                key_offset=descriptor.key_offset,
                value_offset=descriptor.value_offset,
                key_length=descriptor.key_length,
                value_length=descriptor.value_length,
                key=self._read_string(offset + descriptor.key_offset, descriptor.key_length),
                value=self._read_string(offset + descriptor.value_offset, descriptor.value_length),
            )

            log.debug("Parent locator entry %s = %s", entry.key, entry.value)
            locator.update(entry.key, entry.value)
            table.entries.append(entry)

        return table, locator
