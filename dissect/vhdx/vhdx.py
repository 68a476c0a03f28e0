# References:
# - [MS-VHDX] https://docs.microsoft.com/en-us/openspecs/windows_protocols/ms-vhdx/83e061f8-f6e2-4de1-91bd-5d518a43d477

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Callable, Iterator, Optional, Union

from dissect.vhdx.bat import BlockAllocationTable
from dissect.vhdx.c_vhdx import (
    BAT_REGION_GUID,
    METADATA_REGION_GUID,
    DiskType,
    ParentLocatorType,
    PayloadBlockState,
)
from dissect.vhdx.exceptions import ParentLinkageMismatch
from dissect.vhdx.header import read_header
from dissect.vhdx.metadata import MetadataTable, ParentLocator
from dissect.vhdx.region import read_region_table

if TYPE_CHECKING:
    from types import TracebackType

    from typing_extensions import Self

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_VHDX", "CRITICAL"))


class VHDX:
    """Hyper-V VHDX implementation.

    Decodes and validates the structures of fixed, dynamic and differencing VHDX files for inspection: the headers,
    the region table, the metadata and the block allocation table. Reading the virtual disk contents is not
    supported.

    Any validation failure raises an exception from the constructor, a partially decoded file is never returned.
    When given a path, the file is opened here and closed again on a validation failure or by :meth:`close`.

    Args:
        fh: A file-like object or path of the VHDX file.
        following_chain: Whether this file is decoded as the parent of another VHDX file.
    """

    def __init__(self, fh: Union[BinaryIO, Path, str], following_chain: bool = False):
        if hasattr(fh, "read"):
            name = getattr(fh, "name", None)
            path = Path(name) if isinstance(name, str) else None
            self._opened = False
        else:
            if not isinstance(fh, Path):
                fh = Path(fh)
            path = fh
            fh = path.open("rb")
            self._opened = True

        self.fh = fh
        self.path = path
        self.following_chain = following_chain

        try:
            self._decode()
        except BaseException:
            self.close()
            raise

    def _decode(self) -> None:
        fh = self.fh
        following_chain = self.following_chain

        self.header_offset, self.header = read_header(fh)
        log.debug("Using header at %#x (sequence number %d)", self.header_offset, self.header.sequence_number)

        self.region_table = read_region_table(fh)

        metadata_region = self.region_table.get(METADATA_REGION_GUID)
        self.metadata_table = MetadataTable(fh, metadata_region.offset, metadata_region.length)
        self.metadata = self.metadata_table.metadata

        self.size = self.metadata.virtual_disk_size
        self.block_size = self.metadata.file_parameters.block_size
        self.has_parent = self.metadata.file_parameters.has_parent
        self.sector_size = self.metadata.logical_sector_size
        self.physical_sector_size = self.metadata.physical_sector_size
        self.id = self.metadata.virtual_disk_id
        self.parent_locator = self.metadata.parent_locator

        bat_region = self.region_table.get(BAT_REGION_GUID)
        self.bat = BlockAllocationTable(fh, bat_region, self.metadata, following_chain)

    def __repr__(self) -> str:
        return f"<VHDX id={self.id} size={self.size:#x} type={self.disk_type.value}>"

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self, exc_type: type[BaseException] | None, exc_value: BaseException | None, traceback: TracebackType | None
    ) -> None:
        self.close()

    def close(self) -> None:
        """Close the VHDX file if we opened it."""
        if self._opened:
            self.fh.close()

    @property
    def log_region(self) -> tuple[int, int]:
        """The offset and length of the log region. The log itself is not parsed."""
        return self.header.log_offset, self.header.log_length

    @property
    def disk_type(self) -> DiskType:
        """Whether this is a fixed, dynamic or differencing disk."""
        if self.has_parent:
            return DiskType.DIFFERENCING

        sparse_states = (
            PayloadBlockState.PAYLOAD_BLOCK_NOT_PRESENT,
            PayloadBlockState.PAYLOAD_BLOCK_PARTIALLY_PRESENT,
        )
        # The last chunk may contain payload entries beyond the end of the virtual disk
        payload_entries = self.bat.payload_entries[: self.bat.values.payload_block_count]
        if any(entry.state in sparse_states for entry in payload_entries):
            return DiskType.DYNAMIC

        return DiskType.FIXED


def verify_parent_linkage(locator: ParentLocator, parent: VHDX) -> None:
    """Verify that ``parent`` is the disk the parent locator refers to.

    The data write GUID of the parent must match either of the parent linkage values of the child's locator.

    Raises:
        ParentLinkageMismatch: If neither linkage value matches.
    """
    data_write_id = parent.header.data_write_id
    if data_write_id not in (locator.parent_linkage, locator.parent_linkage2):
        raise ParentLinkageMismatch(
            f"Parent disk {parent.path or parent.fh} has data write GUID {data_write_id}, "
            f"expected {locator.parent_linkage} or {locator.parent_linkage2}"
        )


def open_chain(
    fh: Union[BinaryIO, Path, str],
    resolve_parent: Callable[[VHDX, ParentLocator], Optional[Union[BinaryIO, Path, str]]],
) -> Iterator[VHDX]:
    """Decode a VHDX file and then each of its ancestors.

    Locating the parent file is up to ``resolve_parent``, which is called with the child disk and its parent
    locator, and must return a file-like object or path of the parent. Returning ``None`` ends the chain. The caller
    owns any file-like objects it returns. Files opened from a path are closed by calling :meth:`VHDX.close` on
    the yielded disk, or right away when the parent fails to decode or doesn't match its child.

    The chain is followed until a disk without a parent locator, or with a parent locator of an unknown type, is
    found. There is no limit on the depth of the chain and no cycle detection, so a chain where a parent refers back
    to one of its descendants is followed forever.

    Args:
        fh: A file-like object or path of the VHDX file.
        resolve_parent: Callable that locates the parent of a VHDX file.

    Raises:
        ParentLinkageMismatch: If a parent doesn't match the linkage of its child.
    """
    vhdx = VHDX(fh)
    yield vhdx

    while vhdx.parent_locator is not None:
        locator = vhdx.parent_locator
        if locator.locator_type != ParentLocatorType.VHDX:
            log.warning(
                "Can't follow parent locator of unknown type %s", vhdx.metadata.parent_locator_dict.locator_type_id
            )
            return

        parent_fh = resolve_parent(vhdx, locator)
        if parent_fh is None:
            log.info("No parent found for %s, ending the chain", vhdx.path or vhdx.fh)
            return

        parent = VHDX(parent_fh, following_chain=True)
        try:
            verify_parent_linkage(locator, parent)
        except ParentLinkageMismatch:
            parent.close()
            raise
        log.debug("Parent %s matched by data write GUID %s", parent.path or parent.fh, parent.header.data_write_id)

        yield parent
        vhdx = parent
