from dissect.vhdx.bat import BlockAllocationTable, PayloadEntry, SectorEntry
from dissect.vhdx.c_vhdx import DiskType, PayloadBlockState, SectorBlockState
from dissect.vhdx.exceptions import (
    ChecksumMismatch,
    DegenerateComputation,
    Error,
    InconsistentRedundancy,
    InvalidSignature,
    InvalidStateCode,
    InvalidVirtualDisk,
    MissingExpectedField,
    ParentLinkageMismatch,
    ReadError,
    StructuralBoundsViolation,
    UnsupportedRequiredFeature,
)
from dissect.vhdx.header import Header
from dissect.vhdx.metadata import Metadata, MetadataTable, ParentLocator
from dissect.vhdx.region import RegionTable
from dissect.vhdx.vhdx import VHDX, open_chain

__all__ = [
    "BlockAllocationTable",
    "ChecksumMismatch",
    "DegenerateComputation",
    "DiskType",
    "Error",
    "Header",
    "InconsistentRedundancy",
    "InvalidSignature",
    "InvalidStateCode",
    "InvalidVirtualDisk",
    "Metadata",
    "MetadataTable",
    "MissingExpectedField",
    "ParentLinkageMismatch",
    "ParentLocator",
    "PayloadBlockState",
    "PayloadEntry",
    "ReadError",
    "RegionTable",
    "SectorBlockState",
    "SectorEntry",
    "StructuralBoundsViolation",
    "UnsupportedRequiredFeature",
    "VHDX",
    "open_chain",
]
