from __future__ import annotations

from enum import Enum
from uuid import UUID

from dissect.cstruct import cstruct

vhdx_def = """
enum PayloadBlockState : uint8 {
    PAYLOAD_BLOCK_NOT_PRESENT           = 0,
    PAYLOAD_BLOCK_UNDEFINED             = 1,
    PAYLOAD_BLOCK_ZERO                  = 2,
    PAYLOAD_BLOCK_UNMAPPED              = 3,
    PAYLOAD_BLOCK_FULLY_PRESENT         = 6,
    PAYLOAD_BLOCK_PARTIALLY_PRESENT     = 7,
};

enum SectorBlockState : uint8 {
    SB_BLOCK_NOT_PRESENT                = 0,
    SB_BLOCK_PRESENT                    = 6,
};

struct header {
    char    signature[4];
    uint32  checksum;
    uint64  sequence_number;
    char    file_write_guid[16];
    char    data_write_guid[16];
    char    log_guid[16];
    uint16  log_version;
    uint16  version;
    uint32  log_length;
    uint64  log_offset;
};

struct region_table_header {
    char    signature[4];
    uint32  checksum;
    uint32  entry_count;
    char    reserved[4];
};

struct region_table_entry {
    char    guid[16];
    uint64  file_offset;
    uint32  length;
    uint32  required:1;
    uint32  reserved:31;
};

struct metadata_table_header {
    char    signature[8];
    char    reserved[2];
    uint16  entry_count;
    char    reserved2[20];
};

struct metadata_table_entry {
    char    item_id[16];
    uint32  offset;
    uint32  length;
    uint32  is_user:1;
    uint32  is_virtual_disk:1;
    uint32  is_required:1;
    uint32  reserved:29;
    uint32  reserved2;
};

struct file_parameters {
    uint32  block_size;
    uint32  leave_block_allocated:1;
    uint32  has_parent:1;
    uint32  reserved:30;
};

struct parent_locator_header {
    char    locator_type[16];
    uint16  reserved;
    uint16  key_value_count;
};

struct parent_locator_entry {
    uint32  key_offset;
    uint32  value_offset;
    uint16  key_length;
    uint16  value_length;
};
"""

c_vhdx = cstruct().load(vhdx_def)

KB = 1024
MB = 1024 * KB

# Both the header and region table copies live at multiples of this alignment
ALIGNMENT = 64 * KB

HEADER_OFFSETS = (1 * ALIGNMENT, 2 * ALIGNMENT)
HEADER_SIZE = 4 * KB
HEADER_SIGNATURE = b"head"

REGION_TABLE_OFFSETS = (3 * ALIGNMENT, 4 * ALIGNMENT)
REGION_TABLE_SIZE = 64 * KB
REGION_TABLE_SIGNATURE = b"regi"
REGION_TABLE_MAX_ENTRIES = 2047
REGION_MIN_OFFSET = 1 * MB
REGION_ALIGNMENT = 1 * MB

METADATA_TABLE_SIGNATURE = b"metadata"
METADATA_TABLE_MAX_ENTRIES = 2047

# Offset of the 4 byte checksum field in both the header and the region table header
CHECKSUM_OFFSET = 4
CHECKSUM_SIZE = 4

BAT_ENTRY_SIZE = 8
BAT_STATE_MASK = 0x7
BAT_FILE_OFFSET_MASK = 0xFFFFFFFFFFF00000
BAT_FILE_OFFSET_SHIFT = 20

CHUNK_RATIO_MULTIPLIER = 2**23

PayloadBlockState = c_vhdx.PayloadBlockState
SectorBlockState = c_vhdx.SectorBlockState

# The payload state codes are sparse, 4 and 5 are invalid
PAYLOAD_BLOCK_STATES = frozenset(state.value for state in PayloadBlockState)
SECTOR_BLOCK_STATES = frozenset(state.value for state in SectorBlockState)

BAT_REGION_GUID = UUID("2DC27766-F623-4200-9D64-115E9BFD4A08")
METADATA_REGION_GUID = UUID("8B7CA206-4790-4B9A-B8FE-575F050F886E")

FILE_PARAMETERS_GUID = UUID("CAA16737-FA36-4D43-B3B6-33F0AA44E76B")
LOGICAL_SECTOR_SIZE_GUID = UUID("8141BF1D-A96F-4709-BA47-F233A8FAAB5F")
PARENT_LOCATOR_GUID = UUID("A8D35F2D-B30B-454D-ABF7-D3D84834AB0C")
PHYSICAL_SECTOR_SIZE_GUID = UUID("CDA348C7-445D-4471-9CC9-E9885251C556")
VIRTUAL_DISK_ID_GUID = UUID("BECA12AB-B2E6-4523-93EF-C309E000C746")
VIRTUAL_DISK_SIZE_GUID = UUID("2FA54224-CD1B-4876-B211-5DBED83BF4B8")

VHDX_PARENT_LOCATOR_GUID = UUID("B04AEFB7-D19E-4A81-B789-25B8E9445913")


class RegionKind(Enum):
    BAT = "bat"
    METADATA = "metadata"
    UNKNOWN = "unknown"


class MetadataKind(Enum):
    FILE_PARAMETERS = "file_parameters"
    VIRTUAL_DISK_SIZE = "virtual_disk_size"
    VIRTUAL_DISK_ID = "virtual_disk_id"
    LOGICAL_SECTOR_SIZE = "logical_sector_size"
    PHYSICAL_SECTOR_SIZE = "physical_sector_size"
    PARENT_LOCATOR = "parent_locator"
    UNKNOWN = "unknown"


class ParentLocatorType(Enum):
    VHDX = "vhdx"
    UNKNOWN = "unknown"


class DiskType(Enum):
    FIXED = "fixed"
    DYNAMIC = "dynamic"
    DIFFERENCING = "differencing"


REGION_KINDS = {
    BAT_REGION_GUID: RegionKind.BAT,
    METADATA_REGION_GUID: RegionKind.METADATA,
}

METADATA_KINDS = {
    FILE_PARAMETERS_GUID: MetadataKind.FILE_PARAMETERS,
    VIRTUAL_DISK_SIZE_GUID: MetadataKind.VIRTUAL_DISK_SIZE,
    VIRTUAL_DISK_ID_GUID: MetadataKind.VIRTUAL_DISK_ID,
    LOGICAL_SECTOR_SIZE_GUID: MetadataKind.LOGICAL_SECTOR_SIZE,
    PHYSICAL_SECTOR_SIZE_GUID: MetadataKind.PHYSICAL_SECTOR_SIZE,
    PARENT_LOCATOR_GUID: MetadataKind.PARENT_LOCATOR,
}

PARENT_LOCATOR_TYPES = {
    VHDX_PARENT_LOCATOR_GUID: ParentLocatorType.VHDX,
}

PARENT_LINKAGE_KEYS = frozenset(("parent_linkage", "parent_linkage2"))
PARENT_PATH_KEYS = frozenset(("relative_path", "volume_path", "absolute_win32_path"))
