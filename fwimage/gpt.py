"""GUID partition table encoding and validation."""

from __future__ import annotations

import re
import struct
import uuid
import zlib
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any

from .errors import FwupError
from .mbr import _get_bool, _get_int, _sections, _strtoul

BLOCK_SIZE = 512
UUID_LENGTH = 16

# Only 16 partitions are supported even though GPT allows more.
GPT_MAX_PARTITIONS = 16
GPT_PARTITION_TABLE_BLOCKS = 32
GPT_SIZE_BLOCKS = 1 + GPT_PARTITION_TABLE_BLOCKS
GPT_SIZE = GPT_SIZE_BLOCKS * BLOCK_SIZE
GPT_PARTITION_SIZE = 128
GPT_HEADER_SIZE = 92
GPT_NAME_LEN = 72
GPT_NUM_ENTRIES = GPT_PARTITION_TABLE_BLOCKS * BLOCK_SIZE // GPT_PARTITION_SIZE

_UINT32_MASK = 0xFFFFFFFF
_UINT32_MAX = 0xFFFFFFFF
_INT32_MAX = 0x7FFFFFFF
_UINT64_MASK = 0xFFFFFFFFFFFFFFFF

_UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


@dataclass
class GptPartition:
    """One entry in the GPT partition table."""

    block_offset: int = 0
    block_count: int = 0
    flags: int = 0
    partition_type: bytes = bytes(UUID_LENGTH)
    guid: bytes = bytes(UUID_LENGTH)
    name: bytes = bytes(GPT_NAME_LEN)  # UTF-16LE
    expand_flag: bool = False
    valid: bool = False


@dataclass
class GptImage:
    """Encoded GPT: protective MBR plus primary GPT, and the secondary GPT with its location."""

    primary: bytes = b""
    secondary: bytes = b""
    secondary_offset: int = 0
    partitions: list[GptPartition] = field(default_factory=list)


def _uuid_to_mixed_endian(text: Any) -> bytes | None:
    if not isinstance(text, str) or not _UUID_RE.match(text):
        return None
    return uuid.UUID(text).bytes_le


def _name_to_utf16le(name: str) -> bytes:
    raw = name.encode("utf-8")[: GPT_NAME_LEN // 2]
    encoded = b"".join(bytes((b, 0)) for b in raw)
    return encoded.ljust(GPT_NAME_LEN, b"\0")


def verify_partitions(partitions: list[GptPartition]) -> None:
    """Check that the valid partitions don't overlap and that an expanding one is last."""
    expanding = False
    for i, part in enumerate(partitions):
        if not part.valid:
            continue
        ileft = part.block_offset & _UINT32_MASK
        iright = (ileft + part.block_count) & _UINT32_MASK
        if ileft == iright and not part.expand_flag:
            continue

        if expanding:
            raise FwupError(
                'a partition can\'t be specified after the one with "expand = true"'
            )
        if part.expand_flag:
            expanding = True

        for j, other in enumerate(partitions):
            if not other.valid or j == i:
                continue
            jleft = other.block_offset & _UINT32_MASK
            jright = (jleft + other.block_count) & _UINT32_MASK
            if jleft <= ileft < jright or jleft < iright <= jright:
                raise FwupError(
                    f"partitions {i} (blocks {ileft} to {iright}) and "
                    f"{j} (blocks {jleft} to {jright}) overlap"
                )


def config_to_partitions(cfg: Mapping[str, Any]) -> tuple[list[GptPartition], int]:
    """Build the partition list from a configuration; also return the bitmask of found entries.

    A partition with "boot" set has bit 2 added to its flags; when the section is
    mutable, its "flags" option is rewritten and "boot" cleared so that readers
    that only know "flags" see the same result.
    """
    partitions = [GptPartition() for _ in range(GPT_MAX_PARTITIONS)]
    found = 0

    for title, section in _sections(cfg, "partition"):
        index, _, _ = _strtoul(title)
        if index >= GPT_MAX_PARTITIONS:
            raise FwupError(f"partition must be numbered 0 through {GPT_MAX_PARTITIONS - 1}")
        if found & (1 << index):
            raise FwupError(f"invalid or duplicate partition number found for {index}")
        found |= 1 << index
        part = partitions[index]

        part_type = _uuid_to_mixed_endian(section.get("type"))
        if part_type is None:
            raise FwupError(f"partition {index}'s type must set to a UUID")
        part.partition_type = part_type

        guid = _uuid_to_mixed_endian(section.get("guid"))
        if guid is None:
            raise FwupError(f"partition {index} must have a valid guid")
        part.guid = guid

        part.name = _name_to_utf16le(str(section.get("name") or ""))

        raw_offset = section.get("block-offset")
        if raw_offset is None or str(raw_offset) == "":
            raise FwupError(f"partition {index}'s block_offset is required")
        raw_offset = str(raw_offset)
        block_offset, rest, overflow = _strtoul(raw_offset)
        if overflow or block_offset >= _UINT32_MAX:
            raise FwupError(
                f"partition {index}'s block_offset must be positive and less than "
                f"2^32 - 1: '{raw_offset}'"
            )
        if rest:
            raise FwupError(f"error parsing partition {index}'s block offset")
        part.block_offset = block_offset

        block_count = _get_int(section, "block-count", _INT32_MAX) & _UINT32_MASK
        if block_count >= _INT32_MAX:
            raise FwupError(
                f"partition {index}'s block-count must be specified and less than 2^31 - 1"
            )
        part.block_count = block_count

        part.expand_flag = _get_bool(section, "expand")

        flags = 0
        raw_flags = section.get("flags")
        if raw_flags is not None:
            value, rest, overflow = _strtoul(str(raw_flags))
            if overflow or rest:
                raise FwupError(f"error parsing partition {index}'s flags")
            flags = value

        if _get_bool(section, "boot"):
            flags |= 0x4
            if isinstance(section, MutableMapping):
                section["flags"] = f"0x{flags:x}"
                section["boot"] = False

        part.flags = flags & _UINT64_MASK
        part.valid = True

    return partitions, found


def verify_config(cfg: Mapping[str, Any]) -> None:
    """Validate a GPT configuration without encoding it."""
    if _uuid_to_mixed_endian(cfg.get("guid")) is None:
        raise FwupError("GPT must have a valid disk guid")

    partitions, found = config_to_partitions(cfg)
    if found == 0:
        raise FwupError("empty partition table?")

    verify_partitions(partitions)


def _compute_num_blocks(partitions: list[GptPartition]) -> int:
    last = 0
    for part in partitions:
        if part.valid:
            last = max(last, (part.block_offset + part.block_count) & _UINT32_MASK)
    # Room for the secondary GPT
    return (last + GPT_SIZE_BLOCKS + 1) & _UINT32_MASK


def _protective_mbr(output: bytearray, num_blocks: int) -> None:
    output[446] = 0
    output[446 + 2] = 0x02
    output[446 + 4] = 0xEE
    output[446 + 5 : 446 + 8] = b"\xff\xff\xff"
    struct.pack_into("<II", output, 446 + 8, 1, (num_blocks - 1) & _UINT32_MASK)
    output[510] = 0x55
    output[511] = 0xAA


def _partition_table(partitions: list[GptPartition], num_blocks: int) -> bytes:
    table = bytearray(GPT_NUM_ENTRIES * GPT_PARTITION_SIZE)
    for index, part in enumerate(partitions):
        if not part.valid:
            continue
        offset = part.block_offset & _UINT32_MASK
        block_count = part.block_count & _UINT32_MASK
        if part.expand_flag and num_blocks > offset + block_count + GPT_SIZE_BLOCKS:
            block_count = (num_blocks - GPT_SIZE_BLOCKS - 1 - offset) & _UINT32_MASK

        first_lba = offset
        last_lba = (offset + block_count - 1) & _UINT32_MASK

        pos = index * GPT_PARTITION_SIZE
        table[pos : pos + 16] = part.partition_type
        table[pos + 16 : pos + 32] = part.guid
        struct.pack_into("<QQQ", table, pos + 32, first_lba, last_lba, part.flags & _UINT64_MASK)
        table[pos + 56 : pos + 56 + GPT_NAME_LEN] = part.name[:GPT_NAME_LEN].ljust(
            GPT_NAME_LEN, b"\0"
        )
    return bytes(table)


def _gpt_header(
    *,
    current_lba: int,
    backup_lba: int,
    first_usable_lba: int,
    last_usable_lba: int,
    disk_guid: bytes,
    partition_lba: int,
    partition_crc: int,
) -> bytes:
    block = bytearray(BLOCK_SIZE)
    block[0:8] = b"EFI PART"
    struct.pack_into("<II", block, 8, 0x00010000, GPT_HEADER_SIZE)
    struct.pack_into(
        "<QQQQ", block, 24, current_lba, backup_lba, first_usable_lba, last_usable_lba
    )
    block[56:72] = disk_guid
    struct.pack_into(
        "<QIII", block, 72, partition_lba, GPT_NUM_ENTRIES, GPT_PARTITION_SIZE, partition_crc
    )
    struct.pack_into("<I", block, 16, zlib.crc32(bytes(block[:GPT_HEADER_SIZE])))
    return bytes(block)


def create_from_config(cfg: Mapping[str, Any], num_blocks: int = 0) -> GptImage:
    """Encode the GPT described by a configuration.

    num_blocks of 0 means the media size is unknown; the size is then taken
    from the partitions. The primary image goes at LBA 0 and the secondary at
    the returned byte offset.
    """
    partitions, _ = config_to_partitions(cfg)

    num_blocks &= _UINT32_MASK
    if num_blocks == 0:
        num_blocks = _compute_num_blocks(partitions)

    disk_guid = _uuid_to_mixed_endian(cfg.get("guid"))
    if disk_guid is None:
        raise FwupError("GPT must have a valid disk guid")

    table = _partition_table(partitions, num_blocks)
    partition_crc = zlib.crc32(table)

    first_usable = 1 + GPT_SIZE_BLOCKS
    last_usable = (num_blocks - GPT_SIZE_BLOCKS - 1) & _UINT32_MASK
    backup = (num_blocks - 1) & _UINT32_MASK
    secondary_table_lba = (num_blocks - GPT_SIZE_BLOCKS) & _UINT32_MASK

    primary = bytearray(GPT_SIZE + BLOCK_SIZE)
    _protective_mbr(primary, num_blocks)
    primary[BLOCK_SIZE : 2 * BLOCK_SIZE] = _gpt_header(
        current_lba=1,
        backup_lba=backup,
        first_usable_lba=first_usable,
        last_usable_lba=last_usable,
        disk_guid=disk_guid,
        partition_lba=2,
        partition_crc=partition_crc,
    )
    primary[2 * BLOCK_SIZE :] = table

    secondary = bytearray(GPT_SIZE)
    secondary[: len(table)] = table
    secondary[GPT_SIZE - BLOCK_SIZE :] = _gpt_header(
        current_lba=backup,
        backup_lba=1,
        first_usable_lba=first_usable,
        last_usable_lba=last_usable,
        disk_guid=disk_guid,
        partition_lba=secondary_table_lba,
        partition_crc=partition_crc,
    )

    return GptImage(
        primary=bytes(primary),
        secondary=bytes(secondary),
        secondary_offset=secondary_table_lba * BLOCK_SIZE,
        partitions=partitions,
    )