"""Master boot record encoding, decoding and validation (with optional OSIP header)."""

from __future__ import annotations

import binascii
import struct
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import FwupError

MBR_SIZE = 512
BOOTSTRAP_LEN = 440
NUM_PARTITIONS = 4
MAX_OSII = 16

# The cylinder/head/sector geometry is fixed; it is irrelevant for flash media.
SECTORS_PER_HEAD = 63
HEADS_PER_CYLINDER = 255

_UINT32_MASK = 0xFFFFFFFF
_UINT32_MAX = 0xFFFFFFFF
_INT32_MAX = 0x7FFFFFFF
_ULONG_MAX = 2**64 - 1

_PARTITION_TABLE_OFFSET = 446
_PARTITION_ENTRY_SIZE = 16


@dataclass
class MbrPartition:
    """One of the four primary partition entries."""

    boot_flag: bool = False
    expand_flag: bool = False
    partition_type: int = 0
    block_offset: int = 0
    block_count: int = 0


@dataclass
class Osii:
    """An OS image descriptor inside an OSIP header."""

    os_minor: int = 0
    os_major: int = 0
    start_block_offset: int = 0
    ddr_load_address: int = 0
    entry_point: int = 0
    image_size: int = 0
    attribute: int = 0


@dataclass
class OsipHeader:
    """OS image profile header stored in the bootstrap area of the MBR."""

    include_osip: bool = False
    minor: int = 0
    major: int = 0
    num_pointers: int = 0
    num_images: int = 0
    descriptors: list[Osii] = field(default_factory=lambda: [Osii() for _ in range(MAX_OSII)])


def _strtoul(text: str) -> tuple[int, str, bool]:
    """Parse an unsigned integer the way strtoul(text, &end, 0) does.

    Returns the value, the unparsed remainder and whether it overflowed.
    """
    s = text.lstrip()
    negative = False
    if s and s[0] in "+-":
        negative = s[0] == "-"
        s = s[1:]

    if len(s) > 2 and s[:2].lower() == "0x" and s[2] in "0123456789abcdefABCDEF":
        base, digits_allowed, s = 16, "0123456789abcdefABCDEF", s[2:]
    elif s.startswith("0"):
        base, digits_allowed = 8, "01234567"
    else:
        base, digits_allowed = 10, "0123456789"

    end = 0
    while end < len(s) and s[end] in digits_allowed:
        end += 1
    if end == 0:
        return 0, text, False

    value = int(s[:end], base)
    rest = s[end:]
    if value > _ULONG_MAX:
        return _ULONG_MAX, rest, True
    if negative:
        value = (-value) % (_ULONG_MAX + 1)
    return value, rest, False


def _sections(cfg: Mapping[str, Any], name: str) -> Iterable[tuple[str, Mapping[str, Any]]]:
    sections = cfg.get(name)
    if not sections:
        return []
    if isinstance(sections, Mapping):
        return [(str(title), opts) for title, opts in sections.items()]
    return [(str(title), opts) for title, opts in sections]


def _get_int(section: Mapping[str, Any], key: str, default: int = 0) -> int:
    value = section.get(key)
    return default if value is None else int(value)


def _get_bool(section: Mapping[str, Any], key: str) -> bool:
    return bool(section.get(key, False))


def verify_partitions(partitions: list[MbrPartition]) -> None:
    """Check that partition types are valid and that partitions don't overlap."""
    expanding = False
    for i, part in enumerate(partitions):
        if not 0 <= part.partition_type <= 0xFF:
            raise FwupError("invalid partition type")

        ileft = part.block_offset & _UINT32_MASK
        iright = (ileft + part.block_count) & _UINT32_MASK

        if part.partition_type == 0:
            continue
        if ileft == iright and not part.expand_flag:
            continue

        if expanding:
            raise FwupError(
                'a partition can\'t be specified after the one with "expand = true"'
            )
        if part.expand_flag:
            expanding = True

        for j, other in enumerate(partitions):
            if j == i:
                continue
            jleft = other.block_offset & _UINT32_MASK
            jright = (jleft + other.block_count) & _UINT32_MASK
            if other.partition_type == 0 or jleft == jright:
                continue
            if jleft <= ileft < jright or jleft < iright <= jright:
                raise FwupError(
                    f"partitions {i} (blocks {ileft} to {iright}) and "
                    f"{j} (blocks {jleft} to {jright}) overlap"
                )


def _lba_to_chs(lba: int, output: bytearray, pos: int) -> None:
    # Offsets that can't be expressed in CHS form are left alone.
    if lba <= SECTORS_PER_HEAD * HEADS_PER_CYLINDER * 0x3FF:
        cylinder = lba // (SECTORS_PER_HEAD * HEADS_PER_CYLINDER)
        head = (lba // SECTORS_PER_HEAD) % HEADS_PER_CYLINDER
        sector = (lba % SECTORS_PER_HEAD) + 1
        output[pos] = head & 0xFF
        output[pos + 1] = (((cylinder & 0x300) >> 2) | sector) & 0xFF
        output[pos + 2] = cylinder & 0xFF


def _write_partition(part: MbrPartition, output: bytearray, pos: int, num_blocks: int) -> None:
    offset = part.block_offset & _UINT32_MASK
    block_count = part.block_count & _UINT32_MASK

    if part.expand_flag and num_blocks > ((offset + block_count) & _UINT32_MASK):
        block_count = (num_blocks - offset) & _UINT32_MASK

    if part.partition_type > 0:
        output[pos] = 0x80 if part.boot_flag else 0x00
        _lba_to_chs(offset, output, pos + 1)
        output[pos + 4] = part.partition_type
        _lba_to_chs((offset + block_count - 1) & _UINT32_MASK, output, pos + 5)
    else:
        output[pos : pos + 8] = bytes(8)

    # Unused entries may still carry data in their offset and count fields.
    struct.pack_into("<II", output, pos + 8, offset, block_count)


def _write_osip(osip: OsipHeader, output: bytearray) -> None:
    num_images = osip.num_images & 0xFF
    header_size = 32 + 24 * num_images

    output[0:4] = b"$OS$"
    output[4] = 0
    output[5] = osip.minor & 0xFF
    output[6] = osip.major & 0xFF
    output[7] = 0
    output[8] = osip.num_pointers & 0xFF
    output[9] = num_images
    struct.pack_into("<H", output, 10, header_size)
    output[12:32] = bytes(20)

    for index, desc in enumerate(osip.descriptors[:num_images]):
        struct.pack_into(
            "<HHIIIIB3x",
            output,
            32 + 24 * index,
            desc.os_minor & 0xFFFF,
            desc.os_major & 0xFFFF,
            desc.start_block_offset & _UINT32_MASK,
            desc.ddr_load_address & _UINT32_MASK,
            desc.entry_point & _UINT32_MASK,
            desc.image_size & _UINT32_MASK,
            desc.attribute & 0xFF,
        )

    checksum = 0
    for byte in output[:header_size]:
        checksum ^= byte
    output[7] = checksum


def create_mbr(
    partitions: list[MbrPartition],
    bootstrap: bytes | None = None,
    osip: OsipHeader | None = None,
    signature: int = 0,
    num_blocks: int = 0,
) -> bytes:
    """Encode a 512-byte MBR. num_blocks of 0 means the media size is unknown."""
    include_osip = osip is not None and osip.include_osip
    if bootstrap is not None and include_osip:
        raise FwupError("Can't specify both bootstrap and OSIP in MBR")
    if len(partitions) != NUM_PARTITIONS:
        raise FwupError("an MBR needs exactly 4 partition entries")

    verify_partitions(partitions)

    output = bytearray(MBR_SIZE)
    if bootstrap is not None:
        if len(bootstrap) != BOOTSTRAP_LEN:
            raise FwupError("bootstrap-code should be exactly 440 bytes")
        output[:BOOTSTRAP_LEN] = bootstrap

    if include_osip:
        assert osip is not None
        _write_osip(osip, output)

    struct.pack_into("<I", output, 440, signature & _UINT32_MASK)
    output[444] = 0
    output[445] = 0

    num_blocks &= _UINT32_MASK
    for index, part in enumerate(partitions):
        _write_partition(
            part, output, _PARTITION_TABLE_OFFSET + index * _PARTITION_ENTRY_SIZE, num_blocks
        )

    output[510] = 0x55
    output[511] = 0xAA
    return bytes(output)


def decode_mbr(data: bytes) -> list[MbrPartition]:
    """Decode the four partition entries of a 512-byte MBR."""
    if len(data) < MBR_SIZE:
        raise FwupError("MBR must be 512 bytes")
    if data[510] != 0x55 or data[511] != 0xAA:
        raise FwupError("MBR signature missing")

    partitions = []
    for index in range(NUM_PARTITIONS):
        pos = _PARTITION_TABLE_OFFSET + index * _PARTITION_ENTRY_SIZE
        offset, count = struct.unpack_from("<II", data, pos + 8)
        partitions.append(
            MbrPartition(
                boot_flag=bool(data[pos] & 0x80),
                partition_type=data[pos + 4],
                block_offset=offset,
                block_count=count,
            )
        )
    return partitions


def config_to_partitions(cfg: Mapping[str, Any]) -> tuple[list[MbrPartition], int]:
    """Build the partition list from a configuration; also return the bitmask of found entries.

    cfg["partition"] is either a mapping of title to options or a sequence of
    (title, options) pairs.
    """
    partitions = [MbrPartition() for _ in range(NUM_PARTITIONS)]
    found = 0

    for title, section in _sections(cfg, "partition"):
        index, _, _ = _strtoul(title)
        if index >= NUM_PARTITIONS:
            raise FwupError("partition must be numbered 0 through 3")
        if found & (1 << index):
            raise FwupError(f"invalid or duplicate partition number found for {index}")
        found |= 1 << index

        part_type = _get_int(section, "type")
        if not 0 <= part_type <= 0xFF:
            raise FwupError(f"partition {index}'s type must be between 0 and 255")
        part = partitions[index]
        part.partition_type = part_type

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

        part.boot_flag = _get_bool(section, "boot")
        part.expand_flag = _get_bool(section, "expand")

    return partitions, found


def config_to_osip(cfg: Mapping[str, Any]) -> OsipHeader:
    """Build the OSIP header from a configuration."""
    osip = OsipHeader(include_osip=_get_bool(cfg, "include-osip"))
    if not osip.include_osip:
        return osip

    osip.major = _get_int(cfg, "osip-major") & 0xFF
    osip.minor = _get_int(cfg, "osip-minor") & 0xFF
    osip.num_pointers = _get_int(cfg, "osip-num-pointers") & 0xFF

    found = 0
    largest = -1
    for title, section in _sections(cfg, "osii"):
        index, _, _ = _strtoul(title)
        if index >= 15:
            raise FwupError("osii must be numbered 0 through 15")
        if found & (1 << index):
            raise FwupError("invalid or duplicate osii number found")
        found |= 1 << index
        largest = max(largest, index)

        osip.descriptors[index] = Osii(
            os_minor=_get_int(section, "os-minor") & 0xFFFF,
            os_major=_get_int(section, "os-major") & 0xFFFF,
            start_block_offset=_get_int(section, "start-block-offset") & _UINT32_MASK,
            ddr_load_address=_get_int(section, "ddr-load-address") & _UINT32_MASK,
            entry_point=_get_int(section, "entry-point") & _UINT32_MASK,
            image_size=_get_int(section, "image-size-blocks") & _UINT32_MASK,
            attribute=_get_int(section, "attribute") & 0xFF,
        )

    osip.num_images = largest + 1
    if osip.num_images == 0:
        raise FwupError("need to specify one or more osii")
    return osip


def verify_config(cfg: Mapping[str, Any]) -> None:
    """Validate an MBR configuration without encoding it."""
    bootstrap_hex = cfg.get("bootstrap-code")
    if bootstrap_hex is not None and len(bootstrap_hex) != BOOTSTRAP_LEN * 2:
        raise FwupError("bootstrap-code should be exactly 440 bytes")

    osip = config_to_osip(cfg)
    if osip.include_osip and bootstrap_hex is not None:
        raise FwupError("cannot specify OSIP if including bootstrap code")

    partitions, found = config_to_partitions(cfg)
    if found == 0:
        raise FwupError("empty partition table?")

    verify_partitions(partitions)


def _hex_to_bootstrap(text: str) -> bytes:
    try:
        data = binascii.unhexlify(text)
    except (binascii.Error, ValueError) as exc:
        raise FwupError("Invalid hex string in bootstrap-code") from exc
    if len(data) != BOOTSTRAP_LEN:
        raise FwupError("bootstrap-code should be exactly 440 bytes")
    return data


def create_from_config(cfg: Mapping[str, Any], num_blocks: int = 0) -> bytes:
    """Encode the MBR described by a configuration."""
    partitions, _ = config_to_partitions(cfg)
    osip = config_to_osip(cfg)

    bootstrap_hex = cfg.get("bootstrap-code")
    bootstrap = _hex_to_bootstrap(bootstrap_hex) if bootstrap_hex is not None else None

    raw_signature = cfg.get("signature")
    signature = 0 if raw_signature is None else _strtoul(str(raw_signature))[0]

    return create_mbr(partitions, bootstrap, osip, signature & _UINT32_MASK, num_blocks)