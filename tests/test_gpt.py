import struct
import uuid
import zlib

import pytest

from fwimage import gpt
from fwimage.errors import FwupError

DISK_GUID = "b443fbeb-2c93-481b-88b3-0ecb0aeba911"
EFI_TYPE = "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"
LINUX_TYPE = "0fc63daf-8483-4772-8e79-3d69d8477de4"
PART0_GUID = "5278721d-0089-4768-85df-b8f1b97e6684"
PART1_GUID = "fcc205c8-2f1c-4dcd-bef4-7b209aa15cca"

ENTRY0 = 2 * gpt.BLOCK_SIZE


def _part(offset="2048", count=1024, **extra):
    opts = {
        "type": EFI_TYPE,
        "guid": PART0_GUID,
        "name": "boot",
        "block-offset": offset,
        "block-count": count,
    }
    opts.update(extra)
    return opts


def _cfg(*parts):
    return {"guid": DISK_GUID, "partition": {str(i): p for i, p in enumerate(parts)}}


def _header(block):
    return struct.unpack_from("<8sIIIIQQQQ16sQIII", block, 0)


def test_sizes_and_signatures():
    image = gpt.create_from_config(_cfg(_part()))
    assert len(image.primary) == gpt.GPT_SIZE + gpt.BLOCK_SIZE
    assert len(image.secondary) == gpt.GPT_SIZE
    assert image.primary[510:512] == b"\x55\xaa"
    assert image.primary[512:520] == b"EFI PART"
    assert image.secondary[-512:-504] == b"EFI PART"


def test_protective_mbr():
    image = gpt.create_from_config(_cfg(_part()), 100000)
    mbr = image.primary[:512]
    assert mbr[446 + 4] == 0xEE
    assert mbr[446 + 5 : 446 + 8] == b"\xff\xff\xff"
    start, count = struct.unpack_from("<II", mbr, 446 + 8)
    assert start == 1
    assert count + 1 == 100000


def test_header_fields_fixed_by_format():
    image = gpt.create_from_config(_cfg(_part()))
    hdr = _header(image.primary[512:1024])
    assert hdr[1] == 0x00010000
    assert hdr[2] == 92
    assert hdr[5] == 1  # current lba
    assert hdr[7] == gpt.GPT_SIZE_BLOCKS + 1  # first usable
    assert hdr[9] == uuid.UUID(DISK_GUID).bytes_le
    assert hdr[10] == 2
    assert hdr[11] == gpt.GPT_NUM_ENTRIES
    assert hdr[12] == 128


def test_header_crcs_are_valid():
    image = gpt.create_from_config(_cfg(_part()))
    for block in (image.primary[512:1024], image.secondary[-512:]):
        stored = struct.unpack_from("<I", block, 16)[0]
        zeroed = block[:16] + b"\0\0\0\0" + block[20:92]
        assert stored == zlib.crc32(zeroed)
        assert block[92:] == bytes(512 - 92)


def test_partition_crc_and_tables_match():
    image = gpt.create_from_config(_cfg(_part(), _part(offset="4096", guid=PART1_GUID)))
    table_len = gpt.GPT_NUM_ENTRIES * gpt.GPT_PARTITION_SIZE
    primary_table = image.primary[ENTRY0 : ENTRY0 + table_len]
    secondary_table = image.secondary[:table_len]
    assert primary_table == secondary_table
    for block in (image.primary[512:1024], image.secondary[-512:]):
        assert _header(block)[13] == zlib.crc32(secondary_table)


def test_primary_and_secondary_headers_point_at_each_other():
    image = gpt.create_from_config(_cfg(_part()), 200000)
    prim = _header(image.primary[512:1024])
    sec = _header(image.secondary[-512:])
    assert prim[6] == sec[5]
    assert sec[6] == prim[5]
    assert prim[6] + 1 == 200000
    assert sec[10] * gpt.BLOCK_SIZE == image.secondary_offset
    assert sec[10] + gpt.GPT_SIZE_BLOCKS == 200000


def test_unknown_size_places_secondary_after_partitions():
    image = gpt.create_from_config(_cfg(_part(offset="2048", count=1024)))
    prim = _header(image.primary[512:1024])
    last_usable = prim[8]
    assert last_usable >= 2048 + 1024 - 1
    assert image.secondary_offset // gpt.BLOCK_SIZE > last_usable


def test_partition_entry_contents():
    image = gpt.create_from_config(_cfg(_part(offset="2048", count=1024)))
    entry = image.primary[ENTRY0 : ENTRY0 + 128]
    assert entry[0:16] == uuid.UUID(EFI_TYPE).bytes_le
    # Mixed-endian: first field little-endian
    assert entry[0:4] == b"\x28\x73\x2a\xc1"
    assert entry[16:32] == uuid.UUID(PART0_GUID).bytes_le
    first, last = struct.unpack_from("<QQ", entry, 32)
    assert first == 2048
    assert last - first + 1 == 1024
    assert entry[56:64] == "boot".encode("utf-16-le")
    assert entry[64:128] == bytes(64)


def test_unused_entries_are_zero():
    image = gpt.create_from_config(_cfg(_part()))
    assert image.primary[ENTRY0 + 128 : ENTRY0 + 256] == bytes(128)


def test_long_name_truncated_to_36_chars():
    image = gpt.create_from_config(_cfg(_part(name="n" * 50)))
    entry = image.primary[ENTRY0 : ENTRY0 + 128]
    assert entry[56:128] == ("n" * 36).encode("utf-16-le")


def test_boot_sets_flag_and_rewrites_config():
    cfg = _cfg(_part(boot=True))
    image = gpt.create_from_config(cfg)
    flags = struct.unpack_from("<Q", image.primary, ENTRY0 + 48)[0]
    assert flags & 0x4
    assert cfg["partition"]["0"]["flags"] == "0x4"
    assert cfg["partition"]["0"]["boot"] is False


def test_explicit_flags_round_trip():
    image = gpt.create_from_config(_cfg(_part(flags="0x8000000000000000")))
    flags = struct.unpack_from("<Q", image.primary, ENTRY0 + 48)[0]
    assert flags == 0x8000000000000000


def test_expand_fills_to_last_usable():
    cfg = _cfg(_part(offset="2048", count=1024, expand=True))
    image = gpt.create_from_config(cfg, 100000)
    last_usable = _header(image.primary[512:1024])[8]
    first, last = struct.unpack_from("<QQ", image.primary, ENTRY0 + 32)
    assert first == 2048
    assert last + 1 == last_usable


def test_expand_without_size_keeps_count():
    image = gpt.create_from_config(_cfg(_part(offset="2048", count=1024, expand=True)))
    first, last = struct.unpack_from("<QQ", image.primary, ENTRY0 + 32)
    assert last - first + 1 == 1024


def test_config_to_partitions_found_mask():
    partitions, found = gpt.config_to_partitions(
        {"partition": [("0", _part()), ("3", _part(offset="9000", guid=PART1_GUID))]}
    )
    assert found == (1 << 0) | (1 << 3)
    assert len(partitions) == gpt.GPT_MAX_PARTITIONS
    assert [p.valid for p in partitions[:4]] == [True, False, False, True]
    assert partitions[3].block_offset == 9000


@pytest.mark.parametrize(
    "parts, message",
    [
        ([("16", _part())], "numbered 0 through 15"),
        ([("0", _part()), ("0", _part())], "duplicate"),
        ([("0", _part(type="not-a-uuid"))], "type must set to a UUID"),
        ([("0", _part(guid="1234"))], "valid guid"),
        ([("0", _part(offset=""))], "block_offset is required"),
        ([("0", _part(offset="4294967295"))], "less than 2^32 - 1"),
        ([("0", _part(offset="12abc"))], "error parsing partition 0's block offset"),
        ([("0", {k: v for k, v in _part().items() if k != "block-count"})], "block-count"),
        ([("0", _part(flags="zz"))], "error parsing partition 0's flags"),
    ],
)
def test_config_errors(parts, message):
    with pytest.raises(FwupError, match=None) as excinfo:
        gpt.config_to_partitions({"partition": parts})
    assert message in str(excinfo.value)


def test_verify_config_overlap():
    cfg = _cfg(_part(offset="2048", count=1024), _part(offset="2500", count=10, guid=PART1_GUID))
    with pytest.raises(FwupError, match="overlap"):
        gpt.verify_config(cfg)


def test_verify_config_expand_not_last():
    cfg = _cfg(
        _part(offset="2048", count=1024, expand=True),
        _part(offset="9000", count=10, guid=PART1_GUID),
    )
    with pytest.raises(FwupError, match="expand = true"):
        gpt.verify_config(cfg)


def test_verify_config_empty_table():
    with pytest.raises(FwupError, match="empty partition table"):
        gpt.verify_config({"guid": DISK_GUID})


@pytest.mark.parametrize("guid", [None, "bogus", DISK_GUID + "0"])
def test_bad_disk_guid(guid):
    cfg = _cfg(_part())
    cfg["guid"] = guid
    with pytest.raises(FwupError, match="disk guid"):
        gpt.verify_config(cfg)
    with pytest.raises(FwupError, match="disk guid"):
        gpt.create_from_config(cfg)


def test_verify_partitions_ignores_invalid_and_empty():
    parts = [gpt.GptPartition() for _ in range(gpt.GPT_MAX_PARTITIONS)]
    parts[0] = gpt.GptPartition(block_offset=100, block_count=50, valid=True)
    parts[1] = gpt.GptPartition(block_offset=120, block_count=10, valid=False)
    parts[2] = gpt.GptPartition(block_offset=149, block_count=2, valid=True)
    with pytest.raises(FwupError, match="partitions 0 .* and 2 .* overlap"):
        gpt.verify_partitions(parts)
    parts[2] = gpt.GptPartition(block_offset=150, block_count=2, valid=True)
    parts[3] = gpt.GptPartition(block_offset=125, block_count=0, valid=True)
    assert gpt.verify_partitions(parts) is None
    image_ok = gpt.create_from_config(
        _cfg(_part(offset="100", count=50), _part(offset="150", count=2, guid=PART1_GUID))
    )
    assert image_ok.partitions[1].block_offset == 150