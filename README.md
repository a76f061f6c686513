# fwimage

Building blocks for writing firmware images to SD cards, eMMC and image
files: encoding and decoding master boot records (with optional OSIP
headers), building protective MBRs with primary and secondary GPT tables,
and finding, sizing and unmounting removable memory cards.

It uses only the standard library.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Modules

### `fwimage.mbr`

- `MbrPartition`, `Osii`, `OsipHeader`: dataclasses for partition entries
  and the OSIP header.
- `create_mbr(partitions, bootstrap, osip, signature, num_blocks)` encodes
  a 512-byte MBR from exactly four `MbrPartition` entries. `bootstrap` is
  440 bytes of boot code or `None`; it cannot be combined with an OSIP
  header. A partition with `expand_flag` grows to fill `num_blocks` when
  that is known (0 means unknown).
- `decode_mbr(data)` reads the four partition entries back, checking the
  `0x55 0xAA` signature.
- `verify_partitions(partitions)` checks types and overlaps, and that an
  expanding partition is the last one.
- `config_to_partitions(cfg)`, `config_to_osip(cfg)`, `verify_config(cfg)`
  and `create_from_config(cfg, num_blocks)` work from a configuration
  mapping.

A configuration is a plain mapping. Its `"partition"` (and, for OSIP,
`"osii"`) entry is either a mapping of section title to options or a
sequence of `(title, options)` pairs:

```python
from fwimage import mbr

cfg = {
    "partition": {
        "0": {"type": 0x0C, "block-offset": "63", "block-count": 77261, "boot": True},
        "1": {"type": 0x83, "block-offset": "77324", "block-count": 289044},
    },
    "signature": "0x01020304",
}

mbr.verify_config(cfg)
block = mbr.create_from_config(cfg, num_blocks=0)
partitions = mbr.decode_mbr(block)
```

Options read for each MBR partition: `type`, `block-offset`, `block-count`,
`boot`, `expand`. At the top level: `bootstrap-code` (880 hex digits),
`signature`, `include-osip`, `osip-major`, `osip-minor`,
`osip-num-pointers`; each `osii` section reads `os-major`, `os-minor`,
`start-block-offset`, `ddr-load-address`, `entry-point`,
`image-size-blocks` and `attribute`.

### `fwimage.gpt`

- `GptPartition`: one partition table entry.
- `config_to_partitions(cfg)`, `verify_partitions(partitions)` and
  `verify_config(cfg)` parse and validate up to 16 partitions. Each needs
  `type` and `guid` UUIDs and a `block-offset`; `name`, `block-count`,
  `flags`, `boot` and `expand` are optional. The disk needs a `guid`.
- `create_from_config(cfg, num_blocks)` returns a `GptImage` whose
  `primary` bytes (protective MBR plus primary GPT) go at offset 0 and
  whose `secondary` bytes go at `secondary_offset`. With `num_blocks` of 0
  the disk size is taken from the partitions.

```python
from fwimage import gpt

image = gpt.create_from_config(gpt_cfg, num_blocks=0)
with open("disk.img", "r+b") as out:
    out.write(image.primary)
    out.seek(image.secondary_offset)
    out.write(image.secondary)
```

### `fwimage.mmc`

For Linux and the BSDs:

- `scan_for_devices(max_devices)` returns `MmcDevice` entries (path and
  size in bytes) for non-empty removable cards that do not hold the root
  file system.
- `device_size(path)`, `open_device(path)`, `eject(path)` (nothing is
  needed on these systems).
- `umount_all(device_path)` unmounts every file system listed in
  `/proc/mounts` whose device starts with `device_path`, using
  `/bin/umount`, and returns the mount points it handled.
- `is_path_on_device(file_path, device_path)` and
  `is_path_at_device_offset(file_path, block_offset)`.
- `unescape_mount_string(text)` undoes `/proc/mounts` escaping.

### `fwimage.errors`

All failures raise `fwimage.errors.FwupError` with a message describing
what went wrong.

## What this package does not do

There is no command-line program. The package does not create, sign,
verify or apply firmware update archives, and it does not generate or
load signing keys; it provides the partition table and device handling
that such a tool builds on.