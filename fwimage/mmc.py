"""Discovery and handling of SD cards and other removable block devices."""

from __future__ import annotations

import functools
import logging
import os
import stat
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

from .errors import FwupError
from .mbr import _strtoul

log = logging.getLogger(__name__)

BLOCK_SIZE = 512
MMC_BLOCK_MAJOR = 179
MAX_MOUNTS = 64

_PROC_MOUNTS = "/proc/mounts"
_ETC_MTAB = "/etc/mtab"
_UMOUNT = "/bin/umount"

_IS_LINUX = sys.platform.startswith("linux")
_IS_NETBSD = sys.platform.startswith("netbsd")
_IS_BSD = sys.platform.startswith(("freebsd", "openbsd", "dragonfly")) or _IS_NETBSD

_SIMPLE_ESCAPES = {
    "a": "\a",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "v": "\v",
}
_OCTAL_DIGITS = "01234567"


@dataclass
class MmcDevice:
    """A detected memory card: its device path, size in bytes and optional name."""

    path: str
    size: int
    name: str = ""


@dataclass
class _DeviceInfo:
    path: str
    size: int
    rdev: int
    removable: bool


def unescape_mount_string(text: str) -> str:
    """Undo the backslash escaping used in /proc/mounts (e.g. \\040 for a space)."""
    out: list[str] = []
    chars = iter(enumerate(text))
    length = len(text)
    pos = 0
    while pos < length:
        ch = text[pos]
        if ch != "\\":
            out.append(ch)
            pos += 1
            continue

        pos += 1
        if pos >= length:
            break
        ch = text[pos]
        if ch in _OCTAL_DIGITS:
            end = pos + 1
            while end < length and end < pos + 3 and text[end] in _OCTAL_DIGITS:
                end += 1
            out.append(chr(int(text[pos:end], 8) & 0xFF))
            pos = end
        else:
            out.append(_SIMPLE_ESCAPES.get(ch, ch))
            pos += 1
    del chars
    return "".join(out)


def _read_sysfs(path: str) -> str:
    try:
        text = Path(path).read_text(encoding="ascii", errors="replace")
    except OSError:
        return ""
    return text.rstrip("\n")


def _raw_size(path: str) -> int:
    """Size of a device by seeking to its end; 0 if unknown."""
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return 0
    try:
        size = os.lseek(fd, 0, os.SEEK_END)
    except OSError:
        size = 0
    finally:
        os.close(fd)
    return max(size, 0)


def _sysfs_size(name: str) -> int:
    text = _read_sysfs(f"/sys/block/{name}/size")
    if not text:
        return 0
    return _strtoul(text)[0] * BLOCK_SIZE


def _sysfs_removable(name: str) -> bool:
    return _read_sysfs(f"/sys/block/{name}/removable").startswith("1")


def _linux_device_info(name: str) -> _DeviceInfo | None:
    path = f"/dev/{name}"
    try:
        st = os.stat(path)
    except OSError:
        return None

    size = _raw_size(path) or _sysfs_size(name)
    # Built-in SD card readers report themselves non-removable, but they
    # should count as removable here.
    removable = os.major(st.st_rdev) == MMC_BLOCK_MAJOR or _sysfs_removable(name)
    return _DeviceInfo(path=path, size=size, rdev=st.st_rdev, removable=removable)


@functools.lru_cache(maxsize=1)
def _linux_devices() -> tuple[_DeviceInfo, ...]:
    names = [f"sd{chr(c)}" for c in range(ord("a"), ord("z"))]
    names += [f"mmcblk{i}" for i in range(16)]
    return tuple(info for info in map(_linux_device_info, names) if info is not None)


def _root_device() -> int:
    # stat("/") gives the partition; masking the minor number approximates
    # the whole disk that contains it.
    try:
        return os.stat("/").st_dev & 0xFFF0
    except OSError:
        log.warning("can't stat root directory")
        return 0


def _bsd_candidate_paths() -> list[str]:
    if _IS_NETBSD:
        return [f"/dev/rs{chr(c)}0d" for c in range(ord("a"), ord("z") + 1)]
    return [f"/dev/da{i}" for i in range(16)]


def _bsd_device_info(path: str) -> _DeviceInfo | None:
    try:
        st = os.stat(path)
    except OSError:
        return None
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return None
    try:
        size = os.lseek(fd, 0, os.SEEK_END)
    except OSError:
        size = 0
    finally:
        os.close(fd)
    return _DeviceInfo(path=path, size=max(size, 0), rdev=st.st_rdev, removable=True)


def scan_for_devices(max_devices: int = 16) -> list[MmcDevice]:
    """Return the removable memory cards that could be written automatically."""
    if max_devices <= 0:
        return []

    rootdev = _root_device()
    if _IS_LINUX:
        candidates = list(_linux_devices())
    elif _IS_BSD:
        candidates = [
            info for info in map(_bsd_device_info, _bsd_candidate_paths()) if info is not None
        ]
    else:
        candidates = []

    found = [
        MmcDevice(path=info.path, size=info.size)
        for info in candidates
        if info.rdev != rootdev and info.size > 0 and info.removable
    ]
    return found[:max_devices]


def device_size(path: str) -> int:
    """Return the size of a device in bytes."""
    size = _raw_size(path)
    if size <= 0:
        raise FwupError(f"Error determining the size of {path}")
    return size


def is_path_on_device(file_path: str, device_path: str) -> bool:
    """True if file_path lives on the file system held by device_path."""
    if _IS_BSD:
        raise FwupError("checking whether a path is on a device is not supported")
    try:
        file_st = os.stat(file_path)
        device_st = os.stat(device_path)
    except OSError as exc:
        raise FwupError(f"can't stat '{exc.filename}': {exc.strerror}") from exc
    return device_st.st_rdev == file_st.st_dev


def is_path_at_device_offset(file_path: str, block_offset: int) -> bool:
    """True if the partition holding file_path starts at block_offset."""
    if not _IS_LINUX:
        raise FwupError("checking partition offsets is not supported")
    try:
        file_st = os.stat(file_path)
    except OSError as exc:
        raise FwupError(f"can't stat '{file_path}': {exc.strerror}") from exc

    major, minor = os.major(file_st.st_dev), os.minor(file_st.st_dev)
    start = _read_sysfs(f"/sys/dev/block/{major}:{minor}/start")
    if not start:
        raise FwupError(f"can't determine the partition start of '{file_path}'")
    return _strtoul(start)[0] == block_offset


def _mount_points(mounts_text: str, device_path: str) -> list[str]:
    """Mount points from /proc/mounts-style text whose device starts with device_path."""
    points: list[str] = []
    for line in mounts_text.splitlines():
        fields = line.split()
        if len(fields) < 2:
            continue
        devname, mountpoint = fields[0][:63], fields[1][:255]
        if devname.startswith(device_path):
            if len(points) == MAX_MOUNTS:
                raise FwupError("Device mounted too many times")
            points.append(unescape_mount_string(mountpoint))
    return points


def umount_all(device_path: str) -> list[str]:
    """Unmount every file system on device_path; return the mount points handled."""
    if not _IS_LINUX:
        if _IS_BSD:
            log.warning("umount %s not implemented. Pass -U to avoid warning.", device_path)
        return []

    try:
        mounts_text = Path(_PROC_MOUNTS).read_text(encoding="utf-8", errors="surrogateescape")
    except OSError as exc:
        raise FwupError(f"{_PROC_MOUNTS}: {exc.strerror}") from exc

    points = _mount_points(mounts_text, device_path)
    mtab_exists = os.path.exists(_ETC_MTAB)
    failed: list[str] = []
    for point in points:
        if mtab_exists:
            # umount(8) keeps /etc/mtab up to date.
            try:
                result = subprocess.run([_UMOUNT, point], check=False)
                ok = result.returncode == 0
            except OSError:
                ok = False
            if not ok:
                log.warning("Error calling umount on '%s'", point)
                failed.append(point)
        else:
            log.warning("umount %s: not supported", point)

    if failed:
        raise FwupError(f"Error unmounting {', '.join(failed)}")
    return points


def eject(device_path: str) -> None:
    """Prepare the media for removal; nothing is needed on these systems."""
    del device_path


def open_device(path: str) -> int:
    """Open a device for reading and writing and return its file descriptor."""
    flags = os.O_RDWR
    if _IS_LINUX:
        flags |= getattr(os, "O_DIRECT", 0)
    try:
        return os.open(path, flags)
    except OSError as exc:
        raise FwupError(f"Cannot open '{path}' for output: {exc.strerror}") from exc