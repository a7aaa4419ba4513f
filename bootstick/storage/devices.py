"""Removable block device discovery and naming using lsblk.

Device Detection:
    Uses ``lsblk -J -b`` to enumerate block devices with size, model, vendor,
    transport, removable flag and mountpoints, then keeps whole disks that are
    removable (rm=1 or tran=usb) and carry no system mountpoint.

Naming:
    Kernel partition names either append the number directly (sdb -> sdb1) or,
    when the disk name ends in a digit, insert a "p" (nvme0n1 -> nvme0n1p1,
    mmcblk0 -> mmcblk0p1). ``partition_name`` and ``whole_disk_name`` convert
    between the two forms so later privileged steps always address the
    whole-disk identifier.

Example:
    >>> from bootstick.storage.devices import list_removable_devices
    >>> [device.identifier for device in list_removable_devices()]
    ['sdb', 'sdc']
"""

from __future__ import annotations

import json
import re
import time
from typing import Any, Optional

from bootstick.domain.models import Device
from bootstick.logging import LoggerFactory
from bootstick.storage.exceptions import DeviceNotFoundError
from bootstick.storage.process import ProcessRunner


log = LoggerFactory.for_usb()

ROOT_MOUNTPOINTS = {"/", "/boot", "/boot/efi", "/boot/firmware", "/home", "[SWAP]"}
LSBLK_CACHE_TTL_SECONDS = 1.0
LSBLK_COLUMNS = "NAME,PKNAME,TYPE,SIZE,MODEL,VENDOR,TRAN,RM,RO,MOUNTPOINT,FSTYPE,LABEL"

_WHOLE_DISK = re.compile(r"^(?:nvme\d+n\d+|mmcblk\d+|loop\d+|md\d+|(?:sd|vd|hd|xvd)[a-z]+)$")
_PARTITION_FORMS = (
    re.compile(r"^(nvme\d+n\d+|mmcblk\d+|loop\d+|md\d+)p\d+$"),
    re.compile(r"^((?:sd|vd|hd|xvd)[a-z]+)\d+$"),
)

_last_lsblk_names: Optional[tuple[str, ...]] = None
_lsblk_cache: Optional[list[dict]] = None
_lsblk_cache_time: Optional[float] = None


def human_size(size_bytes) -> str:
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def strip_dev(path: str) -> str:
    return path[len("/dev/"):] if path.startswith("/dev/") else path


def partition_name(disk: str, number: int) -> str:
    disk = strip_dev(disk)
    separator = "p" if disk[-1:].isdigit() else ""
    return f"{disk}{separator}{number}"


def partition_node(disk: str, number: int) -> str:
    return f"/dev/{partition_name(disk, number)}"


def whole_disk_name(name: str) -> Optional[str]:
    """Strip a partition suffix from a kernel device name.

    Returns:
        The whole-disk name, or None when ``name`` is not a recognised
        disk or partition name
    """
    name = strip_dev(name)
    if _WHOLE_DISK.match(name):
        return name
    for pattern in _PARTITION_FORMS:
        match = pattern.match(name)
        if match:
            return match.group(1)
    return None


def get_block_devices(
    runner: ProcessRunner | None = None, force_refresh: bool = False
) -> list[dict[str, Any]]:
    """Return block device data from lsblk with a short-lived cache.

    When lsblk fails or returns invalid JSON, the previous cache is returned
    if available; otherwise an empty list. With ``force_refresh`` errors
    return an empty list so callers never receive stale data.
    """
    global _last_lsblk_names, _lsblk_cache, _lsblk_cache_time
    now = time.monotonic()
    if (
        not force_refresh
        and _lsblk_cache is not None
        and _lsblk_cache_time is not None
        and now - _lsblk_cache_time <= LSBLK_CACHE_TTL_SECONDS
    ):
        return _lsblk_cache

    runner = runner or ProcessRunner()
    result = runner.run(["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS], log_command=False)
    try:
        if result.returncode != 0:
            raise ValueError(result.stderr.strip() or f"exit status {result.returncode}")
        devices = json.loads(result.stdout).get("blockdevices", [])
    except (ValueError, AttributeError) as error:
        log.warning(f"lsblk failed: {error}")
        if _lsblk_cache is not None and not force_refresh:
            return _lsblk_cache
        return []

    device_names = tuple(device.get("name") for device in devices if device.get("name"))
    if device_names != _last_lsblk_names:
        if device_names:
            log.debug(f"lsblk found {len(device_names)} devices: {', '.join(device_names)}")
        else:
            log.debug("lsblk found no block devices")
        _last_lsblk_names = device_names
    _lsblk_cache = devices
    _lsblk_cache_time = now
    return devices


def clear_cache() -> None:
    global _lsblk_cache, _lsblk_cache_time
    _lsblk_cache = None
    _lsblk_cache_time = None


def _mountpoints(device: dict[str, Any]) -> list[str]:
    points = []
    if device.get("mountpoint"):
        points.append(device["mountpoint"])
    for child in device.get("children") or []:
        points.extend(_mountpoints(child))
    return points


def is_system_device(device: dict[str, Any]) -> bool:
    return any(point in ROOT_MOUNTPOINTS for point in _mountpoints(device))


def list_removable_devices(
    runner: ProcessRunner | None = None, force_refresh: bool = False
) -> list[Device]:
    """Removable whole disks that are safe to offer as imaging targets."""
    found = []
    for record in get_block_devices(runner, force_refresh=force_refresh):
        if record.get("type") != "disk":
            continue
        device = Device.from_lsblk_dict(record)
        if not device.removable or device.size_bytes <= 0:
            continue
        if is_system_device(record):
            log.debug(f"Skipping {device.identifier}: holds a system mountpoint")
            continue
        found.append(device)
    return found


def get_device(identifier: str, runner: ProcessRunner | None = None) -> Device:
    """Fresh snapshot of one removable disk.

    Raises:
        DeviceNotFoundError: The disk is gone or is not a removable target
    """
    identifier = strip_dev(identifier)
    for device in list_removable_devices(runner, force_refresh=True):
        if device.identifier == identifier:
            return device
    raise DeviceNotFoundError(identifier, "not a removable disk")
