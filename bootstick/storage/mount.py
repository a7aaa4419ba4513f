"""Disk identity resolution and mount management.

Functions:
    - resolve_whole_disk(): Map a mounted volume or device node to its
      whole-disk identifier (sdb1 -> sdb, nvme0n1p2 -> nvme0n1)
    - get_mountpoints(): Current mountpoints of a disk's partitions
    - partition_mountpoint(): Mountpoint of one partition node, if any
    - mount_partition(): Mount a partition via udisksctl, falling back to a
      privileged mount into a private directory
    - wait_for_partition_mount(): Poll until a freshly formatted partition is
      mounted, kicking an explicit mount after a few misses
    - unmount_disk(): Idempotent unmount of every partition of a disk
    - filesystem_free_bytes(): Free space of a mounted filesystem (statvfs)

All external commands run through the ``OperationContext`` runner, so every
wait here is a cancellation checkpoint. Device paths are validated before use
and are always passed as separate argv elements, never through a shell.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Iterable, Optional, Sequence

from bootstick.config.settings import get_float, get_int
from bootstick.logging import LoggerFactory
from bootstick.storage.devices import partition_node, strip_dev, whole_disk_name
from bootstick.storage.exceptions import (
    DeviceNotFoundError,
    MountTimeoutError,
    OperationCancelledError,
    UnmountFailedError,
)
from bootstick.storage.process import OperationContext
from bootstick.storage.retry import poll_until


log = LoggerFactory.for_system()

UNMOUNT_ATTEMPTS = 3
UNMOUNT_RETRY_DELAY = 1.0
DEFAULT_CANDIDATE_PARTITIONS = (1, 2)

_UDISKS_MOUNTED_AT = re.compile(r" at (.+?)\.?\s*$")


def _validate_device_path(device: str) -> str:
    if not isinstance(device, str) or not device.startswith("/dev/"):
        raise DeviceNotFoundError(str(device), "not a device path")
    if any(char in device for char in [";", "&", "|", "$", "`", "\n", "\r", " "]):
        raise DeviceNotFoundError(device, "device path contains invalid characters")
    return device


def _lsblk_json(context: OperationContext, node: str, columns: str) -> list[dict]:
    result = context.runner.run(["lsblk", "-J", "-o", columns, node], log_command=False)
    if result.cancelled:
        raise OperationCancelledError()
    if result.returncode != 0:
        raise DeviceNotFoundError(node, "lsblk query failed", detail=result.stderr)
    try:
        return json.loads(result.stdout).get("blockdevices", [])
    except (ValueError, AttributeError) as error:
        raise DeviceNotFoundError(node, f"unparsable lsblk output: {error}") from error


def _source_of_mount(context: OperationContext, path: str) -> str:
    result = context.runner.run(
        ["findmnt", "-J", "-o", "SOURCE,TARGET", "--target", path], log_command=False
    )
    if result.cancelled:
        raise OperationCancelledError()
    if result.returncode != 0:
        raise DeviceNotFoundError(path, "not a mounted volume", detail=result.stderr)
    try:
        filesystems = json.loads(result.stdout).get("filesystems", [])
        source = filesystems[0]["source"]
    except (ValueError, AttributeError, IndexError, KeyError, TypeError) as error:
        raise DeviceNotFoundError(path, f"unparsable findmnt output: {error}") from error
    # btrfs and bind mounts report "/dev/sdb1[/subvol]"
    return source.split("[", 1)[0]


def resolve_whole_disk(context: OperationContext, mounted_volume_path: str) -> str:
    """Return the whole-disk identifier behind a volume path or device node.

    Args:
        context: Operation context whose runner executes findmnt/lsblk
        mounted_volume_path: A mountpoint (e.g. /media/user/USB) or a device
            node (e.g. /dev/sdb1 or /dev/sdb)

    Raises:
        DeviceNotFoundError: The facility call failed or no identifier could
            be parsed from its output
    """
    if mounted_volume_path.startswith("/dev/"):
        node = _validate_device_path(mounted_volume_path)
    else:
        node = _validate_device_path(_source_of_mount(context, mounted_volume_path))

    records = _lsblk_json(context, node, "NAME,PKNAME,TYPE")
    if not records or not records[0].get("name"):
        raise DeviceNotFoundError(node, "no block device reported")
    record = records[0]

    if record.get("type") == "disk":
        disk = record["name"]
    else:
        disk = record.get("pkname") or whole_disk_name(record["name"])
    if not disk:
        raise DeviceNotFoundError(node, f"cannot derive whole disk from {record['name']}")
    log.debug(f"Resolved {mounted_volume_path} to whole disk {disk}")
    return disk


def get_mountpoints(context: OperationContext, disk: str) -> dict[str, str]:
    """Map partition node -> mountpoint for every mounted piece of ``disk``."""
    node = _validate_device_path(f"/dev/{strip_dev(disk)}")
    mounted: dict[str, str] = {}

    def walk(records: Iterable[dict]) -> None:
        for record in records:
            if record.get("mountpoint") and record.get("name"):
                mounted[f"/dev/{record['name']}"] = record["mountpoint"]
            walk(record.get("children") or [])

    walk(_lsblk_json(context, node, "NAME,MOUNTPOINT"))
    return mounted


def partition_mountpoint(context: OperationContext, node: str) -> Optional[str]:
    """Mountpoint of ``node``, or None when it is unmounted or absent."""
    if not os.path.exists(node):
        return None
    try:
        records = _lsblk_json(context, node, "NAME,MOUNTPOINT")
    except DeviceNotFoundError:
        return None
    if records and records[0].get("mountpoint"):
        return records[0]["mountpoint"]
    return None


def mount_partition(
    context: OperationContext,
    node: str,
    *,
    elevate: bool = True,
    options: Sequence[str] = (),
) -> Optional[str]:
    """Mount ``node`` and return its mountpoint, or None on failure.

    udisksctl is tried first so the volume lands under /media like a desktop
    automount. Without udisks (or when it refuses), a privileged ``mount``
    into a fresh private directory is used when ``elevate`` is set.
    """
    node = _validate_device_path(node)
    result = context.runner.run(["udisksctl", "mount", "-b", node, "--no-user-interaction"])
    if result.cancelled:
        raise OperationCancelledError()
    if result.ok:
        match = _UDISKS_MOUNTED_AT.search(result.stdout.strip())
        if match:
            log.debug(f"Mounted {node} at {match.group(1)}")
            return match.group(1)
        return partition_mountpoint(context, node)

    if not (elevate or os.geteuid() == 0):
        return None

    target = tempfile.mkdtemp(prefix=f"bootstick-{Path(node).name}-")
    command = ["mount"]
    if options:
        command += ["-o", ",".join(options)]
    result = context.runner.run_privileged(command + [node, target])
    if result.cancelled:
        raise OperationCancelledError()
    if not result.ok:
        log.debug(f"mount {node} failed: {result.stderr.strip()}")
        try:
            os.rmdir(target)
        except OSError:
            pass
        return None
    log.debug(f"Mounted {node} at {target}")
    return target


def ensure_writable(context: OperationContext, mountpoint: str) -> None:
    """Hand a root-owned filesystem root to the invoking user.

    Fresh ext2/3/4 and UDF roots belong to root, so an unprivileged copy would
    fail on the first file.
    """
    if os.access(mountpoint, os.W_OK):
        return
    owner = f"{os.getuid()}:{os.getgid()}"
    log.debug(f"Taking ownership of {mountpoint} as {owner}")
    result = context.runner.run_privileged(["chown", owner, mountpoint])
    if result.cancelled:
        raise OperationCancelledError()


def wait_for_partition_mount(
    context: OperationContext,
    disk: str,
    candidates: Sequence[int] | None = None,
    *,
    max_attempts: int | None = None,
    interval: float | None = None,
    kick_after: int | None = None,
) -> str:
    """Poll until one of the candidate partitions of ``disk`` is mounted.

    Each attempt checks every candidate partition number in order (a GPT layout
    may put the data partition after an EFI system partition). Once
    ``kick_after`` attempts have failed, each attempt also requests an explicit
    mount of candidates whose node exists.

    Raises:
        MountTimeoutError: No candidate mounted after ``max_attempts`` polls,
            which is exactly ``max_attempts`` intervals of waiting
    """
    max_attempts = max_attempts or get_int("mount_wait_attempts", 15)
    interval = interval if interval is not None else get_float("mount_wait_interval", 1.0)
    kick_after = kick_after if kick_after is not None else get_int("mount_wait_kick_after", 3)
    nodes = [partition_node(disk, number) for number in (candidates or DEFAULT_CANDIDATE_PARTITIONS)]

    def probe(attempt: int) -> Optional[str]:
        context.check_cancelled()
        for node in nodes:
            mountpoint = partition_mountpoint(context, node)
            if mountpoint:
                return mountpoint
        if attempt > kick_after:
            for node in nodes:
                if os.path.exists(node):
                    log.debug(f"Requesting explicit mount of {node}")
                    mountpoint = mount_partition(context, node, elevate=False)
                    if mountpoint:
                        return mountpoint
        return None

    mountpoint = poll_until(
        probe,
        max_attempts=max_attempts,
        interval=interval,
        sleep=context.sleep,
        description=f"{disk} partition mount",
    )
    if mountpoint is None:
        raise MountTimeoutError(disk, max_attempts)
    log.info(f"{disk} mounted at {mountpoint}")
    return mountpoint


def unmount_disk(context: OperationContext, disk: str) -> None:
    """Unmount every mounted partition of ``disk``.

    Mount state is queried first so an already-unmounted disk is a no-op.
    Each attempt asks udisks first and falls back to one privileged
    ``umount`` for whatever is still mounted; the last resort is a lazy
    unmount.

    Raises:
        UnmountFailedError: Partitions remain mounted after all attempts
    """
    mounted = get_mountpoints(context, disk)
    if not mounted:
        log.debug(f"{disk} has no mounted partitions")
        return

    last_error = ""
    for attempt in range(1, UNMOUNT_ATTEMPTS + 1):
        log.debug(f"Unmounting {', '.join(sorted(mounted))} (attempt {attempt}/{UNMOUNT_ATTEMPTS})")
        for node in sorted(mounted):
            result = context.runner.run(["udisksctl", "unmount", "-b", node, "--no-user-interaction"])
            if result.cancelled:
                raise OperationCancelledError()
            if not result.ok:
                last_error = result.stderr
        mounted = get_mountpoints(context, disk)
        if not mounted:
            log.info(f"Unmounted {disk}")
            return

        result = context.runner.run_privileged(["umount", *sorted(mounted)])
        if result.cancelled:
            raise OperationCancelledError()
        if not result.ok:
            last_error = result.stderr
        mounted = get_mountpoints(context, disk)
        if not mounted:
            log.info(f"Unmounted {disk}")
            return
        if attempt < UNMOUNT_ATTEMPTS:
            context.sleep(UNMOUNT_RETRY_DELAY)

    log.warning(f"Falling back to lazy unmount for {disk}")
    result = context.runner.run_privileged(["umount", "-l", *sorted(mounted)])
    if result.cancelled:
        raise OperationCancelledError()
    remaining = get_mountpoints(context, disk)
    if remaining:
        raise UnmountFailedError(
            disk, sorted(remaining.values()), detail=result.stderr or last_error
        )
    log.info(f"Unmounted {disk} (lazy)")


def unmount_path(context: OperationContext, mountpoint: str) -> None:
    """Best-effort unmount of a single mountpoint we created."""
    result = context.cleanup_runner.run_privileged(["umount", mountpoint])
    if not result.ok:
        log.warning(f"Could not unmount {mountpoint}: {result.stderr.strip()}")
        return
    try:
        os.rmdir(mountpoint)
    except OSError:
        pass


def filesystem_free_bytes(path: str) -> int:
    """Bytes available to unprivileged writers on the filesystem at ``path``."""
    stats = os.statvfs(path)
    return stats.f_bavail * stats.f_frsize
