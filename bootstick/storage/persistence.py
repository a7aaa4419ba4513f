"""Persistence partition creation for live Linux drives.

A persistence partition is an extra writable volume that a live system
overlays on its read-only root. Distributions find it either by label alone
(Ubuntu ``casper-rw``, Fedora ``LIVE``, Arch ``cow_spacesize``) or by label
plus a ``persistence.conf`` naming the union root (Debian and generic live
systems).

Steps:
    1. Pick the distribution family from source image markers
    2. Read the layout; free space is the unallocated tail after partition 1
       plus the free bytes of its mounted filesystem
    3. Unmount and shrink partition 1 by the shortfall
    4. Add the new partition (GPT name = family label)
    5. Format it ext4, or FAT32 when mkfs.ext4 is not installed
    6. For union-mount families, mount it and write ``persistence.conf``

A failure at any step aborts persistence. Formatting and copying that ran
before are kept.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from bootstick.domain.models import (
    DistroFamily,
    FileSystemType,
    PartitionLayout,
    PersistenceConfig,
)
from bootstick.logging import LoggerFactory
from bootstick.storage.boot.detection import find_path
from bootstick.storage.devices import partition_node, strip_dev
from bootstick.storage.exceptions import (
    InsufficientSpaceError,
    PartitionFailedError,
    PersistenceFormatFailedError,
)
from bootstick.storage.format import build_mkfs_command, locate_program, sanitize_label
from bootstick.storage.mount import (
    filesystem_free_bytes,
    mount_partition,
    partition_mountpoint,
    unmount_disk,
)
from bootstick.storage.partition import (
    MIB,
    add_partition,
    align_down,
    align_up,
    read_layout,
    resize_partition,
    settle,
)
from bootstick.storage.process import OperationContext, ensure_success


log = LoggerFactory.for_persistence()

PERSISTENCE_CONF = "persistence.conf"
PERSISTENCE_CONF_CONTENT = "/ union\n"

# alignment of the new partition plus the GPT backup header
SLACK_BYTES = 2 * MIB

LogFn = Callable[[str], None]


def detect_family(source_root: Optional[Path]) -> DistroFamily:
    """Guess the live system family from marker paths in the source image."""
    if source_root is None:
        return DistroFamily.OTHER
    root = Path(source_root)
    if find_path(root, "casper") is not None:
        return DistroFamily.UBUNTU
    if find_path(root, "live") is not None:
        info = find_path(root, ".disk/info")
        if info is not None:
            try:
                text = info.read_text(errors="replace").lower()
            except OSError:
                text = ""
            if "ubuntu" in text:
                return DistroFamily.UBUNTU
        return DistroFamily.DEBIAN
    if find_path(root, "LiveOS") is not None:
        return DistroFamily.FEDORA
    if find_path(root, "arch") is not None:
        return DistroFamily.ARCH
    return DistroFamily.OTHER


def estimate_free_space(
    context: OperationContext, disk: str, layout: Optional[PartitionLayout] = None
) -> int:
    """Bytes that can be given to a new partition after partition 1.

    The filesystem share comes from statvfs on the mounted primary partition;
    an unmounted primary contributes nothing.
    """
    layout = layout or read_layout(context, disk)
    tail = layout.free_after(1)
    mountpoint = partition_mountpoint(context, partition_node(disk, 1))
    reclaimable = filesystem_free_bytes(mountpoint) if mountpoint else 0
    log.debug(f"{disk}: {tail} bytes unallocated after partition 1, {reclaimable} free inside it")
    return tail + reclaimable


def _target_region(layout: PartitionLayout, size_bytes: int) -> tuple[int, int]:
    primary = layout.get(1)
    floor = primary.end + 1 if primary else 0
    regions = [region for region in layout.free_regions if region.end >= floor]
    if not regions:
        raise PartitionFailedError("No unallocated space after the primary partition")
    region = max(regions, key=lambda item: item.size)
    start = align_up(max(region.start, floor))
    end = min(start + size_bytes - 1, region.end)
    if end <= start:
        raise PartitionFailedError("Unallocated space after the primary partition is too small")
    return start, end


def _format(
    context: OperationContext, node: str, label: str, warn: LogFn
) -> FileSystemType:
    mkfs = locate_program("mkfs.ext4")
    if mkfs:
        filesystem = FileSystemType.EXT4
        command = [mkfs, "-F", "-L", label, node]
    else:
        filesystem = FileSystemType.FAT32
        warn("mkfs.ext4 not found, formatting the persistence partition as FAT32")
        command = build_mkfs_command(filesystem, node, sanitize_label(label, filesystem))

    ensure_success(
        context.runner.run_privileged(command),
        lambda r: PersistenceFormatFailedError(node, r.stderr),
    )
    return filesystem


def _write_conf(context: OperationContext, node: str) -> None:
    mountpoint = mount_partition(context, node)
    if not mountpoint:
        raise PersistenceFormatFailedError(node, "could not mount the new partition")
    ensure_success(
        context.runner.run_privileged(
            ["tee", f"{mountpoint.rstrip('/')}/{PERSISTENCE_CONF}"],
            input_text=PERSISTENCE_CONF_CONTENT,
        ),
        lambda r: PersistenceFormatFailedError(node, r.stderr or f"writing {PERSISTENCE_CONF} failed"),
    )
    log.info(f"Wrote {PERSISTENCE_CONF} to {mountpoint}")


def create_persistence(
    context: OperationContext,
    disk: str,
    size_bytes: int,
    family: Optional[DistroFamily] = None,
    source_root: Optional[Path] = None,
    *,
    primary_filesystem: FileSystemType = FileSystemType.FAT32,
    on_log: Optional[LogFn] = None,
) -> PersistenceConfig:
    """Carve a ``size_bytes`` persistence partition out of ``disk``.

    Args:
        context: Operation context for commands and cancellation
        disk: Whole-disk identifier (sdb)
        size_bytes: Requested partition size
        family: Distribution family; detected from ``source_root`` when None
        source_root: Mounted source image used for detection
        primary_filesystem: Filesystem of partition 1, for resizing
        on_log: Receives warnings and progress notes

    Raises:
        InsufficientSpaceError: Free space is below the request (nothing changed)
        PartitionFailedError: Shrinking or adding a partition failed
        PersistenceFormatFailedError: The new partition could not be formatted
            or its marker file written
    """
    disk = strip_dev(disk)
    family = family or detect_family(source_root)

    def note(message: str, warning: bool = False) -> None:
        (log.warning if warning else log.info)(message)
        if on_log:
            on_log(message)

    note(f"Creating {size_bytes} byte persistence partition ({family.family}, label {family.label})")
    layout = read_layout(context, disk)
    primary = layout.get(1)
    if primary is None:
        raise PartitionFailedError(f"{disk} has no primary partition", disk)

    required = size_bytes + SLACK_BYTES
    available = estimate_free_space(context, disk, layout)
    if available < required:
        raise InsufficientSpaceError(disk, required, available)

    context.check_cancelled()
    unmount_disk(context, disk)

    tail = layout.free_after(1)
    if tail < required:
        new_size = align_down(primary.size - (required - tail))
        note(f"Shrinking partition 1 to {new_size} bytes")
        resize_partition(context, disk, 1, new_size, primary_filesystem)
        layout = read_layout(context, disk)

    context.check_cancelled()
    start, end = _target_region(layout, size_bytes)
    filesystem_hint = "ext4" if locate_program("mkfs.ext4") else "fat32"
    number = add_partition(
        context, disk, start, end, fs_hint=filesystem_hint, name=family.label, table=layout.table
    )
    node = partition_node(disk, number)

    filesystem = _format(context, node, family.label, lambda message: note(message, warning=True))
    settle(context, disk)
    note(f"Formatted {node} as {filesystem.value} labelled {family.label}")

    if family.needs_conf:
        context.check_cancelled()
        _write_conf(context, node)

    return PersistenceConfig(size_bytes=end - start + 1, family=family, filesystem=filesystem)
