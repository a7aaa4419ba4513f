"""Erase, partition and format a target drive.

Supported Filesystems:
    FAT / FAT32:  mkfs.vfat (FAT32 is the default for bootable media)
    exFAT:        mkfs.exfat (exfatprogs)
    NTFS:         mkfs.ntfs (ntfs-3g)
    UDF:          mkudffs (udftools)
    ext2/3/4:     mkfs.ext2/3/4 (e2fsprogs)

Format Modes:
    quick:  Fast format, no surface scan
    full:   mkfs's own bad block check (-c) where the formatter has one

Partitioning:
    The partition table and the single data partition are created by ONE
    ``parted`` call (mklabel + mkpart), so the disk is never left with an
    empty table between two invocations. The partition starts at 1MiB, or at
    sector 63 with legacy BIOS fixes enabled for old BIOSes that expect
    cylinder-aligned layouts.

Labels:
    ``sanitize_label`` maps a requested label into the target filesystem's
    legal alphabet and length before any formatter is invoked.

Example:
    >>> from bootstick.storage.format import sanitize_label
    >>> sanitize_label("Ubuntu 24.04 LTS", FileSystemType.FAT32)
    'UBUNTU_24_0'
"""

from __future__ import annotations

import os
import re
import shutil
from typing import Callable, Optional

from bootstick.domain.models import FileSystemType, ImagingOptions, PartitionScheme
from bootstick.logging import LoggerFactory
from bootstick.storage.devices import partition_node, strip_dev
from bootstick.storage.exceptions import FormatFailedError, OperationCancelledError
from bootstick.storage.partition import read_layout, settle
from bootstick.storage.process import OperationContext, ensure_success
from bootstick.storage.retry import poll_until


log = LoggerFactory.for_system()

DEFAULT_LABEL = "UNTITLED"

# Non-root PATHs often lack the sbin directories where formatters live
SBIN_PREFIXES = ("/usr/sbin", "/sbin", "/usr/local/sbin", "/usr/bin", "/bin", "/usr/local/bin")

LABEL_LIMITS = {
    FileSystemType.FAT: 11,
    FileSystemType.FAT32: 11,
    FileSystemType.EXFAT: 11,
    FileSystemType.NTFS: 32,
    FileSystemType.UDF: 30,
}
EXT_LABEL_BYTES = 16

_FAT_ILLEGAL = re.compile(r"[^A-Za-z0-9_-]")
_NTFS_ILLEGAL = re.compile(r'[\x00-\x1f"*/:<>?\\|]')
_CONTROL = re.compile(r"[\x00-\x1f\x7f]")

NODE_WAIT_ATTEMPTS = 10
NODE_WAIT_INTERVAL = 0.5

ProgressCallback = Callable[[float], None]


def sanitize_label(
    label: Optional[str], filesystem: FileSystemType, default: str = DEFAULT_LABEL
) -> str:
    """Fit ``label`` into the alphabet and length ``filesystem`` accepts.

    FAT-family and exFAT: characters outside ``[A-Za-z0-9_-]`` become ``_``,
    at most 11 characters (FAT is upper-cased). NTFS drops reserved
    characters (32 chars), UDF keeps 30 chars, ext keeps 16 UTF-8 bytes.
    An empty result falls back to ``default`` sanitized the same way.
    """
    text = (label or "").strip()
    if filesystem in (FileSystemType.FAT, FileSystemType.FAT32, FileSystemType.EXFAT):
        text = _FAT_ILLEGAL.sub("_", text)[: LABEL_LIMITS[filesystem]]
        if filesystem is not FileSystemType.EXFAT:
            text = text.upper()
    elif filesystem is FileSystemType.NTFS:
        text = _NTFS_ILLEGAL.sub("", text)[: LABEL_LIMITS[filesystem]]
    elif filesystem is FileSystemType.UDF:
        text = _CONTROL.sub("", text)[: LABEL_LIMITS[filesystem]]
    else:
        encoded = _CONTROL.sub("", text).encode("utf-8")[:EXT_LABEL_BYTES]
        text = encoded.decode("utf-8", errors="ignore")

    if not text.strip("_ "):
        if label == DEFAULT_LABEL:
            return text
        return sanitize_label(default, filesystem, default=DEFAULT_LABEL)
    return text


def locate_program(name: str) -> Optional[str]:
    """Find ``name`` on PATH or in the usual sbin/bin prefixes."""
    found = shutil.which(name)
    if found:
        return found
    for prefix in SBIN_PREFIXES:
        candidate = os.path.join(prefix, name)
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
    return None


def build_partition_command(disk_node: str, options: ImagingOptions) -> list[str]:
    """parted argv that writes the table and the data partition in one call."""
    fs_hint = options.filesystem.parted_type
    command = ["parted", "-s"]
    if options.legacy_bios_fixes:
        command += ["-a", "none", disk_node, "mklabel", options.partition_scheme.parted_label]
        start = "63s"
    else:
        command += ["-a", "optimal", disk_node, "mklabel", options.partition_scheme.parted_label]
        start = "1MiB"

    command += ["mkpart", "primary"]
    if fs_hint:
        command.append(fs_hint)
    command += [start, "100%"]

    if options.legacy_bios_fixes and options.partition_scheme is PartitionScheme.MBR:
        command += ["set", "1", "boot", "on"]
    return command


def build_mkfs_command(
    filesystem: FileSystemType, partition_path: str, label: str, quick: bool = True
) -> list[str]:
    """Formatter argv for ``filesystem`` on ``partition_path``."""
    if filesystem in (FileSystemType.FAT, FileSystemType.FAT32):
        command = ["mkfs.vfat"]
        if filesystem is FileSystemType.FAT32:
            command += ["-F", "32"]
        if not quick:
            command.append("-c")
        command += ["-n", label, partition_path]
    elif filesystem is FileSystemType.EXFAT:
        command = ["mkfs.exfat", "-L", label, partition_path]
    elif filesystem is FileSystemType.NTFS:
        command = ["mkfs.ntfs"]
        if quick:
            command.append("-f")
        command += ["-L", label, partition_path]
    elif filesystem is FileSystemType.UDF:
        command = ["mkudffs", "--media-type=hd", "--utf8", f"--label={label}", partition_path]
    else:
        command = [f"mkfs.{filesystem.value}", "-F"]
        if not quick:
            command.append("-c")
        command += ["-L", label, partition_path]

    program = locate_program(command[0])
    if program:
        command[0] = program
    return command


def wait_for_node(context: OperationContext, node: str) -> None:
    """Wait for udev to create ``node`` after a partition table change."""
    found = poll_until(
        lambda _attempt: True if os.path.exists(node) else None,
        max_attempts=NODE_WAIT_ATTEMPTS,
        interval=NODE_WAIT_INTERVAL,
        sleep=context.sleep,
        description=f"{node} to appear",
    )
    if not found:
        raise FormatFailedError(f"Partition node {node} did not appear after partitioning", node)


def erase_disk(
    context: OperationContext,
    disk: str,
    options: ImagingOptions,
    label: str,
    on_progress: ProgressCallback | None = None,
) -> str:
    """Wipe ``disk``, write a fresh table with one partition and format it.

    Returns:
        The node of the formatted data partition (e.g. /dev/sdb1)

    Raises:
        FormatFailedError: parted or the formatter failed
    """
    disk_node = f"/dev/{strip_dev(disk)}"
    report = on_progress or (lambda _value: None)

    report(0.0)
    log.info(
        f"Erasing {disk_node}: {options.partition_scheme.value} table, "
        f"{options.filesystem.value} labelled {label!r}"
    )
    context.check_cancelled()
    wipe = context.runner.run_privileged(["wipefs", "-a", disk_node])
    if wipe.cancelled:
        raise OperationCancelledError()
    if not wipe.ok:
        log.debug(f"wipefs failed, parted will overwrite the table: {wipe.stderr.strip()}")

    ensure_success(
        context.runner.run_privileged(build_partition_command(disk_node, options)),
        lambda r: FormatFailedError(f"Partitioning {disk_node} failed", disk_node, r.stderr),
    )
    report(0.3)
    settle(context, disk)

    part_node = partition_node(disk, 1)
    wait_for_node(context, part_node)
    report(0.5)

    mkfs = build_mkfs_command(options.filesystem, part_node, label, options.quick_format)
    log.debug(f"Formatting {part_node}: {' '.join(mkfs)}")
    ensure_success(
        context.runner.run_privileged(mkfs),
        lambda r: FormatFailedError(
            f"Creating the {options.filesystem.value} filesystem on {part_node} failed",
            part_node,
            r.stderr,
        ),
    )
    settle(context, disk)
    report(1.0)
    log.info(f"Formatted {part_node} as {options.filesystem.value}")
    return part_node


def set_partition_active(context: OperationContext, disk: str, number: int = 1) -> None:
    """Mark an MBR partition bootable through a scripted fdisk session.

    fdisk's ``a`` toggles the flag, so an already active partition is left
    alone.

    Raises:
        FormatFailedError: fdisk failed
    """
    layout = read_layout(context, disk)
    partition = layout.get(number)
    if partition is not None and "boot" in partition.flags:
        log.debug(f"Partition {number} of {disk} is already active")
        return
    disk_node = f"/dev/{strip_dev(disk)}"
    ensure_success(
        context.runner.run_privileged(["fdisk", disk_node], input_text=f"a\n{number}\nw\n"),
        lambda r: FormatFailedError(
            f"Could not mark partition {number} of {disk_node} active", disk_node, r.stderr
        ),
    )
    settle(context, disk)


def check_bad_blocks(
    context: OperationContext,
    disk: str,
    passes: int,
    on_progress: ProgressCallback | None = None,
) -> list[str]:
    """Read-only surface scan of ``disk``.

    Returns:
        Warning messages, one per pass that found bad blocks or could not run
    """
    disk_node = f"/dev/{strip_dev(disk)}"
    report = on_progress or (lambda _value: None)
    warnings: list[str] = []
    report(0.0)
    for number in range(1, passes + 1):
        context.check_cancelled()
        log.info(f"Bad block scan of {disk_node}, pass {number}/{passes}")
        result = context.runner.run_privileged(["badblocks", "-b", "4096", "-v", disk_node])
        if result.cancelled:
            raise OperationCancelledError()
        if result.returncode != 0:
            message = f"Bad block pass {number} could not run: {result.stderr.strip() or result.returncode}"
            log.warning(message)
            warnings.append(message)
        else:
            bad = [line for line in result.stdout.split() if line.isdigit()]
            if bad:
                message = f"Pass {number} found {len(bad)} bad blocks on {disk_node}"
                log.warning(message)
                warnings.append(message)
        report(number / passes)
    return warnings
