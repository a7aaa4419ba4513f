"""Partition table inspection and editing through parted.

Operations:
    - settle(): Flush writes and let udev catch up after a table change
    - read_layout(): Parse ``parted -m unit B print free`` into a PartitionLayout
    - add_partition(): Create a partition over an exact byte range
    - resize_partition(): Shrink a FAT, ext or NTFS partition together with
      its filesystem, retrying once within the size limits its tool reports
    - query_min_size(): Smallest size the filesystem tool allows

Partition edits go through privileged commands and always address the
whole-disk node; partition nodes are only used for filesystem tools.
"""

from __future__ import annotations

import re
from typing import Optional

from bootstick.domain.models import FileSystemType, PartitionInfo, PartitionLayout
from bootstick.logging import LoggerFactory
from bootstick.storage.devices import partition_node, strip_dev
from bootstick.storage.exceptions import OperationCancelledError, PartitionFailedError
from bootstick.storage.process import OperationContext, ensure_success


log = LoggerFactory.for_system()

MIB = 1024 * 1024

_FAT_MIN = re.compile(r"Min size:\s*(\d+)", re.IGNORECASE)
_EXT_MIN_BLOCKS = re.compile(r"minimum size of the filesystem:\s*(\d+)", re.IGNORECASE)
_EXT_BLOCK_SIZE = re.compile(r"^Block size:\s*(\d+)", re.IGNORECASE | re.MULTILINE)
_NTFS_MIN = re.compile(r"resize at (\d+) bytes", re.IGNORECASE)


def align_down(value: int, alignment: int = MIB) -> int:
    return value - (value % alignment)


def align_up(value: int, alignment: int = MIB) -> int:
    return -(-value // alignment) * alignment


def settle(context: OperationContext, disk: str) -> None:
    """Best-effort: sync, re-read the partition table and wait for udev."""
    node = f"/dev/{strip_dev(disk)}"
    commands = [["sync"]]
    commands.append(["partprobe", node])
    commands.append(["udevadm", "settle", "--timeout=10"])
    for command in commands:
        if command[0] == "partprobe":
            result = context.runner.run_privileged(command)
        else:
            result = context.runner.run(command, log_command=False)
        if result.cancelled:
            raise OperationCancelledError()
        if not result.ok:
            log.trace(f"{command[0]} settle step failed: {result.stderr.strip()}")


def _bytes(field: str) -> int:
    return int(field.rstrip("B"))


def parse_parted_machine(output: str) -> PartitionLayout:
    """Parse the ``-m`` (machine readable) listing of ``parted print free``.

    Raises:
        ValueError: The output does not contain a disk header line
    """
    lines = [line.strip().rstrip(";") for line in output.splitlines() if line.strip()]
    header: Optional[list[str]] = None
    partitions: list[PartitionInfo] = []
    free_regions: list[PartitionInfo] = []
    for line in lines:
        if line == "BYT":
            continue
        fields = line.split(":")
        if header is None:
            if len(fields) < 6:
                raise ValueError(f"Unexpected parted header: {line}")
            header = fields
            continue
        if len(fields) < 4:
            continue
        number, start, end, size = fields[:4]
        rest = fields[4:]
        if rest and rest[0] == "free":
            free_regions.append(
                PartitionInfo(number=0, start=_bytes(start), end=_bytes(end), size=_bytes(size))
            )
            continue
        partitions.append(
            PartitionInfo(
                number=int(number),
                start=_bytes(start),
                end=_bytes(end),
                size=_bytes(size),
                filesystem=rest[0] if rest else "",
                name=rest[1] if len(rest) > 1 else "",
                flags=rest[2] if len(rest) > 2 else "",
            )
        )
    if header is None:
        raise ValueError("parted output contained no disk header")
    return PartitionLayout(
        disk_size=_bytes(header[1]),
        table=header[5],
        partitions=partitions,
        free_regions=free_regions,
    )


def read_layout(context: OperationContext, disk: str) -> PartitionLayout:
    node = f"/dev/{strip_dev(disk)}"
    result = ensure_success(
        context.runner.run_privileged(["parted", "-m", "-s", node, "unit", "B", "print", "free"]),
        lambda r: PartitionFailedError(f"Could not read partition table of {disk}", disk, r.stderr),
    )
    try:
        return parse_parted_machine(result.stdout)
    except ValueError as error:
        raise PartitionFailedError(str(error), disk, result.stdout) from error


def add_partition(
    context: OperationContext,
    disk: str,
    start: int,
    end: int,
    *,
    fs_hint: str = "ext4",
    name: str = "primary",
    table: str = "msdos",
) -> int:
    """Create a partition spanning bytes ``start`` to ``end`` inclusive.

    Returns:
        The number of the new partition
    """
    node = f"/dev/{strip_dev(disk)}"
    # msdos takes a partition type here, gpt takes a partition name
    kind = name if table == "gpt" else "primary"
    log.info(f"Adding partition on {disk}: {start}B-{end}B ({fs_hint})")
    ensure_success(
        context.runner.run_privileged(
            ["parted", "-s", "-a", "optimal", node, "unit", "B",
             "mkpart", kind, fs_hint, f"{start}B", f"{end}B"]
        ),
        lambda r: PartitionFailedError(f"Could not add partition to {disk}", disk, r.stderr),
    )
    settle(context, disk)
    layout = read_layout(context, disk)
    for partition in layout.partitions:
        if partition.start <= start + MIB and partition.end >= start:
            return partition.number
    raise PartitionFailedError(f"New partition on {disk} not found after creation", disk)


def query_min_size(
    context: OperationContext, disk: str, number: int, filesystem: FileSystemType
) -> Optional[int]:
    """Minimum size in bytes reported by the filesystem's resize tool."""
    node = partition_node(disk, number)
    if filesystem.is_fat_family:
        result = context.runner.run_privileged(["fatresize", "-i", node])
        match = _FAT_MIN.search(result.stdout)
        return int(match.group(1)) if match else None
    if filesystem.is_ext:
        result = context.runner.run_privileged(["resize2fs", "-P", node])
        blocks = _EXT_MIN_BLOCKS.search(result.stdout + result.stderr)
        info = context.runner.run_privileged(["dumpe2fs", "-h", node])
        block_size = _EXT_BLOCK_SIZE.search(info.stdout)
        if blocks and block_size:
            return int(blocks.group(1)) * int(block_size.group(1))
        return None
    if filesystem is FileSystemType.NTFS:
        result = context.runner.run_privileged(["ntfsresize", "-f", "-i", node])
        match = _NTFS_MIN.search(result.stdout)
        return int(match.group(1)) if match else None
    return None


def _shrink(
    context: OperationContext,
    disk: str,
    partition: PartitionInfo,
    new_size: int,
    filesystem: FileSystemType,
) -> tuple[bool, str]:
    node = partition_node(disk, partition.number)
    disk_node = f"/dev/{strip_dev(disk)}"
    new_end = partition.start + new_size - 1
    runner = context.runner

    if filesystem.is_fat_family:
        steps = [(["fatresize", "-s", str(new_size), node], None)]
    elif filesystem.is_ext:
        steps = [
            (["e2fsck", "-f", "-y", node], None),
            (["resize2fs", node, f"{new_size // 1024}K"], None),
        ]
    elif filesystem is FileSystemType.NTFS:
        steps = [(["ntfsresize", "-f", "-s", str(new_size), node], "y\n")]
    else:
        return False, f"{filesystem.value} volumes cannot be resized"

    if not filesystem.is_fat_family:
        # parted asks for confirmation when shrinking; answer it on stdin
        steps.append(
            (["parted", "---pretend-input-tty", disk_node, "unit", "B",
              "resizepart", str(partition.number), f"{new_end}B"], "Yes\n")
        )

    for command, input_text in steps:
        result = runner.run_privileged(command, input_text)
        if result.cancelled:
            raise OperationCancelledError()
        # e2fsck exits 1 when it corrected something, which is fine
        if result.returncode != 0 and not (command[0] == "e2fsck" and result.returncode == 1):
            return False, result.stderr or result.stdout
    return True, ""


def resize_partition(
    context: OperationContext,
    disk: str,
    number: int,
    new_size: int,
    filesystem: FileSystemType,
) -> int:
    """Shrink partition ``number`` (and its filesystem) to ``new_size`` bytes.

    If the direct resize fails, the tool's minimum size is queried and the
    resize is retried once with a MiB-aligned size inside that limit.

    Returns:
        The partition's new end offset in bytes

    Raises:
        PartitionFailedError: Both attempts failed or the limit is above
            ``new_size``
    """
    layout = read_layout(context, disk)
    partition = layout.get(number)
    if partition is None:
        raise PartitionFailedError(f"Partition {number} not found on {disk}", disk)
    if new_size >= partition.size:
        return partition.end

    log.info(f"Shrinking {partition_node(disk, number)} from {partition.size} to {new_size} bytes")
    ok, detail = _shrink(context, disk, partition, new_size, filesystem)
    if not ok:
        log.warning(f"Resize failed, querying size limits: {detail.strip()}")
        minimum = query_min_size(context, disk, number, filesystem)
        if minimum is None or minimum > new_size:
            raise PartitionFailedError(
                f"Cannot shrink partition {number} of {disk} to {new_size} bytes"
                + (f" (minimum {minimum} bytes)" if minimum else ""),
                disk,
                detail,
            )
        retry_size = min(new_size, max(align_down(new_size), align_up(minimum, 4096)))
        log.info(f"Retrying resize with {retry_size} bytes (minimum {minimum})")
        ok, detail = _shrink(context, disk, partition, retry_size, filesystem)
        if not ok:
            raise PartitionFailedError(f"Could not resize partition {number} of {disk}", disk, detail)
        new_size = retry_size

    settle(context, disk)
    return partition.start + new_size - 1
