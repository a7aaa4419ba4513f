"""Read-only attachment of the source disk image.

The image is attached as a read-only loop device through udisks and mounted
with ``udisksctl mount``, which needs no elevation on a desktop session. If
udisks is unavailable, a privileged ``mount -o loop,ro`` into a private
directory is used instead. ``mounted_image`` detaches on every exit path,
including cancellation.

Pre-flight:
    ``check_fat_compatibility`` scans an attached image for files larger than
    FAT32 can hold so the pipeline fails before anything is erased.
"""

from __future__ import annotations

import os
import re
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Generator, Optional

from bootstick.domain.models import FAT_MAX_FILE_SIZE
from bootstick.logging import LoggerFactory
from bootstick.storage.copy import CopyPlan, plan_copy
from bootstick.storage.exceptions import (
    ISOMountFailedError,
    OperationCancelledError,
    OversizedFileForFATError,
)
from bootstick.storage.mount import mount_partition, unmount_path
from bootstick.storage.process import OperationContext


log = LoggerFactory.for_system()

_LOOP_DEVICE = re.compile(r"(/dev/loop\d+)")


@dataclass(frozen=True)
class AttachedImage:
    image_path: Path
    mount_path: Path
    loop_device: Optional[str] = None  # set when attached through udisks
    private_mount: bool = False  # mounted by us into a temporary directory


def attach_image(context: OperationContext, image_path: Path) -> AttachedImage:
    """Attach ``image_path`` read-only and return where it is mounted.

    Raises:
        ISOMountFailedError: Neither udisks nor a privileged loop mount worked
    """
    image_path = Path(image_path)
    if not image_path.is_file():
        raise ISOMountFailedError(str(image_path), detail="file does not exist")

    result = context.runner.run(
        ["udisksctl", "loop-setup", "-r", "-f", str(image_path), "--no-user-interaction"]
    )
    if result.cancelled:
        raise OperationCancelledError()
    match = _LOOP_DEVICE.search(result.stdout) if result.ok else None
    if match:
        loop = match.group(1)
        mount_path = mount_partition(context, loop, elevate=False)
        if mount_path:
            log.info(f"Source image mounted at {mount_path} ({loop})")
            return AttachedImage(image_path, Path(mount_path), loop_device=loop)
        log.debug(f"udisks could not mount {loop}, detaching it")
        _delete_loop(context, loop)

    target = tempfile.mkdtemp(prefix="bootstick-source-")
    result = context.runner.run_privileged(["mount", "-o", "loop,ro", str(image_path), target])
    if result.cancelled:
        os.rmdir(target)
        raise OperationCancelledError()
    if not result.ok:
        os.rmdir(target)
        raise ISOMountFailedError(str(image_path), detail=result.stderr)
    log.info(f"Source image mounted at {target}")
    return AttachedImage(image_path, Path(target), private_mount=True)


def _delete_loop(context: OperationContext, loop: str) -> None:
    result = context.cleanup_runner.run(["udisksctl", "loop-delete", "-b", loop, "--no-user-interaction"])
    if not result.ok:
        log.warning(f"Could not delete loop device {loop}: {result.stderr.strip()}")


def detach_image(context: OperationContext, attached: AttachedImage) -> None:
    """Unmount and detach; failures are logged, never raised."""
    runner = context.cleanup_runner
    if attached.private_mount:
        unmount_path(context, str(attached.mount_path))
    elif attached.loop_device:
        result = runner.run(
            ["udisksctl", "unmount", "-b", attached.loop_device, "--no-user-interaction"]
        )
        if not result.ok:
            log.warning(f"Could not unmount source image: {result.stderr.strip()}")
        _delete_loop(context, attached.loop_device)
    log.debug(f"Source image {attached.image_path.name} detached")


@contextmanager
def mounted_image(
    context: OperationContext, image_path: Path
) -> Generator[AttachedImage, None, None]:
    attached = attach_image(context, image_path)
    try:
        yield attached
    finally:
        detach_image(context, attached)


def check_fat_compatibility(root: Path, plan: Optional[CopyPlan] = None) -> CopyPlan:
    """Fail if any file under ``root`` exceeds the FAT32 size ceiling.

    Returns:
        The copy plan built during the scan, for reuse by the copy step

    Raises:
        OversizedFileForFATError: For the first (largest) oversized file
    """
    plan = plan or plan_copy(root)
    oversized = sorted(plan.oversized(FAT_MAX_FILE_SIZE), key=lambda item: -item.size)
    if oversized:
        worst = oversized[0]
        log.error(
            f"{len(oversized)} file(s) exceed FAT32's limit, largest {worst.relative} "
            f"({worst.size} bytes)"
        )
        raise OversizedFileForFATError(worst.relative, worst.size)
    return plan
