"""Raw (DD mode) image writing.

The image already contains a complete on-disk layout, so it is streamed
byte-for-byte onto the whole-disk node without partitioning or formatting.

Write path, in order of preference:
    1. The disk node opened with O_DIRECT, bypassing the page cache so
       progress tracks what actually reached the device. Buffers come from an
       anonymous mmap (page aligned) and the final chunk is zero-padded to the
       512-byte sector size that direct I/O demands.
    2. The same node opened buffered, when the kernel or driver rejects
       O_DIRECT (EINVAL).
    3. An elevated ``dd`` when the current user may not open the node at all.
"""

from __future__ import annotations

import errno
import mmap
import os
from pathlib import Path
from typing import Callable, Optional

from bootstick.config.settings import get_float, get_int
from bootstick.logging import EventLogger, LoggerFactory, ThrottledLogger
from bootstick.storage.devices import strip_dev
from bootstick.storage.exceptions import (
    InsufficientSpaceError,
    OperationCancelledError,
    RawWriteFailedError,
)
from bootstick.storage.process import OperationContext, ensure_success
from bootstick.storage.progress import ProgressThrottle, TransferMeter


log = LoggerFactory.for_copy()
progress_log = ThrottledLogger(log, interval_seconds=5.0)

RAW_CHUNK_SIZE = 4 * 1024 * 1024
SECTOR_SIZE = 512

ProgressFn = Callable[[float], None]


def device_size_bytes(context: OperationContext, node: str) -> Optional[int]:
    result = context.runner.run(["lsblk", "-b", "-d", "-n", "-o", "SIZE", node], log_command=False)
    if result.cancelled:
        raise OperationCancelledError()
    if not result.ok:
        return None
    try:
        return int(result.stdout.strip().splitlines()[0])
    except (ValueError, IndexError):
        return None


def _open_target(node: str) -> tuple[Optional[int], bool]:
    """Open ``node`` for writing.

    Returns:
        (fd, direct) where fd is None if the user lacks permission

    Raises:
        RawWriteFailedError: The node cannot be opened for another reason
    """
    flags = os.O_WRONLY | getattr(os, "O_CLOEXEC", 0)
    direct = getattr(os, "O_DIRECT", 0)
    try:
        if direct:
            try:
                return os.open(node, flags | direct), True
            except OSError as error:
                if error.errno != errno.EINVAL:
                    raise
                log.debug(f"{node} refused O_DIRECT, using buffered writes")
        return os.open(node, flags), False
    except PermissionError:
        return None, False
    except OSError as error:
        raise RawWriteFailedError(
            f"Cannot open {node}: {error.strerror or error}", node
        ) from error


def _stream(
    context: OperationContext,
    image_path: Path,
    fd: int,
    direct: bool,
    node: str,
    chunk_size: int,
    meter: TransferMeter,
    report: Callable[[bool], None],
) -> None:
    buffer = mmap.mmap(-1, chunk_size)
    view = memoryview(buffer)
    offset = 0
    try:
        with open(image_path, "rb", buffering=0) as source:
            while True:
                context.check_cancelled()
                count = source.readinto(view)
                if not count:
                    break
                length = count
                if direct and count % SECTOR_SIZE:
                    length = count + SECTOR_SIZE - count % SECTOR_SIZE
                    view[count:length] = bytes(length - count)
                written = 0
                while written < length:
                    written += os.write(fd, view[written:length])
                offset += count
                meter.add(count)
                report(False)
        os.fsync(fd)
    except OSError as error:
        raise RawWriteFailedError(
            f"Write to {node} failed at offset {offset}: {error.strerror or error}", node
        ) from error
    finally:
        view.release()
        buffer.close()


def write_raw_image(
    context: OperationContext,
    image_path: Path,
    disk: str,
    *,
    device_size: Optional[int] = None,
    chunk_size: Optional[int] = None,
    on_progress: Optional[ProgressFn] = None,
) -> int:
    """Write ``image_path`` over the whole of ``disk``.

    Returns:
        Number of image bytes written

    Raises:
        InsufficientSpaceError: The image is larger than the disk
        RawWriteFailedError: Opening or writing the device failed
        OperationCancelledError: Cancellation was requested
    """
    image_path = Path(image_path)
    node = f"/dev/{strip_dev(disk)}"
    image_size = image_path.stat().st_size
    device_size = device_size or device_size_bytes(context, node)
    if device_size and image_size > device_size:
        raise InsufficientSpaceError(strip_dev(disk), image_size, device_size)

    chunk_size = chunk_size or get_int("raw_chunk_size", RAW_CHUNK_SIZE)
    chunk_size = max(SECTOR_SIZE, chunk_size - chunk_size % SECTOR_SIZE)
    meter = TransferMeter(image_size)
    throttle = ProgressThrottle(get_float("progress_interval", 0.5))

    def report(force: bool) -> None:
        if on_progress and throttle.ready(force):
            on_progress(meter.fraction)
        progress_log.debug("raw", f"Wrote {meter.describe()}")

    EventLogger.log_imaging_started(log, str(image_path), node, "dd")
    report(True)
    fd, direct = _open_target(node)
    if fd is None:
        log.info(f"No write access to {node}, writing through an elevated dd")
        ensure_success(
            context.runner.run_privileged(
                ["dd", f"if={image_path}", f"of={node}", f"bs={chunk_size}",
                 "conv=fsync", "status=none"]
            ),
            lambda r: RawWriteFailedError(f"dd to {node} failed", node, r.stderr),
        )
        meter.add(image_size)
    else:
        log.info(f"Writing {image_path.name} to {node} ({'direct' if direct else 'buffered'} I/O)")
        try:
            _stream(context, image_path, fd, direct, node, chunk_size, meter, report)
        finally:
            os.close(fd)
    report(True)
    log.info(f"Raw write finished: {meter.describe()}")
    return meter.done
