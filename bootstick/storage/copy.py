"""Chunked, cancellable copy of a mounted source tree onto the target.

The tree is enumerated once into a flat ``CopyPlan`` (files plus a byte
total). Files are then copied with positioned reads and writes in fixed-size
chunks so progress is reported mid-file and a cancellation request stops the
transfer within one chunk. Destination directories are created lazily as
files need them.

Failure on any file aborts the whole copy with ``CopyFailedError``. Files
written so far are left in place: the target was just formatted, so there is
nothing to roll back to.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from bootstick.config.settings import get_float, get_int
from bootstick.domain.models import FAT_MAX_FILE_SIZE
from bootstick.logging import EventLogger, LoggerFactory, ThrottledLogger
from bootstick.storage.exceptions import CopyFailedError, OperationCancelledError
from bootstick.storage.process import OperationContext
from bootstick.storage.progress import ProgressThrottle, TransferMeter


log = LoggerFactory.for_copy()
progress_log = ThrottledLogger(log, interval_seconds=5.0)

CHUNK_SIZE = 256 * 1024

ProgressFn = Callable[[float, str], None]
LogFn = Callable[[str], None]


@dataclass(frozen=True)
class PlannedFile:
    source: Path
    relative: str
    size: int


@dataclass
class CopyPlan:
    files: list[PlannedFile] = field(default_factory=list)
    total_bytes: int = 0
    skipped: list[str] = field(default_factory=list)

    def oversized(self, limit: int = FAT_MAX_FILE_SIZE) -> list[PlannedFile]:
        return [item for item in self.files if item.size > limit]


@dataclass
class CopyResult:
    files_copied: int = 0
    bytes_copied: int = 0
    warnings: list[str] = field(default_factory=list)


def plan_copy(source_root: Path) -> CopyPlan:
    """Walk ``source_root`` once and list every regular file with its size.

    Hidden files are included (live images keep metadata under ``.disk``).
    Symlinks are followed to regular files; dangling ones are skipped.
    """
    source_root = Path(source_root)
    plan = CopyPlan()
    for dirpath, dirnames, filenames in os.walk(source_root):
        dirnames.sort()
        for name in sorted(filenames):
            path = Path(dirpath) / name
            relative = path.relative_to(source_root).as_posix()
            try:
                if not path.is_file():
                    plan.skipped.append(relative)
                    continue
                size = path.stat().st_size
            except OSError:
                plan.skipped.append(relative)
                continue
            plan.files.append(PlannedFile(path, relative, size))
            plan.total_bytes += size
    if plan.skipped:
        log.warning(f"Skipping {len(plan.skipped)} entries that are not regular files")
    log.debug(f"Copy plan: {len(plan.files)} files, {plan.total_bytes} bytes")
    return plan


def _copy_file(
    context: OperationContext,
    item: PlannedFile,
    destination: Path,
    chunk_size: int,
    on_chunk: Callable[[int], None],
) -> int:
    copied = 0
    src_fd = os.open(item.source, os.O_RDONLY)
    try:
        dst_fd = os.open(destination, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
        try:
            while True:
                context.check_cancelled()
                chunk = os.pread(src_fd, chunk_size, copied)
                if not chunk:
                    break
                view = memoryview(chunk)
                written = 0
                while written < len(chunk):
                    written += os.pwrite(dst_fd, view[written:], copied + written)
                copied += len(chunk)
                on_chunk(len(chunk))
        finally:
            os.close(dst_fd)
    finally:
        os.close(src_fd)
    return copied


def copy_tree(
    source_root: Path,
    dest_root: Path,
    *,
    context: OperationContext,
    on_progress: Optional[ProgressFn] = None,
    on_log: Optional[LogFn] = None,
    chunk_size: Optional[int] = None,
    progress_interval: Optional[float] = None,
    plan: Optional[CopyPlan] = None,
) -> CopyResult:
    """Copy every file under ``source_root`` to ``dest_root``.

    Args:
        source_root: Mounted source image
        dest_root: Mounted target filesystem
        context: Operation context (cancellation checked before every chunk)
        on_progress: Called with (fraction, current relative path); throttled
            to once per ``progress_interval`` plus a final 1.0 update
        on_log: Receives warning messages also sent to the log
        chunk_size: Bytes per read/write (default 256 KiB)
        plan: A plan already built by ``plan_copy`` to avoid a second walk

    Raises:
        CopyFailedError: A file could not be read, created or written
        OperationCancelledError: Cancellation was requested
    """
    source_root = Path(source_root)
    dest_root = Path(dest_root)
    chunk_size = chunk_size or get_int("copy_chunk_size", CHUNK_SIZE)
    interval = progress_interval if progress_interval is not None else get_float("progress_interval", 0.5)
    plan = plan or plan_copy(source_root)
    result = CopyResult()
    meter = TransferMeter(plan.total_bytes)
    throttle = ProgressThrottle(interval)
    created: set[Path] = {dest_root}
    current = ""

    def warn(message: str) -> None:
        log.warning(message)
        result.warnings.append(message)
        if on_log:
            on_log(message)

    def emit(force: bool = False) -> None:
        if on_progress and throttle.ready(force):
            on_progress(meter.fraction, current)
        if not force:
            progress_log.debug("copy", f"Copied {meter.describe()}")

    def chunk_done(count: int) -> None:
        meter.add(count)
        emit()

    log.info(f"Copying {len(plan.files)} files ({meter.describe()}) to {dest_root}")
    emit(force=True)
    for item in plan.files:
        context.check_cancelled()
        current = item.relative
        if item.size > FAT_MAX_FILE_SIZE:
            warn(f"{item.relative} is larger than 4 GiB and will not fit on FAT32")
        target = dest_root / item.relative
        try:
            if target.parent not in created:
                target.parent.mkdir(parents=True, exist_ok=True)
                created.add(target.parent)
            copied = _copy_file(context, item, target, chunk_size, chunk_done)
        except OperationCancelledError:
            log.warning(f"Copy cancelled during {item.relative}")
            raise
        except OSError as error:
            raise CopyFailedError(item.relative, error.strerror or str(error)) from error
        result.files_copied += 1
        result.bytes_copied += copied

    emit(force=True)
    EventLogger.log_transfer_progress(
        log, meter.fraction * 100, meter.done, (meter.rate or 0) / 1_000_000
    )
    log.info(f"Copied {result.files_copied} files, {result.bytes_copied} bytes")
    return result
