"""Imaging pipeline: turn a removable disk into a bootable drive.

This module is the top-level orchestrator. It pins the whole-disk identity,
runs every destructive step in order, and converts whatever goes wrong into a
single terminal status.

Pipeline states:
    IDLE -> PREPARING -> UNMOUNTING -> FORMATTING
        -> MOUNTING_SOURCE -> COPYING -> INSTALLING_BOOT -> [PERSISTENCE]
    IDLE -> PREPARING -> UNMOUNTING -> RAW_WRITING                      (DD)
    ... -> [VERIFYING] -> COMPLETED
    any state -> FAILED | CANCELLED

Every transition is checked against ``TRANSITIONS`` and doubles as a
cancellation checkpoint. The long loops (file copy, raw write) check the
flag once per chunk, and the process runner kills the running child on
cancel, so a request takes effect within one chunk or one command.

Pre-flight:
    The target is resolved to its whole disk, which must be a removable,
    non-system disk in a fresh enumeration. The device lock is taken on that
    whole-disk name, so a partition node or mountpoint of a busy disk is
    refused as well.

    For FAT-family targets the source image is attached and scanned during
    PREPARING. A file above 4 GiB - 1 fails the run before anything is
    unmounted or erased. The attached image is reused for the copy.

Status reporting:
    ``OperationStatus`` values flow forward only (READY < PREPARING <
    FORMATTING < COPYING < VERIFYING < terminal, progress non-decreasing
    within a phase). ``StatusReporter`` drops anything that would move
    backwards.

Threading:
    ``run_imaging`` is synchronous. ``start_imaging`` runs it on a worker
    thread and returns an ``ImagingJob`` whose status channel keeps only the
    latest value while its log channel keeps every record.

Usage:
    job = start_imaging(options, device)
    for status in job.statuses():
        print(status.display_text)
    final = job.wait()
"""

from __future__ import annotations

import queue
import threading
from contextlib import ExitStack
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Optional

from loguru import logger

from bootstick.config.settings import get_setting
from bootstick.domain.models import (
    Device,
    ImagingMode,
    ImagingOptions,
    LogEntry,
    OperationStatus,
)
from bootstick.logging import LoggerFactory, add_job_sink, operation_context
from bootstick.storage.boot import detect_boot_configuration, install_boot
from bootstick.storage.copy import CopyPlan, copy_tree
from bootstick.storage.dd import write_raw_image
from bootstick.storage.device_lock import device_operation
from bootstick.storage.devices import get_device, strip_dev
from bootstick.storage.exceptions import (
    InsufficientSpaceError,
    OperationCancelledError,
    StorageError,
)
from bootstick.storage.format import check_bad_blocks, erase_disk, sanitize_label
from bootstick.storage.iso import AttachedImage, attach_image, check_fat_compatibility, detach_image
from bootstick.storage.mount import (
    ensure_writable,
    resolve_whole_disk,
    unmount_disk,
    wait_for_partition_mount,
)
from bootstick.storage.partition import settle
from bootstick.storage.persistence import create_persistence
from bootstick.storage.process import OperationContext


log = LoggerFactory.for_imaging()

StatusCallback = Callable[[OperationStatus], None]


class PipelineState(Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    UNMOUNTING = "unmounting"
    FORMATTING = "formatting"
    MOUNTING_SOURCE = "mounting source"
    COPYING = "copying"
    INSTALLING_BOOT = "installing boot"
    PERSISTENCE = "persistence"
    RAW_WRITING = "raw writing"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.COMPLETED, PipelineState.FAILED, PipelineState.CANCELLED)


_S = PipelineState

# FAILED and CANCELLED are reachable from every non-terminal state
TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    _S.IDLE: frozenset({_S.PREPARING}),
    _S.PREPARING: frozenset({_S.UNMOUNTING}),
    _S.UNMOUNTING: frozenset({_S.FORMATTING, _S.RAW_WRITING}),
    _S.FORMATTING: frozenset({_S.MOUNTING_SOURCE, _S.VERIFYING, _S.COMPLETED}),
    _S.MOUNTING_SOURCE: frozenset({_S.COPYING}),
    _S.COPYING: frozenset({_S.INSTALLING_BOOT}),
    _S.INSTALLING_BOOT: frozenset({_S.PERSISTENCE, _S.VERIFYING, _S.COMPLETED}),
    _S.PERSISTENCE: frozenset({_S.VERIFYING, _S.COMPLETED}),
    _S.RAW_WRITING: frozenset({_S.VERIFYING, _S.COMPLETED}),
    _S.VERIFYING: frozenset({_S.COMPLETED}),
}


class IllegalTransitionError(RuntimeError):
    """The pipeline tried to move between states the table does not allow."""


def can_transition(current: PipelineState, target: PipelineState) -> bool:
    if current.is_terminal:
        return False
    if target in (PipelineState.FAILED, PipelineState.CANCELLED):
        return True
    return target in TRANSITIONS.get(current, frozenset())


class StatusReporter:
    """Holds the current OperationStatus and forwards forward-only updates."""

    def __init__(self, callback: Optional[StatusCallback] = None):
        self._callback = callback
        self._lock = threading.Lock()
        self.current = OperationStatus.ready()

    def publish(self, status: OperationStatus) -> bool:
        with self._lock:
            if not status.can_follow(self.current):
                log.trace(f"Dropping out-of-order status {status.display_text}")
                return False
            self.current = status
        if self._callback:
            self._callback(status)
        return True


def default_label(options: ImagingOptions) -> str:
    """Volume label to format with: explicit label, image stem, then setting."""
    fallback = get_setting("default_volume_label", "UNTITLED")
    label = options.volume_label
    if not label and options.image_path:
        label = Path(options.image_path).stem
    return sanitize_label(label or fallback, options.filesystem, default=fallback)


class ImagingPipeline:
    """One run of the pipeline against one disk."""

    def __init__(
        self,
        options: ImagingOptions,
        device: Optional[Device],
        context: OperationContext,
        reporter: StatusReporter,
    ):
        self.options = options
        self.device = device
        self.context = context
        self.reporter = reporter
        self.state = PipelineState.IDLE
        self.history: list[PipelineState] = [PipelineState.IDLE]
        self.warnings: list[str] = []
        self.disk: Optional[str] = None
        self.label = ""
        self.source: Optional[AttachedImage] = None
        self.target_mount: Optional[str] = None
        self._plan: Optional[CopyPlan] = None

    # ------------------------------------------------------------ plumbing

    def transition(self, target: PipelineState) -> None:
        if not can_transition(self.state, target):
            raise IllegalTransitionError(f"{self.state.value} -> {target.value}")
        if not target.is_terminal:
            self.context.check_cancelled()
        log.debug(f"Pipeline: {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)

    def publish(self, status: OperationStatus) -> None:
        self.reporter.publish(status)

    def _warn(self, message: str) -> None:
        self.warnings.append(message)

    @property
    def _image(self) -> Optional[Path]:
        return Path(self.options.image_path) if self.options.image_path else None

    # ------------------------------------------------------------ entry point

    def run(self) -> OperationStatus:
        """Execute every step and return the terminal status."""
        try:
            with operation_context(
                "imaging",
                job_id=self.context.job_id,
                device=self.options.device_id,
                mode=self.options.mode.value,
            ):
                self._execute()
        except OperationCancelledError:
            return self._terminate(PipelineState.CANCELLED, OperationStatus.cancelled())
        except (StorageError, OSError) as error:
            if self.context.cancelled:
                return self._terminate(PipelineState.CANCELLED, OperationStatus.cancelled())
            reason = str(error) if isinstance(error, StorageError) else (error.strerror or str(error))
            return self._terminate(PipelineState.FAILED, OperationStatus.failed(reason))
        except Exception as error:
            log.exception(f"Unexpected error during {self.state.value}")
            if self.context.cancelled:
                return self._terminate(PipelineState.CANCELLED, OperationStatus.cancelled())
            return self._terminate(PipelineState.FAILED, OperationStatus.failed(f"Unexpected error: {error}"))
        self.transition(PipelineState.COMPLETED)
        status = OperationStatus.completed()
        self.publish(status)
        return status

    def _terminate(self, state: PipelineState, status: OperationStatus) -> OperationStatus:
        self.transition(state)
        self.publish(status)
        return status

    def _execute(self) -> None:
        with ExitStack() as cleanup:
            try:
                self._prepare(cleanup)
                self._unmount()
                if self.options.mode is ImagingMode.DD:
                    self._raw_write()
                else:
                    self._format()
                    if self._image is not None:
                        self._mount_source(cleanup)
                        self._copy()
                        self._install_boot()
                        if self.options.wants_persistence:
                            self._persistence()
                if self.options.check_bad_blocks:
                    self._verify()
            except OperationCancelledError:
                log.warning(f"Imaging cancelled during {self.state.value}")
                raise
            except StorageError as error:
                if not self.context.cancelled:
                    log.error(f"{self.state.value.capitalize()} failed: {error}")
                    if error.detail:
                        log.error(error.detail)
                raise
        for warning in self.warnings:
            log.warning(f"Completed with warning: {warning}")

    # ------------------------------------------------------------ steps

    def _prepare(self, cleanup: ExitStack) -> None:
        self.transition(PipelineState.PREPARING)
        self.publish(OperationStatus.preparing())

        target = self.device.node if self.device else self.options.device_id
        if not target.startswith("/"):
            target = f"/dev/{target}"
        self.disk = resolve_whole_disk(self.context, target)
        if self.device and strip_dev(self.device.identifier) != self.disk:
            log.warning(f"{self.device.identifier} resolved to whole disk {self.disk}")
        # only removable, non-system disks from a fresh enumeration are targets
        self.device = get_device(self.disk, self.context.runner)
        cleanup.enter_context(device_operation(self.disk))

        image = self._image
        if self.options.mode is ImagingMode.DD:
            capacity = self.device.size_bytes
            size = image.stat().st_size
            if size > capacity:
                raise InsufficientSpaceError(self.disk, size, capacity)
            return

        self.label = default_label(self.options)
        if image is not None and self.options.filesystem.is_fat_family:
            log.info(f"Scanning {image.name} for files too large for {self.options.filesystem.value}")
            self._attach_source(cleanup)
            self._plan = check_fat_compatibility(self.source.mount_path)

    def _attach_source(self, cleanup: ExitStack) -> None:
        self.source = attach_image(self.context, self._image)
        cleanup.callback(detach_image, self.context, self.source)

    def _unmount(self) -> None:
        self.transition(PipelineState.UNMOUNTING)
        unmount_disk(self.context, self.disk)

    def _format(self) -> None:
        self.transition(PipelineState.FORMATTING)
        self.publish(OperationStatus.formatting(0.0))
        erase_disk(
            self.context,
            self.disk,
            self.options,
            self.label,
            on_progress=lambda fraction: self.publish(OperationStatus.formatting(fraction)),
        )

    def _mount_source(self, cleanup: ExitStack) -> None:
        self.transition(PipelineState.MOUNTING_SOURCE)
        self.publish(OperationStatus.copying(0.0))
        if self.source is None:
            self._attach_source(cleanup)
        self.target_mount = wait_for_partition_mount(self.context, self.disk)
        cleanup.callback(self._release_target)
        ensure_writable(self.context, self.target_mount)

    def _copy(self) -> None:
        self.transition(PipelineState.COPYING)
        result = copy_tree(
            self.source.mount_path,
            Path(self.target_mount),
            context=self.context,
            on_progress=lambda fraction, item: self.publish(OperationStatus.copying(fraction, item)),
            plan=self._plan,
            on_log=self._warn,
        )
        log.info(f"Copied {result.files_copied} files")

    def _install_boot(self) -> None:
        self.transition(PipelineState.INSTALLING_BOOT)
        self.publish(OperationStatus.copying(1.0, "boot files"))
        config = detect_boot_configuration(self.source.mount_path)
        install_boot(
            self.context,
            config,
            self.options.target_firmware,
            source_root=self.source.mount_path,
            dest_root=Path(self.target_mount),
            disk=self.disk,
            scheme=self.options.partition_scheme,
            on_log=self._warn,
        )

    def _persistence(self) -> None:
        self.transition(PipelineState.PERSISTENCE)
        self.publish(OperationStatus.copying(1.0, "persistence partition"))
        config = create_persistence(
            self.context,
            self.disk,
            self.options.persistence_size_bytes,
            source_root=self.source.mount_path,
            primary_filesystem=self.options.filesystem,
            on_log=self._warn,
        )
        log.info(f"Persistence partition ready: {config.label} ({config.filesystem.value})")

    def _raw_write(self) -> None:
        self.transition(PipelineState.RAW_WRITING)
        name = self._image.name
        self.publish(OperationStatus.copying(0.0, name))
        write_raw_image(
            self.context,
            self._image,
            self.disk,
            device_size=self.device.size_bytes,
            on_progress=lambda fraction: self.publish(OperationStatus.copying(fraction, name)),
        )
        settle(self.context, self.disk)

    def _verify(self) -> None:
        self.transition(PipelineState.VERIFYING)
        self.publish(OperationStatus.verifying(0.0))
        self.warnings.extend(
            check_bad_blocks(
                self.context,
                self.disk,
                self.options.bad_block_passes,
                on_progress=lambda fraction: self.publish(OperationStatus.verifying(fraction)),
            )
        )

    def _release_target(self) -> None:
        """Unmount the finished drive; runs after cancellation too."""
        cleanup_context = OperationContext(
            job_id=self.context.job_id, runner=self.context.cleanup_runner
        )
        try:
            unmount_disk(cleanup_context, self.disk)
        except StorageError as error:
            log.warning(f"Could not unmount {self.disk} after imaging: {error}")


def run_imaging(
    options: ImagingOptions,
    device: Optional[Device] = None,
    on_status: Optional[StatusCallback] = None,
    context: Optional[OperationContext] = None,
) -> OperationStatus:
    """Run the whole pipeline synchronously.

    Never raises for pipeline failures: the result is always a terminal
    COMPLETED, FAILED or CANCELLED status, also delivered to ``on_status``.
    """
    context = context or OperationContext()
    reporter = StatusReporter(on_status)

    try:
        options.validate()
    except ValueError as error:
        log.error(f"Invalid imaging options: {error}")
        reporter.publish(OperationStatus.failed(str(error)))
        return reporter.current

    pipeline = ImagingPipeline(options, device, context, reporter)
    return pipeline.run()


class ImagingJob:
    """A pipeline run on a worker thread.

    ``statuses()`` yields the latest status each time it changes (values in
    between may be skipped). ``logs()`` yields every log record of the job in
    order.
    """

    def __init__(
        self,
        options: ImagingOptions,
        device: Optional[Device] = None,
        context: Optional[OperationContext] = None,
        log_level: str = "INFO",
    ):
        self.options = options
        self.device = device
        self.context = context or OperationContext()
        self.job_id = self.context.job_id
        self._log_level = log_level
        self._condition = threading.Condition()
        self._status = OperationStatus.ready()
        self._version = 0
        self._result: Optional[OperationStatus] = None
        self._finished = False
        self._logs: queue.Queue[LogEntry] = queue.Queue()
        self._sink_id: Optional[int] = None
        self._thread = threading.Thread(target=self._run, name=f"imaging-{self.job_id}", daemon=True)

    def start(self) -> ImagingJob:
        self._sink_id = add_job_sink(self.job_id, self._on_log, level=self._log_level)
        self._thread.start()
        return self

    @property
    def status(self) -> OperationStatus:
        with self._condition:
            return self._status

    @property
    def done(self) -> bool:
        with self._condition:
            return self._finished

    def cancel(self) -> None:
        self.context.cancel()

    def wait(self, timeout: Optional[float] = None) -> Optional[OperationStatus]:
        """Block until the job ends; returns its terminal status (None on timeout)."""
        self._thread.join(timeout)
        with self._condition:
            return self._result

    def statuses(self) -> Iterator[OperationStatus]:
        seen = 0
        while True:
            with self._condition:
                self._condition.wait_for(lambda: self._version != seen or self._finished)
                if self._version == seen:
                    return
                seen = self._version
                status = self._status
            yield status
            if status.is_terminal:
                return

    def logs(self, block: bool = False, timeout: float = 0.1) -> Iterator[LogEntry]:
        """Yield queued log records; with ``block`` keep going until the job ends."""
        while True:
            try:
                yield self._logs.get(block=block, timeout=timeout if block else None)
            except queue.Empty:
                if not block or self.done:
                    return

    def _on_status(self, status: OperationStatus) -> None:
        with self._condition:
            self._status = status
            self._version += 1
            self._condition.notify_all()

    def _on_log(self, message) -> None:
        record = message.record
        self._logs.put(
            LogEntry(
                message=record["message"],
                level=record["level"].name.lower(),
                timestamp=record["time"],
                source=record["extra"].get("source", ""),
            )
        )

    def _run(self) -> None:
        result = None
        try:
            result = run_imaging(self.options, self.device, self._on_status, self.context)
        finally:
            if self._sink_id is not None:
                logger.remove(self._sink_id)
            with self._condition:
                self._result = result
                self._finished = True
                self._condition.notify_all()


def start_imaging(
    options: ImagingOptions,
    device: Optional[Device] = None,
    context: Optional[OperationContext] = None,
) -> ImagingJob:
    """Start the pipeline on a worker thread and return its job handle."""
    return ImagingJob(options, device, context).start()
