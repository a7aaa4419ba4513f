from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from loguru import Logger, Message

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "BOOTSTICK_LOG_DIR",
        Path.home() / ".local" / "state" / "bootstick" / "logs",
    )
)

# loguru already ships TRACE at level 5, below DEBUG


def _should_log_progress(record) -> bool:
    """Keep per-chunk progress chatter out of the console unless tracing."""
    tags = record["extra"].get("tags", [])

    if record["level"].no >= logger.level("WARNING").no:
        return True

    # Progress updates below INFO are TRACE-only on the console
    if "progress" in tags and record["level"].no < logger.level("INFO").no:
        return record["level"].no <= logger.level("TRACE").no

    return True


def _should_log_settle(record) -> bool:
    """Filter udev settle / partprobe noise - only shown in TRACE mode."""
    message = record["message"].lower()

    if "settle" in message or "partprobe" in message:
        return record["level"].no <= logger.level("TRACE").no

    return True


def _combined_filter(record) -> bool:
    """Combined filter for all console suppression rules."""
    return _should_log_progress(record) and _should_log_settle(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
    extra_sink: Callable[[Message], None] | None = None,
    extra_sink_level: str | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Pipeline failures, refused elevation
    - WARNING: Degraded results (missing boot blobs, bad blocks, FAT fallbacks)
    - SUCCESS/INFO: Pipeline phases, state changes
    - DEBUG: Command lines, exit codes, captured stderr
    - TRACE: Per-chunk progress and udev settle chatter

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - trace.log: TRACE+ events when --trace is enabled (1 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/bootstick/logs)
        extra_sink: Optional callable receiving every record (e.g. a front end)
        extra_sink_level: Minimum level delivered to ``extra_sink``
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "bootstick"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - User-facing, filtered
    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <12}</cyan> | "
            "<blue>{extra[job_id]: <17}</blue> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <12} | "
            "{extra[job_id]: <17} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - command lines and captured stderr
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <12} | "
                "{extra[job_id]: <17} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Trace Log - Ultra-verbose
    if trace:
        logger.add(
            log_dir / "trace.log",
            level="TRACE",
            rotation="50 MB",
            retention="1 day",
            compression="zip",
            enqueue=True,
            backtrace=False,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{extra[source]: <12} | "
                "{extra[job_id]: <17} | "
                "{message}"
            ),
        )

    # SINK 5: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    # SINK 6: Caller-provided sink (front ends, log viewers)
    if extra_sink is not None:
        if extra_sink_level is None:
            resolved_level = "TRACE" if trace else "DEBUG" if debug else "INFO"
        else:
            resolved_level = extra_sink_level.upper()
        logger.add(
            extra_sink, level=resolved_level, enqueue=True, filter=_combined_filter
        )

    return logger


def add_job_sink(
    job_id: str, callback: Callable[[Message], None], *, level: str = "INFO"
) -> int:
    """
    Attach a sink that only receives records emitted for ``job_id``.

    The job id is picked up from ``logger.contextualize`` (see
    ``operation_context``) or from a ``bind(job_id=...)`` call. The sink runs
    synchronously in the emitting thread so no record is dropped.

    Returns:
        The loguru handler id, to be passed to ``logger.remove``.
    """
    return logger.add(
        callback,
        level=level,
        enqueue=False,
        filter=lambda record: record["extra"].get("job_id") == job_id,
        format="{message}",
    )


def new_job_id(operation: str) -> str:
    return f"{operation}-{uuid.uuid4().hex[:8]}"


@contextmanager
def operation_context(operation: str, job_id: str | None = None, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Automatically logs operation start, completion, and failure with duration
    tracking. Every record emitted inside the block (from any module logger)
    carries the job id, which is what ``add_job_sink`` filters on.

    Args:
        operation: Operation name (e.g., "imaging", "persistence")
        job_id: Reuse an existing job id instead of generating one
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("imaging", device="sdb", image="ubuntu.iso") as log:
            log.debug("Unmounting device")
    """
    job_id = job_id or new_job_id(operation)

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Module-level loggers never bind a job id themselves; they inherit it from
    the surrounding ``operation_context`` so job sinks see their records.
    """

    @staticmethod
    def for_imaging(job_id: str | None = None, **details) -> Logger:
        """Logger for the imaging pipeline."""
        extras: dict[str, object] = dict(details)
        if job_id is not None:
            extras["job_id"] = job_id
        return logger.bind(source="imaging", tags=["imaging", "storage"], **extras)

    @staticmethod
    def for_usb() -> Logger:
        """Logger for USB device detection and management."""
        return logger.bind(source="usb", tags=["usb", "hardware"])

    @staticmethod
    def for_process() -> Logger:
        """Logger for external command execution."""
        return logger.bind(source="process", tags=["process"])

    @staticmethod
    def for_boot() -> Logger:
        """Logger for boot configuration installation."""
        return logger.bind(source="boot", tags=["boot", "storage"])

    @staticmethod
    def for_persistence() -> Logger:
        """Logger for persistence partition management."""
        return logger.bind(source="persistence", tags=["persistence", "storage"])

    @staticmethod
    def for_copy() -> Logger:
        """Logger for file and block transfers."""
        return logger.bind(source="copy", tags=["copy", "progress"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, shutdown, config)."""
        return logger.bind(source="system", tags=["system"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Useful for progress updates or other high-volume logs that should
    only be emitted at intervals.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        """
        Initialize throttled logger.

        Args:
            log: Base logger to wrap
            interval_seconds: Minimum seconds between log emissions
        """
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def debug(self, key: str, message: str, **kwargs) -> None:
        """Log at DEBUG level, throttled by key."""
        self._throttled_log("DEBUG", key, message, **kwargs)

    def info(self, key: str, message: str, **kwargs) -> None:
        """Log at INFO level, throttled by key."""
        self._throttled_log("INFO", key, message, **kwargs)

    def _throttled_log(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key, 0)

        if now - last_time >= self.interval:
            log_method = getattr(self.log, level.lower())
            log_method(message, **kwargs)
            self.last_log_time[key] = now


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Provides methods for logging common events with consistent structure
    and fields, so structured.jsonl can be filtered on ``event_type``.
    """

    @staticmethod
    def log_imaging_started(
        log: Logger, image: str | None, device: str, mode: str, **extra
    ) -> None:
        """Log imaging pipeline start."""
        log.info(
            "Imaging started",
            event_type="imaging_started",
            source_image=image,
            target_device=device,
            imaging_mode=mode,
            **extra,
        )

    @staticmethod
    def log_transfer_progress(
        log: Logger, percent: float, bytes_copied: int, speed_mbps: float, **extra
    ) -> None:
        """Log transfer progress update."""
        log.debug(
            "Transfer progress update",
            event_type="transfer_progress",
            percent=round(percent, 2),
            bytes_copied=bytes_copied,
            speed_mbps=round(speed_mbps, 2),
            **extra,
        )

    @staticmethod
    def log_device_hotplug(log: Logger, action: str, device: str, **extra) -> None:
        """Log USB device hotplug event."""
        log.info(
            f"USB device {action}",
            event_type="device_hotplug",
            action=action,  # "connected" or "disconnected"
            device_name=device,
            **extra,
        )
