"""External command execution with optional privilege elevation.

Every external tool the pipeline touches (parted, mkfs.*, udisksctl, dd,
fdisk, ...) goes through a ``ProcessRunner`` owned by the run's
``OperationContext``. There is no module-level "current process": the
context carries both the cancellation flag and the runner holding the
in-flight child, and is passed down the call chain explicitly.

Privileged execution:
    When the process already runs as root, commands are spawned directly.
    Otherwise the argv (and any piped input) is rendered into one /bin/sh line
    by ``build_shell_line`` and handed to the elevation tool, ``pkexec`` by
    default. pkexec shows the polkit consent dialog (or a tty prompt without
    an agent) and the call blocks until the user answers. There is no
    timeout on that wait. A dismissed or refused prompt raises
    ``ElevationRefusedError``.

Cancellation:
    ``cancel_current()`` terminates the in-flight child. The result of that
    invocation comes back with ``cancelled=True`` instead of the signal exit
    status, and callers turn it into ``OperationCancelledError`` through
    ``ensure_success``.
"""

from __future__ import annotations

import os
import shlex
import subprocess
import threading
import time
from typing import Callable, Optional, Sequence

from bootstick.config.settings import get_setting
from bootstick.domain.models import CommandResult
from bootstick.logging import LoggerFactory, new_job_id
from bootstick.storage.exceptions import (
    ElevationRefusedError,
    OperationCancelledError,
    StorageError,
)


log = LoggerFactory.for_process()

LAUNCH_FAILURE_RETURNCODE = 127

# pkexec exits 126 (dialog dismissed) or 127 (not authorized); sudo exits 1.
# Both codes are also used by /bin/sh itself, so refusal is told apart by stderr.
REFUSAL_MARKERS = (
    "not authorized",
    "dismissed",
    "authentication failed",
    "incorrect password",
    "a password is required",
    "no askpass program",
)

__all__ = [
    "CommandResult",
    "OperationContext",
    "ProcessRunner",
    "build_shell_line",
    "ensure_success",
]


def build_shell_line(command: Sequence[str], input_text: Optional[str] = None) -> str:
    """Render argv plus optional stdin into a single /bin/sh command line.

    Every argument is single-quoted with ``shlex.quote`` so quotes, backslashes,
    spaces, globs and newlines reach the command verbatim. Piped input is fed
    through ``printf '%s'`` so backslash sequences are not interpreted and no
    trailing newline is added.
    """
    line = " ".join(shlex.quote(str(arg)) for arg in command)
    if input_text is None:
        return line
    return f"printf '%s' {shlex.quote(input_text)} | {line}"


def _looks_refused(result: CommandResult) -> bool:
    if result.returncode == 0 or result.cancelled:
        return False
    stderr = result.stderr.lower()
    return any(marker in stderr for marker in REFUSAL_MARKERS)


class ProcessRunner:
    """Run external commands, capturing stdout, stderr and exit status."""

    def __init__(
        self,
        cancel_event: threading.Event | None = None,
        elevation_tool: str | None = None,
    ):
        self.cancel_event = cancel_event or threading.Event()
        self.elevation_tool = elevation_tool or get_setting("elevation_tool", "pkexec")
        self._lock = threading.Lock()
        self._current: subprocess.Popen | None = None
        self._terminated = False

    def run(
        self,
        command: Sequence[str],
        input_text: Optional[str] = None,
        *,
        log_command: bool = True,
    ) -> CommandResult:
        """Run ``command`` unprivileged and wait for it.

        Input, when given, is written to stdin which is then closed. Output is
        drained concurrently with the wait so large outputs cannot deadlock.
        """
        argv = [str(arg) for arg in command]
        if log_command:
            log.debug(f"Running command: {' '.join(argv)}")
        return self._spawn(argv, input_text, pipe_stdin=True)

    def run_privileged(
        self,
        command: Sequence[str],
        input_text: Optional[str] = None,
    ) -> CommandResult:
        """Run ``command`` with administrator rights.

        Raises:
            ElevationRefusedError: The user dismissed or failed the prompt
        """
        argv = [str(arg) for arg in command]
        if os.geteuid() == 0:
            log.debug(f"Running privileged command as root: {' '.join(argv)}")
            return self._spawn(argv, input_text, pipe_stdin=True)

        line = build_shell_line(argv, input_text)
        elevated = [self.elevation_tool, "/bin/sh", "-c", line]
        log.info(
            f"Waiting for administrator authorization via {self.elevation_tool} "
            f"to run {argv[0]} (no timeout)"
        )
        log.debug(f"Elevated command line: {line}")
        # stdin stays attached so sudo/pkexec can fall back to a tty prompt
        result = self._spawn(elevated, None, pipe_stdin=False)
        if _looks_refused(result):
            log.error(f"Authorization refused for {argv[0]}")
            raise ElevationRefusedError(argv[0], detail=result.stderr)
        return result

    def cancel_current(self) -> None:
        """Terminate the in-flight child process, if any."""
        with self._lock:
            process = self._current
            if process is None or process.poll() is not None:
                return
            self._terminated = True
        log.debug(f"Terminating process {process.pid}")
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        except PermissionError:
            # An elevated child belongs to root; the elevation wrapper still exits
            log.warning(f"Not permitted to terminate elevated process {process.pid}")

    def _spawn(
        self, argv: list[str], input_text: Optional[str], *, pipe_stdin: bool
    ) -> CommandResult:
        if self.cancel_event.is_set():
            return CommandResult(stderr="cancelled before start", returncode=-1, cancelled=True)

        if pipe_stdin:
            stdin = subprocess.PIPE if input_text is not None else subprocess.DEVNULL
        else:
            stdin = None

        start = time.monotonic()
        try:
            with subprocess.Popen(
                argv,
                stdin=stdin,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            ) as process:
                with self._lock:
                    self._current = process
                    self._terminated = False
                if self.cancel_event.is_set():
                    self.cancel_current()
                try:
                    stdout, stderr = process.communicate(
                        input=input_text if stdin is subprocess.PIPE else None
                    )
                finally:
                    with self._lock:
                        self._current = None
                        terminated = self._terminated
        except OSError as error:
            log.debug(f"Failed to launch {argv[0]}: {error}")
            return CommandResult(stderr=str(error), returncode=LAUNCH_FAILURE_RETURNCODE)

        result = CommandResult(
            stdout=stdout or "",
            stderr=stderr or "",
            returncode=process.returncode,
            cancelled=terminated,
        )
        duration = time.monotonic() - start
        if result.cancelled:
            log.debug(f"{argv[0]} cancelled after {duration:.1f}s")
        elif result.returncode != 0:
            log.debug(f"{argv[0]} exited with {result.returncode} after {duration:.1f}s")
            if result.stderr.strip():
                log.debug(f"stderr: {result.stderr.strip()}")
        else:
            log.trace(f"{argv[0]} completed in {duration:.1f}s")
        return result


def ensure_success(
    result: CommandResult, make_error: Callable[[CommandResult], StorageError]
) -> CommandResult:
    """Return ``result`` if it succeeded, else raise the matching error.

    A cancelled result always raises ``OperationCancelledError`` so cancellation
    wins over whatever failure the killed command reported.
    """
    if result.cancelled:
        raise OperationCancelledError()
    if result.returncode != 0:
        raise make_error(result)
    return result


class OperationContext:
    """Per-run state shared down the pipeline call chain.

    Carries the job id used for log correlation, the cancellation flag and the
    process runner holding the active child process.
    """

    def __init__(
        self,
        job_id: str | None = None,
        runner: ProcessRunner | None = None,
        elevation_tool: str | None = None,
        cleanup_runner: ProcessRunner | None = None,
    ):
        self.job_id = job_id or new_job_id("imaging")
        self.cancel_event = threading.Event()
        if runner is None:
            runner = ProcessRunner(
                cancel_event=self.cancel_event, elevation_tool=elevation_tool
            )
            if cleanup_runner is None:
                # cleanup must still run after cancellation
                cleanup_runner = ProcessRunner(elevation_tool=elevation_tool)
        self.runner = runner
        self.cleanup_runner = cleanup_runner or runner

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Request cancellation and stop the running child process."""
        if not self.cancel_event.is_set():
            log.warning("Cancellation requested")
        self.cancel_event.set()
        self.runner.cancel_current()

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise OperationCancelledError()

    def sleep(self, seconds: float) -> None:
        """Sleep that wakes up early, raising, when cancellation is requested."""
        if self.cancel_event.wait(seconds):
            raise OperationCancelledError()
