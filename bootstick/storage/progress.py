"""Progress throttling and formatting for file and block transfers."""

from __future__ import annotations

import time
from typing import Callable, Optional

from bootstick.storage.devices import human_size


def format_eta(seconds):
    """Format ETA in HH:MM:SS or MM:SS format."""
    if seconds is None:
        return None
    seconds = int(seconds)
    if seconds < 0:
        return None
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def format_progress_line(bytes_done: int, total_bytes: int, rate: Optional[float], eta) -> str:
    """One-line summary like "1.2GB / 4.0GB 30.0% 25.3MB/s ETA 01:52"."""
    parts = [f"{human_size(bytes_done)} / {human_size(total_bytes)}"]
    if total_bytes:
        parts.append(f"{(bytes_done / total_bytes) * 100:.1f}%")
    if rate:
        parts.append(f"{human_size(rate)}/s")
        if eta:
            parts.append(f"ETA {eta}")
    return " ".join(parts)


class ProgressThrottle:
    """Rate-limit progress callbacks from a tight transfer loop.

    The first update and any forced (final) update always pass; the rest are
    allowed at most once per ``interval`` seconds.
    """

    def __init__(self, interval: float = 0.5, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self.clock = clock
        self._last: Optional[float] = None

    def ready(self, force: bool = False) -> bool:
        now = self.clock()
        if force or self._last is None or now - self._last >= self.interval:
            self._last = now
            return True
        return False


class TransferMeter:
    """Tracks bytes moved against a total and derives rate and ETA."""

    def __init__(self, total_bytes: int, clock: Callable[[], float] = time.monotonic):
        self.total_bytes = total_bytes
        self.clock = clock
        self.started = clock()
        self.done = 0

    def add(self, count: int) -> None:
        self.done += count

    @property
    def fraction(self) -> float:
        if self.total_bytes <= 0:
            return 1.0
        return min(1.0, self.done / self.total_bytes)

    @property
    def rate(self) -> Optional[float]:
        elapsed = self.clock() - self.started
        if elapsed <= 0 or self.done <= 0:
            return None
        return self.done / elapsed

    @property
    def eta(self):
        rate = self.rate
        if not rate:
            return None
        return format_eta((self.total_bytes - self.done) / rate)

    def describe(self) -> str:
        return format_progress_line(self.done, self.total_bytes, self.rate, self.eta)
