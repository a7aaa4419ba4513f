"""Per-device lock for structural disk operations.

Formatting, partition add/resize and raw writes must never overlap on the
same disk, and the periodic device scanner must not read a disk while its
partition table is in flux.

Usage:
    from bootstick.storage.device_lock import device_operation, is_operation_active

    # In pipeline code:
    with device_operation("sdb"):
        # format / partition / raw write
        ...

    # In scanner code:
    if is_operation_active():
        # skip this scan cycle, keep the previous snapshot
        ...
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Generator

from bootstick.logging import LoggerFactory
from bootstick.storage.exceptions import DeviceBusyError


log = LoggerFactory.for_usb()

_lock = threading.Lock()
_active_devices: set[str] = set()


@contextmanager
def device_operation(device_name: str) -> Generator[None, None, None]:
    """Hold exclusive structural access to ``device_name``.

    Raises:
        DeviceBusyError: Another operation already holds the device
    """
    with _lock:
        if device_name in _active_devices:
            raise DeviceBusyError(device_name, "another operation is in progress")
        _active_devices.add(device_name)
        log.debug(f"Device operation started on {device_name}")

    try:
        yield
    finally:
        with _lock:
            _active_devices.discard(device_name)
            log.debug(f"Device operation completed on {device_name}")


def is_operation_active(device_name: str | None = None) -> bool:
    """Check if a structural operation is running (on any device by default)."""
    with _lock:
        if device_name is None:
            return bool(_active_devices)
        return device_name in _active_devices


def get_active_devices() -> list[str]:
    with _lock:
        return sorted(_active_devices)
