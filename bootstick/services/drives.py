"""Periodic removable-drive discovery.

``DeviceScanner`` refreshes the list of candidate target disks on a
background thread and notifies listeners when it changes. A cycle is skipped
when the previous one is still running, and while any structural operation
holds a device lock, so partition tables in flux are never reported.
"""

from __future__ import annotations

import threading
from typing import Callable, Optional

from bootstick.config.settings import get_float
from bootstick.domain.models import Device
from bootstick.logging import EventLogger, LoggerFactory
from bootstick.storage.device_lock import is_operation_active
from bootstick.storage.devices import list_removable_devices
from bootstick.storage.process import ProcessRunner


log = LoggerFactory.for_usb()

DevicesListener = Callable[[list[Device]], None]


class DeviceScanner:
    """Keeps a fresh snapshot of removable disks."""

    def __init__(
        self,
        interval: Optional[float] = None,
        runner: Optional[ProcessRunner] = None,
        lister: Callable[..., list[Device]] = list_removable_devices,
    ) -> None:
        self.interval = interval if interval is not None else get_float("scan_interval", 3.0)
        self._runner = runner
        self._lister = lister
        self._scan_lock = threading.Lock()
        self._snapshot_lock = threading.Lock()
        self._devices: list[Device] = []
        self._listeners: list[DevicesListener] = []
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def devices(self) -> list[Device]:
        with self._snapshot_lock:
            return list(self._devices)

    def add_listener(self, callback: DevicesListener) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: DevicesListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def scan(self) -> Optional[list[Device]]:
        """Run one scan cycle.

        Returns:
            The new snapshot, or None when the cycle was skipped
        """
        if not self._scan_lock.acquire(blocking=False):
            log.trace("Scan already in flight, skipping cycle")
            return None
        try:
            if is_operation_active():
                log.trace("Structural operation active, keeping previous snapshot")
                return None
            devices = self._lister(self._runner, force_refresh=True)
            with self._snapshot_lock:
                previous = {device.identifier: device for device in self._devices}
                self._devices = devices
            current = {device.identifier: device for device in devices}
            for name in sorted(current.keys() - previous.keys()):
                EventLogger.log_device_hotplug(log, "connected", name, size_bytes=current[name].size_bytes)
            for name in sorted(previous.keys() - current.keys()):
                EventLogger.log_device_hotplug(log, "disconnected", name)
            if current.keys() != previous.keys():
                self._notify(devices)
            return devices
        finally:
            self._scan_lock.release()

    def _notify(self, devices: list[Device]) -> None:
        for listener in list(self._listeners):
            try:
                listener(list(devices))
            except Exception as error:
                log.warning(f"Error in device listener: {error}")

    def _loop(self) -> None:
        self.scan()
        while not self._stop.wait(timeout=self.interval):
            self.scan()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="device-scanner", daemon=True)
        self._thread.start()
        log.debug(f"Device scanner started (every {self.interval}s)")

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=3)
            self._thread = None
        log.debug("Device scanner stopped")


_scanner: DeviceScanner | None = None
_scanner_lock = threading.Lock()


def get_device_scanner() -> DeviceScanner:
    """Get the global scanner instance."""
    global _scanner
    with _scanner_lock:
        if _scanner is None:
            _scanner = DeviceScanner()
        return _scanner
