"""
Pytest configuration and shared fixtures for bootstick tests.

This module provides common fixtures and utilities used across all test modules.
"""

import json
import os
import tempfile
import threading
from collections import namedtuple
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

# Keep the settings store away from the developer's real config
os.environ.setdefault(
    "BOOTSTICK_SETTINGS_PATH",
    os.path.join(tempfile.mkdtemp(prefix="bootstick-tests-"), "settings.json"),
)

from bootstick.config import settings  # noqa: E402
from bootstick.domain.models import CommandResult, Device  # noqa: E402
from bootstick.storage import devices  # noqa: E402
from bootstick.storage.process import OperationContext  # noqa: E402


# ==============================================================================
# Fake Process Runner
# ==============================================================================


Call = namedtuple("Call", "argv input_text privileged")


class FakeRunner:
    """
    Stand-in for ProcessRunner that records every call and replays scripted
    results.

    Responses are matched on an argv prefix; the most recently registered
    match wins. Unmatched commands succeed with empty output. Once the shared
    cancel event is set, every call returns a cancelled result, exactly like
    the real runner after ``cancel_current``.
    """

    def __init__(self, cancel_event: Optional[threading.Event] = None):
        self.cancel_event = cancel_event or threading.Event()
        self.calls: List[Call] = []
        self.cancel_requests = 0
        self._responses: List[tuple] = []

    def on(
        self,
        *prefix: str,
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
        handler: Optional[Callable[[List[str], Optional[str]], CommandResult]] = None,
    ) -> "FakeRunner":
        result = CommandResult(stdout=stdout, stderr=stderr, returncode=returncode)
        self._responses.append((tuple(prefix), handler or (lambda _argv, _input: result)))
        return self

    def run(self, command, input_text=None, *, log_command=True) -> CommandResult:
        return self._dispatch(command, input_text, privileged=False)

    def run_privileged(self, command, input_text=None) -> CommandResult:
        return self._dispatch(command, input_text, privileged=True)

    def cancel_current(self) -> None:
        self.cancel_requests += 1

    def _dispatch(self, command, input_text, privileged) -> CommandResult:
        argv = [str(arg) for arg in command]
        self.calls.append(Call(argv, input_text, privileged))
        if self.cancel_event.is_set():
            return CommandResult(stderr="cancelled", returncode=-1, cancelled=True)
        for prefix, handler in reversed(self._responses):
            if tuple(argv[: len(prefix)]) == prefix:
                return handler(argv, input_text)
        return CommandResult()

    # -- assertions helpers -------------------------------------------------

    def commands(self, privileged: Optional[bool] = None) -> List[List[str]]:
        return [
            call.argv
            for call in self.calls
            if privileged is None or call.privileged == privileged
        ]

    def called(self, *prefix: str) -> bool:
        return any(tuple(call.argv[: len(prefix)]) == prefix for call in self.calls)

    def find(self, *prefix: str) -> List[Call]:
        return [call for call in self.calls if tuple(call.argv[: len(prefix)]) == prefix]


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Fixture providing a recording runner with no scripted responses."""
    return FakeRunner()


@pytest.fixture
def context(fake_runner) -> OperationContext:
    """
    Fixture providing an OperationContext wired to ``fake_runner``.

    The runner shares the context's cancel event, so ``context.cancel()``
    makes every later command come back cancelled.
    """
    ctx = OperationContext(job_id="imaging-test", runner=fake_runner)
    fake_runner.cancel_event = ctx.cancel_event
    return ctx


# ==============================================================================
# Device Fixtures
# ==============================================================================


@pytest.fixture
def mock_usb_device() -> Dict[str, Any]:
    """
    Fixture providing a removable USB disk record as returned by lsblk -J -b.
    """
    return {
        "name": "sdb",
        "pkname": None,
        "type": "disk",
        "size": 16013852672,
        "model": "Cruzer Blade",
        "vendor": "SanDisk ",
        "tran": "usb",
        "rm": True,
        "ro": False,
        "mountpoint": None,
        "fstype": None,
        "label": None,
        "children": [
            {
                "name": "sdb1",
                "pkname": "sdb",
                "type": "part",
                "size": 16012804096,
                "mountpoint": "/media/user/OLD",
                "fstype": "vfat",
                "label": "OLD",
            }
        ],
    }


@pytest.fixture
def mock_system_disk() -> Dict[str, Any]:
    """
    Fixture providing a system disk that must never be offered as a target.
    """
    return {
        "name": "nvme0n1",
        "pkname": None,
        "type": "disk",
        "size": 512110190592,
        "model": "Samsung SSD 980",
        "vendor": None,
        "tran": "nvme",
        "rm": False,
        "ro": False,
        "mountpoint": None,
        "children": [
            {"name": "nvme0n1p1", "type": "part", "size": 536870912, "mountpoint": "/boot/efi"},
            {"name": "nvme0n1p2", "type": "part", "size": 511571001344, "mountpoint": "/"},
        ],
    }


@pytest.fixture
def mock_lsblk_output(mock_usb_device, mock_system_disk) -> str:
    """Fixture providing lsblk JSON output with a system disk and a USB disk."""
    return json.dumps({"blockdevices": [mock_system_disk, mock_usb_device]})


@pytest.fixture
def usb_device() -> Device:
    """Fixture providing the Device snapshot of the USB disk."""
    return Device(
        identifier="sdb",
        name="SanDisk Cruzer Blade",
        removable=True,
        size_bytes=16013852672,
    )


@pytest.fixture(autouse=True)
def clear_lsblk_cache():
    """Every test starts with an empty lsblk cache."""
    devices.clear_cache()
    yield
    devices.clear_cache()


@pytest.fixture(autouse=True)
def default_settings():
    """Every test starts from the default settings values."""
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


# ==============================================================================
# Source Tree Fixtures
# ==============================================================================


def make_tree(root: Path, files: Dict[str, Any]) -> Path:
    """Create ``files`` (relative path -> bytes/str content or int size) under ``root``."""
    for relative, content in files.items():
        path = root / relative
        if relative.endswith("/"):
            path.mkdir(parents=True, exist_ok=True)
            continue
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, int):
            with open(path, "wb") as handle:
                handle.truncate(content)
        elif isinstance(content, str):
            path.write_text(content)
        else:
            path.write_bytes(content)
    return root


@pytest.fixture
def ubuntu_tree(tmp_path) -> Path:
    """Fixture providing an Ubuntu-like live image tree with EFI and isolinux."""
    return make_tree(
        tmp_path / "ubuntu",
        {
            "casper/vmlinuz": b"kernel" * 100,
            "casper/filesystem.squashfs": b"\x00" * 4096,
            "EFI/BOOT/BOOTx64.EFI": b"shim",
            "EFI/BOOT/grubx64.efi": b"grub",
            "boot/grub/grub.cfg": "menuentry 'Try Ubuntu' {}\n",
            "boot/grub/x86_64-efi/normal.mod": b"mod",
            "isolinux/isolinux.cfg": "default live\n",
            "isolinux/isolinux.bin": b"bin",
            ".disk/info": "Ubuntu 24.04 LTS \"Noble Numbat\"\n",
        },
    )


@pytest.fixture
def windows_tree(tmp_path) -> Path:
    """Fixture providing a Windows installer-like tree."""
    return make_tree(
        tmp_path / "windows",
        {
            "bootmgr": b"bootmgr",
            "bootmgr.efi": b"bootmgr efi",
            "boot/bcd": b"bcd",
            "efi/boot/bootx64.efi": b"windows efi loader",
            "efi/microsoft/boot/bcd": b"bcd",
            "sources/install.wim": b"\x00" * 2048,
        },
    )


@pytest.fixture
def parted_output() -> Callable[..., str]:
    """
    Fixture building ``parted -m unit B print free`` output.

    Call with partitions as (number, start, end, fs, name, flags) tuples and
    free regions as (start, end) tuples.
    """

    def build(disk_size=16013852672, table="msdos", partitions=(), free=()):
        lines = ["BYT;", f"/dev/sdb:{disk_size}B:scsi:512:512:{table}:SanDisk Cruzer Blade:;"]
        rows = []
        for number, start, end, fs, name, flags in partitions:
            rows.append((start, f"{number}:{start}B:{end}B:{end - start + 1}B:{fs}:{name}:{flags};"))
        for start, end in free:
            rows.append((start, f"1:{start}B:{end}B:{end - start + 1}B:free;"))
        lines.extend(row for _, row in sorted(rows))
        return "\n".join(lines) + "\n"

    return build


@pytest.fixture
def tree():
    """Fixture exposing ``make_tree`` to tests."""
    return make_tree
