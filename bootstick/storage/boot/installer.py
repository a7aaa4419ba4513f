"""Install UEFI and legacy BIOS boot artifacts onto the target.

The source tree has already been copied, so most of the work is putting the
loaders where firmware looks for them:

UEFI:
    Windows: the first of ``efi/boot/bootx64.efi``, ``EFI/Boot/bootx64.efi``
    or ``efi/microsoft/boot/bootmgfw.efi`` becomes ``EFI/BOOT/bootx64.efi``,
    and ``boot/bcd`` is copied when present.
    Linux: every ``grub*.efi`` under ``EFI/BOOT``, the ``boot/grub/x86_64-efi``
    module tree and the shim/GRUB ``bootx64.efi``.

BIOS:
    Windows: ``bootmgr`` at the root, partition 1 marked active (MBR).
    Linux: the isolinux/syslinux tree copied to ``/syslinux`` with
    ``isolinux.cfg`` renamed to ``syslinux.cfg``, then the 440-byte syslinux
    bootstrap (``mbr.bin``, or ``gptmbr.bin`` for GPT) written to the start
    of the whole disk.

Nothing in here fails the pipeline: every problem becomes a
``BootInstallWarning`` that is logged and collected in the report.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from bootstick.domain.models import (
    BootConfiguration,
    PartitionScheme,
    SourceOS,
    TargetFirmware,
)
from bootstick.logging import LoggerFactory
from bootstick.storage.boot.detection import find_path
from bootstick.storage.devices import strip_dev
from bootstick.storage.exceptions import (
    BootInstallWarning,
    FormatFailedError,
    OperationCancelledError,
    PartitionFailedError,
)
from bootstick.storage.format import set_partition_active
from bootstick.storage.process import OperationContext


log = LoggerFactory.for_boot()

MBR_BOOTSTRAP_BYTES = 440

WINDOWS_EFI_CANDIDATES = (
    "efi/boot/bootx64.efi",
    "EFI/Boot/bootx64.efi",
    "efi/microsoft/boot/bootmgfw.efi",
)
LINUX_EFI_DIRS = ("EFI/BOOT", "EFI/boot")
GRUB_MODULES_DIR = "boot/grub/x86_64-efi"

SYSLINUX_PREFIXES = (
    "/usr/lib/syslinux/mbr",
    "/usr/lib/syslinux/bios",
    "/usr/lib/syslinux",
    "/usr/share/syslinux",
    "/usr/local/share/syslinux",
    "/usr/lib/SYSLINUX",
)

LogFn = Callable[[str], None]


@dataclass
class BootInstallReport:
    uefi_attempted: bool = False
    bios_attempted: bool = False
    uefi_installed: bool = False
    bios_installed: bool = False
    warnings: list[str] = field(default_factory=list)


def find_mbr_blob(scheme: PartitionScheme, prefixes=SYSLINUX_PREFIXES) -> Optional[Path]:
    name = "gptmbr.bin" if scheme is PartitionScheme.GPT else "mbr.bin"
    for prefix in prefixes:
        candidate = Path(prefix) / name
        if candidate.is_file():
            return candidate
    return None


def _install_file(source: Path, destination: Path) -> None:
    """Copy ``source`` to ``destination`` unless an identical-size copy exists."""
    existing = find_path(destination.parent, destination.name) if destination.parent.exists() else None
    if existing is not None and existing.stat().st_size == source.stat().st_size:
        return
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, existing or destination)


def _efi_boot_dir(dest_root: Path) -> Path:
    existing = find_path(dest_root, "EFI/BOOT")
    if existing is not None:
        return existing
    target = dest_root / "EFI" / "BOOT"
    efi = find_path(dest_root, "EFI")
    if efi is not None:
        target = efi / "BOOT"
    target.mkdir(parents=True, exist_ok=True)
    return target


class BootInstaller:
    """Installs boot loaders for one imaging run."""

    def __init__(
        self,
        context: OperationContext,
        *,
        source_root: Path,
        dest_root: Path,
        disk: str,
        scheme: PartitionScheme,
        on_log: Optional[LogFn] = None,
    ):
        self.context = context
        self.source_root = Path(source_root)
        self.dest_root = Path(dest_root)
        self.disk = strip_dev(disk)
        self.scheme = scheme
        self.on_log = on_log
        self.report = BootInstallReport()

    def install(self, config: BootConfiguration, target: TargetFirmware) -> BootInstallReport:
        if config.wants_uefi(target):
            self.report.uefi_attempted = True
            self.report.uefi_installed = self._guarded(self.install_uefi, config)
        if config.wants_bios(target):
            self.report.bios_attempted = True
            self.report.bios_installed = self._guarded(self.install_bios, config)
        if not (self.report.uefi_attempted or self.report.bios_attempted):
            self._warn(BootInstallWarning("Source image exposes no boot payload for the selected target"))
        return self.report

    def _guarded(self, step: Callable[[BootConfiguration], None], config: BootConfiguration) -> bool:
        try:
            step(config)
        except BootInstallWarning as warning:
            self._warn(warning)
            return False
        except OSError as error:
            self._warn(BootInstallWarning(f"Boot file copy failed: {error.strerror or error}"))
            return False
        return True

    def _warn(self, warning: BootInstallWarning) -> None:
        message = str(warning)
        log.warning(message)
        if warning.detail:
            log.debug(warning.detail)
        self.report.warnings.append(message)
        if self.on_log:
            self.on_log(message)

    # ------------------------------------------------------------------ UEFI

    def install_uefi(self, config: BootConfiguration) -> None:
        self.context.check_cancelled()
        boot_dir = _efi_boot_dir(self.dest_root)
        if config.source_os is SourceOS.WINDOWS:
            self._install_windows_uefi(boot_dir)
        else:
            self._install_linux_uefi(boot_dir)

    def _install_windows_uefi(self, boot_dir: Path) -> None:
        loader = next(
            (found for found in (find_path(self.source_root, c) for c in WINDOWS_EFI_CANDIDATES) if found),
            None,
        )
        if loader is None:
            raise BootInstallWarning("No UEFI boot loader found in the Windows image")
        _install_file(loader, boot_dir / "bootx64.efi")
        log.info(f"Installed {loader.relative_to(self.source_root)} as EFI/BOOT/bootx64.efi")

        bcd = find_path(self.source_root, "boot/bcd")
        if bcd is not None:
            _install_file(bcd, self.dest_root / "boot" / "bcd")
            log.debug("Copied boot configuration data store")

    def _install_linux_uefi(self, boot_dir: Path) -> None:
        installed = []
        for relative in LINUX_EFI_DIRS:
            efi_dir = find_path(self.source_root, relative)
            if efi_dir is None or not efi_dir.is_dir():
                continue
            for entry in sorted(efi_dir.iterdir()):
                name = entry.name.lower()
                if entry.is_file() and name.endswith(".efi") and (
                    name.startswith("grub") or name == "bootx64.efi"
                ):
                    _install_file(entry, boot_dir / entry.name)
                    installed.append(entry.name)
            break

        modules = find_path(self.source_root, GRUB_MODULES_DIR)
        if modules is not None and modules.is_dir():
            shutil.copytree(modules, self.dest_root / GRUB_MODULES_DIR, dirs_exist_ok=True)
            installed.append(GRUB_MODULES_DIR)

        if not any(name.lower() == "bootx64.efi" for name in installed):
            raise BootInstallWarning("No bootx64.efi found; the drive will not boot on UEFI")
        log.info(f"Installed UEFI loaders: {', '.join(installed)}")

    # ------------------------------------------------------------------ BIOS

    def install_bios(self, config: BootConfiguration) -> None:
        self.context.check_cancelled()
        if config.source_os is SourceOS.WINDOWS:
            self._install_windows_bios()
        elif config.source_os is SourceOS.LINUX:
            self._install_linux_bios()
        else:
            raise BootInstallWarning("No legacy boot loader recognised in the source image")

    def _mark_bootable(self) -> None:
        try:
            if self.scheme is PartitionScheme.MBR:
                set_partition_active(self.context, self.disk, 1)
            else:
                result = self.context.runner.run_privileged(
                    ["parted", "-s", f"/dev/{self.disk}", "set", "1", "legacy_boot", "on"]
                )
                if result.cancelled:
                    raise OperationCancelledError()
                if not result.ok:
                    raise PartitionFailedError("legacy_boot flag not set", self.disk, result.stderr)
        except (FormatFailedError, PartitionFailedError) as error:
            raise BootInstallWarning(
                f"Could not mark partition 1 bootable: {error}", detail=error.detail
            ) from error

    def _install_windows_bios(self) -> None:
        bootmgr = find_path(self.source_root, "bootmgr")
        if bootmgr is None:
            raise BootInstallWarning("bootmgr not found; legacy BIOS boot unavailable")
        _install_file(bootmgr, self.dest_root / "bootmgr")
        if self.scheme is not PartitionScheme.MBR:
            raise BootInstallWarning("Windows legacy BIOS boot needs an MBR partition table")
        self._mark_bootable()
        log.info("Installed bootmgr and marked partition 1 active")

    def _install_linux_bios(self) -> None:
        loader_dir = find_path(self.source_root, "isolinux") or find_path(self.source_root, "syslinux")
        if loader_dir is None or not loader_dir.is_dir():
            raise BootInstallWarning("No isolinux/syslinux directory in the source image")

        syslinux_dir = self.dest_root / "syslinux"
        shutil.copytree(loader_dir, syslinux_dir, dirs_exist_ok=True)
        isolinux_cfg = find_path(syslinux_dir, "isolinux.cfg")
        if isolinux_cfg is not None and find_path(syslinux_dir, "syslinux.cfg") is None:
            os.rename(isolinux_cfg, syslinux_dir / "syslinux.cfg")
            log.debug("Renamed isolinux.cfg to syslinux.cfg")

        self._mark_bootable()

        blob = find_mbr_blob(self.scheme)
        if blob is None:
            raise BootInstallWarning(
                "syslinux MBR bootstrap not found (install syslinux); legacy BIOS boot will not work"
            )
        result = self.context.runner.run_privileged(
            ["dd", f"if={blob}", f"of=/dev/{self.disk}", f"bs={MBR_BOOTSTRAP_BYTES}",
             "count=1", "conv=notrunc"]
        )
        if result.cancelled:
            raise OperationCancelledError()
        if not result.ok:
            raise BootInstallWarning(
                f"Writing {blob.name} to /dev/{self.disk} failed", detail=result.stderr
            )
        log.info(f"Wrote {blob.name} bootstrap to /dev/{self.disk}")


def install_boot(
    context: OperationContext,
    config: BootConfiguration,
    target: TargetFirmware,
    *,
    source_root: Path,
    dest_root: Path,
    disk: str,
    scheme: PartitionScheme,
    on_log: Optional[LogFn] = None,
) -> BootInstallReport:
    """Install the loaders ``target`` calls for; never raises for missing pieces."""
    installer = BootInstaller(
        context,
        source_root=source_root,
        dest_root=dest_root,
        disk=disk,
        scheme=scheme,
        on_log=on_log,
    )
    return installer.install(config, target)
