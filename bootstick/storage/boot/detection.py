"""Source image boot marker detection.

Detection is split in two so the decision logic stays pure:

    probe_markers(root)  -> the set of marker paths present in the image
    classify(markers)    -> BootConfiguration (no filesystem access)

Marker lookups are case-insensitive because ISO9660/Joliet images mix
``EFI/BOOT`` and ``efi/boot`` spellings.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import AbstractSet, Optional

from bootstick.domain.models import BootConfiguration
from bootstick.logging import LoggerFactory


log = LoggerFactory.for_boot()

WINDOWS_MARKERS = ("sources/install.wim", "sources/install.esd", "bootmgr", "bootmgr.efi")
LINUX_MARKERS = ("casper", "live", "isolinux", "syslinux")
EFI_MARKERS = ("efi",)
BIOS_MARKERS = ("isolinux", "syslinux", "boot/grub", "bootmgr")

ALL_MARKERS = tuple(
    dict.fromkeys(WINDOWS_MARKERS + LINUX_MARKERS + EFI_MARKERS + BIOS_MARKERS)
)


def find_path(root: Path, relative: str) -> Optional[Path]:
    """Resolve ``relative`` under ``root`` ignoring case, or None if absent."""
    current = Path(root)
    for part in Path(relative).parts:
        exact = current / part
        if exact.exists():
            current = exact
            continue
        try:
            entries = os.listdir(current)
        except OSError:
            return None
        match = next((entry for entry in entries if entry.lower() == part.lower()), None)
        if match is None:
            return None
        current = current / match
    return current


def probe_markers(root: Path) -> frozenset[str]:
    """Return the lower-cased markers from ALL_MARKERS present under ``root``."""
    return frozenset(marker for marker in ALL_MARKERS if find_path(root, marker) is not None)


def classify(markers: AbstractSet[str]) -> BootConfiguration:
    """Pure classification of a marker set into a BootConfiguration.

    An image recognised as Windows or Linux that exposes no EFI payload and
    no explicit BIOS loader can only be started by legacy firmware, so it is
    reported as BIOS-capable.
    """
    present = {marker.lower() for marker in markers}
    is_windows = any(marker in present for marker in WINDOWS_MARKERS)
    is_linux = any(marker in present for marker in LINUX_MARKERS)
    has_efi = any(marker in present for marker in EFI_MARKERS)
    has_bios = any(marker in present for marker in BIOS_MARKERS)
    if not has_efi and not has_bios and (is_windows or is_linux):
        has_bios = True
    return BootConfiguration(
        is_windows=is_windows,
        is_linux=is_linux,
        has_efi=has_efi,
        has_bios=has_bios,
    )


def detect_boot_configuration(root: Path) -> BootConfiguration:
    markers = probe_markers(root)
    config = classify(markers)
    log.info(
        f"Boot detection: os={config.source_os.value} efi={config.has_efi} "
        f"bios={config.has_bios} (markers: {', '.join(sorted(markers)) or 'none'})"
    )
    return config
