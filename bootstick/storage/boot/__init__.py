"""Boot marker detection and boot loader installation."""

from .detection import classify, detect_boot_configuration, find_path, probe_markers
from .installer import BootInstaller, BootInstallReport, install_boot


__all__ = [
    "BootInstallReport",
    "BootInstaller",
    "classify",
    "detect_boot_configuration",
    "find_path",
    "install_boot",
    "probe_markers",
]
