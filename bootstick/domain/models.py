"""Domain model for bootable drive imaging.

Type-safe records passed between the storage layer and the imaging service,
replacing the raw lsblk dicts and loose option tuples a shell front end
would otherwise juggle.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


FAT_MAX_FILE_SIZE = 2**32 - 1


# ==============================================================================
# Device Domain
# ==============================================================================


def _lsblk_flag(value: Any) -> bool:
    """lsblk reports booleans as true/false, 1/0 or "1"/"0" depending on version."""
    if isinstance(value, str):
        return value.strip() in {"1", "true", "True"}
    return bool(value)


@dataclass(frozen=True)
class Device:
    """A removable block device offered as an imaging target.

    Immutable snapshot from one scan. Any partitioning operation invalidates
    it; callers re-scan rather than mutate.
    """

    identifier: str  # whole-disk kernel name, e.g. "sdb" (never "sdb1")
    name: str  # vendor + model, e.g. "SanDisk Cruzer"
    removable: bool
    size_bytes: int
    mount_path: str | None = None

    @property
    def node(self) -> str:
        """Device node path (e.g., /dev/sdb)."""
        return f"/dev/{self.identifier}"

    @property
    def size_gb(self) -> float:
        return self.size_bytes / (1024**3)

    def format_label(self) -> str:
        """Human-readable label, e.g. "sdb SanDisk Cruzer (14.9GB)"."""
        size_str = f"{self.size_gb:.1f}GB"
        if self.name:
            return f"{self.identifier} {self.name} ({size_str})"
        return f"{self.identifier} {size_str}"

    @classmethod
    def from_lsblk_dict(cls, device: dict[str, Any]) -> Device:
        """Convert an lsblk disk record to a Device.

        Args:
            device: Record from ``lsblk -J -b`` with keys name, size, vendor,
                model, rm, tran, mountpoint and optional children

        Raises:
            KeyError: If the name key is missing
            ValueError: If size cannot be converted to int
        """
        parts = [
            str(device.get(key)).strip()
            for key in ("vendor", "model")
            if device.get(key) and str(device.get(key)).strip()
        ]
        removable = _lsblk_flag(device.get("rm")) or device.get("tran") == "usb"

        mount_path = device.get("mountpoint")
        if not mount_path:
            for child in device.get("children") or []:
                if child.get("mountpoint"):
                    mount_path = child["mountpoint"]
                    break

        return cls(
            identifier=device["name"],
            name=" ".join(parts),
            removable=removable,
            size_bytes=int(device.get("size") or 0),
            mount_path=mount_path,
        )


# ==============================================================================
# Imaging Options
# ==============================================================================


class FileSystemType(Enum):
    FAT = "FAT"
    FAT32 = "FAT32"
    EXFAT = "exFAT"
    NTFS = "NTFS"
    UDF = "UDF"
    EXT2 = "ext2"
    EXT3 = "ext3"
    EXT4 = "ext4"

    @property
    def is_fat_family(self) -> bool:
        """FAT12/16/32 volumes, which cap single files at 4 GiB - 1."""
        return self in (FileSystemType.FAT, FileSystemType.FAT32)

    @property
    def is_ext(self) -> bool:
        return self in (FileSystemType.EXT2, FileSystemType.EXT3, FileSystemType.EXT4)

    @property
    def parted_type(self) -> str | None:
        """Filesystem hint given to ``parted mkpart`` (sets the MBR type id)."""
        return {
            FileSystemType.FAT: "fat16",
            FileSystemType.FAT32: "fat32",
            FileSystemType.EXFAT: "ntfs",
            FileSystemType.NTFS: "ntfs",
            FileSystemType.EXT2: "ext2",
            FileSystemType.EXT3: "ext3",
            FileSystemType.EXT4: "ext4",
        }.get(self)

    @classmethod
    def parse(cls, value: str) -> FileSystemType:
        for member in cls:
            if member.value.lower() == value.strip().lower():
                return member
        raise ValueError(f"Unsupported filesystem: {value}")


class PartitionScheme(Enum):
    MBR = "MBR"
    GPT = "GPT"

    @property
    def parted_label(self) -> str:
        return "msdos" if self is PartitionScheme.MBR else "gpt"


class TargetFirmware(Enum):
    BIOS = "BIOS"
    UEFI = "UEFI"
    BOTH = "BIOS or UEFI"


class ImagingMode(Enum):
    STANDARD = "standard"
    DD = "dd"


@dataclass(frozen=True)
class ImagingOptions:
    """Everything one imaging run needs, fixed for the whole run."""

    device_id: str
    image_path: Path | None = None
    mode: ImagingMode = ImagingMode.STANDARD
    filesystem: FileSystemType = FileSystemType.FAT32
    partition_scheme: PartitionScheme = PartitionScheme.MBR
    target_firmware: TargetFirmware = TargetFirmware.BOTH
    volume_label: str = ""
    persistence_size_bytes: int = 0
    quick_format: bool = True
    check_bad_blocks: bool = False
    bad_block_passes: int = 1
    legacy_bios_fixes: bool = False

    @property
    def wants_persistence(self) -> bool:
        return self.mode is ImagingMode.STANDARD and self.persistence_size_bytes > 0

    def validate(self) -> None:
        """Reject option combinations no pipeline run can satisfy.

        Raises:
            ValueError: On the first invalid option found
        """
        if not self.device_id:
            raise ValueError("No target device selected")
        if self.mode is ImagingMode.DD and self.image_path is None:
            raise ValueError("DD mode requires a source image")
        if self.image_path is not None and not Path(self.image_path).is_file():
            raise ValueError(f"Source image not found: {self.image_path}")
        if self.persistence_size_bytes < 0:
            raise ValueError("Persistence size cannot be negative")
        if self.persistence_size_bytes and self.mode is ImagingMode.DD:
            raise ValueError("Persistence is not available in DD mode")
        if self.persistence_size_bytes and self.image_path is None:
            raise ValueError("Persistence requires a live Linux source image")
        if not 1 <= self.bad_block_passes <= 4:
            raise ValueError("Bad block passes must be between 1 and 4")


# ==============================================================================
# Operation Status
# ==============================================================================


class StatusKind(Enum):
    READY = ("ready", 0)
    PREPARING = ("preparing", 1)
    FORMATTING = ("formatting", 2)
    COPYING = ("copying", 3)
    VERIFYING = ("verifying", 4)
    COMPLETED = ("completed", 5)
    FAILED = ("failed", 5)
    CANCELLED = ("cancelled", 5)

    def __init__(self, label: str, rank: int) -> None:
        self.label = label
        self.rank = rank

    @property
    def is_terminal(self) -> bool:
        return self.rank == 5


@dataclass(frozen=True)
class OperationStatus:
    """The single current phase of an imaging run."""

    kind: StatusKind
    progress: float = 0.0
    current_item: str | None = None
    reason: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "progress", min(1.0, max(0.0, float(self.progress))))

    @classmethod
    def ready(cls) -> OperationStatus:
        return cls(StatusKind.READY)

    @classmethod
    def preparing(cls) -> OperationStatus:
        return cls(StatusKind.PREPARING)

    @classmethod
    def formatting(cls, progress: float) -> OperationStatus:
        return cls(StatusKind.FORMATTING, progress)

    @classmethod
    def copying(cls, progress: float, current_item: str | None = None) -> OperationStatus:
        return cls(StatusKind.COPYING, progress, current_item)

    @classmethod
    def verifying(cls, progress: float) -> OperationStatus:
        return cls(StatusKind.VERIFYING, progress)

    @classmethod
    def completed(cls) -> OperationStatus:
        return cls(StatusKind.COMPLETED, 1.0)

    @classmethod
    def failed(cls, reason: str) -> OperationStatus:
        return cls(StatusKind.FAILED, reason=reason)

    @classmethod
    def cancelled(cls) -> OperationStatus:
        return cls(StatusKind.CANCELLED)

    @property
    def is_terminal(self) -> bool:
        return self.kind.is_terminal

    @property
    def display_text(self) -> str:
        percent = int(self.progress * 100)
        if self.kind is StatusKind.READY:
            return "Ready"
        if self.kind is StatusKind.PREPARING:
            return "Preparing..."
        if self.kind is StatusKind.FORMATTING:
            return f"Formatting... {percent}%"
        if self.kind is StatusKind.COPYING:
            if self.current_item:
                return f"Copying: {self.current_item} ({percent}%)"
            return f"Copying... {percent}%"
        if self.kind is StatusKind.VERIFYING:
            return f"Verifying... {percent}%"
        if self.kind is StatusKind.COMPLETED:
            return "Completed successfully"
        if self.kind is StatusKind.CANCELLED:
            return "Cancelled"
        return f"Failed: {self.reason}"

    def can_follow(self, previous: OperationStatus) -> bool:
        """Whether this status may replace ``previous`` as the current one."""
        if previous.is_terminal:
            return False
        if self.is_terminal:
            return True
        if self.kind.rank != previous.kind.rank:
            return self.kind.rank > previous.kind.rank
        return self.progress >= previous.progress


# ==============================================================================
# Boot and Persistence Domain
# ==============================================================================


class SourceOS(Enum):
    WINDOWS = "windows"
    LINUX = "linux"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class BootConfiguration:
    """Boot markers found in a mounted source image.

    The flags are independent; a hybrid image may report both EFI and BIOS.
    """

    is_windows: bool = False
    is_linux: bool = False
    has_efi: bool = False
    has_bios: bool = False

    @property
    def source_os(self) -> SourceOS:
        if self.is_windows:
            return SourceOS.WINDOWS
        if self.is_linux:
            return SourceOS.LINUX
        return SourceOS.UNKNOWN

    def wants_uefi(self, target: TargetFirmware) -> bool:
        if target is TargetFirmware.UEFI:
            return True
        return target is TargetFirmware.BOTH and self.has_efi

    def wants_bios(self, target: TargetFirmware) -> bool:
        if target is TargetFirmware.BIOS:
            return True
        return target is TargetFirmware.BOTH and self.has_bios


class DistroFamily(Enum):
    UBUNTU = ("ubuntu", "casper-rw", False)
    DEBIAN = ("debian", "persistence", True)
    FEDORA = ("fedora", "LIVE", False)
    ARCH = ("arch", "cow_spacesize", False)
    OTHER = ("other", "persistence", True)

    def __init__(self, family: str, label: str, needs_conf: bool) -> None:
        self.family = family
        self.label = label
        # union-mount distributions read persistence.conf from the volume
        self.needs_conf = needs_conf


@dataclass(frozen=True)
class PersistenceConfig:
    size_bytes: int
    family: DistroFamily
    filesystem: FileSystemType = FileSystemType.EXT4

    @property
    def label(self) -> str:
        return self.family.label


# ==============================================================================
# Process and Partition Records
# ==============================================================================


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of one external command."""

    stdout: str = ""
    stderr: str = ""
    returncode: int = 0
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.cancelled


@dataclass(frozen=True)
class PartitionInfo:
    number: int
    start: int
    end: int
    size: int
    filesystem: str = ""
    name: str = ""
    flags: str = ""


@dataclass(frozen=True)
class PartitionLayout:
    """Partition table as reported by ``parted -m unit B print free``."""

    disk_size: int
    table: str
    partitions: list[PartitionInfo] = field(default_factory=list)
    free_regions: list[PartitionInfo] = field(default_factory=list)

    def get(self, number: int) -> PartitionInfo | None:
        for partition in self.partitions:
            if partition.number == number:
                return partition
        return None

    def free_after(self, number: int) -> int:
        """Bytes of unallocated space directly after partition ``number``."""
        partition = self.get(number)
        if partition is None:
            return 0
        for region in self.free_regions:
            if region.start == partition.end + 1:
                return region.size
        return 0


@dataclass
class LogEntry:
    message: str
    level: str = "info"
    timestamp: datetime = field(default_factory=datetime.now)
    source: str | None = None
