"""Domain models for bootable drive imaging."""

from __future__ import annotations

from .models import (
    BootConfiguration,
    CommandResult,
    Device,
    DistroFamily,
    FileSystemType,
    ImagingMode,
    ImagingOptions,
    LogEntry,
    OperationStatus,
    PartitionInfo,
    PartitionLayout,
    PartitionScheme,
    PersistenceConfig,
    SourceOS,
    StatusKind,
    TargetFirmware,
)


__all__ = [
    "BootConfiguration",
    "CommandResult",
    "Device",
    "DistroFamily",
    "FileSystemType",
    "ImagingMode",
    "ImagingOptions",
    "LogEntry",
    "OperationStatus",
    "PartitionInfo",
    "PartitionLayout",
    "PartitionScheme",
    "PersistenceConfig",
    "SourceOS",
    "StatusKind",
    "TargetFirmware",
]
