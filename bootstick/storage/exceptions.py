"""Custom exceptions for storage operations.

This module defines a hierarchy of exceptions for the imaging pipeline so the
orchestrator can surface the most specific failure available. Every error has
a one-line human readable message (``str(error)``) and an optional ``detail``
carrying captured subprocess stderr, which is appended to the operation log
rather than shown to the user.

Exception Hierarchy:
    StorageError (base)
        ├── DeviceError
        │   ├── DeviceNotFoundError
        │   └── DeviceBusyError
        ├── MountError
        │   ├── UnmountFailedError
        │   ├── MountTimeoutError
        │   └── ISOMountFailedError
        ├── FormatError
        │   ├── FormatFailedError
        │   ├── PartitionFailedError
        │   └── PersistenceFormatFailedError
        ├── TransferError
        │   ├── CopyFailedError
        │   ├── OversizedFileForFATError
        │   ├── InsufficientSpaceError
        │   └── RawWriteFailedError
        ├── PermissionDeniedError
        │   └── ElevationRefusedError
        ├── OperationCancelledError
        └── BootInstallWarning (never fatal; collected by the installer)

Usage:
    from bootstick.storage.exceptions import OversizedFileForFATError

    if size > FAT_MAX_FILE_SIZE:
        raise OversizedFileForFATError(relative_path, size)
"""

from __future__ import annotations


class StorageError(Exception):
    """Base exception for all storage operations."""

    def __init__(self, message: str = "", detail: str | None = None):
        self.detail = (detail or "").strip()
        super().__init__(message)


class DeviceError(StorageError):
    """Base exception for device-related errors."""


class DeviceNotFoundError(DeviceError):
    """Device was not found or its identifier could not be resolved."""

    def __init__(self, device_name: str, reason: str = "", detail: str | None = None):
        self.device_name = device_name
        self.reason = reason
        msg = f"Device not found: {device_name}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg, detail)


class DeviceBusyError(DeviceError):
    """Another structural operation already holds the device."""

    def __init__(self, device_name: str, reason: str = ""):
        self.device_name = device_name
        self.reason = reason
        msg = f"Device {device_name} is busy"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class MountError(StorageError):
    """Base exception for mount-related errors."""


class UnmountFailedError(MountError):
    """Failed to unmount device or partition."""

    def __init__(
        self, device_name: str, mountpoints: list[str], detail: str | None = None
    ):
        self.device_name = device_name
        self.mountpoints = mountpoints
        mounts_str = ", ".join(mountpoints)
        super().__init__(
            f"Failed to unmount {device_name}. Active mountpoints: {mounts_str}",
            detail,
        )


class MountTimeoutError(MountError):
    """A freshly created partition never showed up mounted."""

    def __init__(self, device_name: str, attempts: int):
        self.device_name = device_name
        self.attempts = attempts
        super().__init__(
            f"Timed out waiting for {device_name} to mount after {attempts} attempts"
        )


class ISOMountFailedError(MountError):
    """The source image could not be attached read-only."""

    def __init__(self, image_path: str, detail: str | None = None):
        self.image_path = image_path
        super().__init__(f"Could not mount source image {image_path}", detail)


class FormatError(StorageError):
    """Base exception for partitioning and filesystem creation."""


class FormatFailedError(FormatError):
    """Erase, partition table or mkfs step failed."""

    def __init__(self, message: str, device: str | None = None, detail: str | None = None):
        self.device = device
        super().__init__(message, detail)


class PartitionFailedError(FormatError):
    """Adding or resizing a partition failed."""

    def __init__(self, message: str, device: str | None = None, detail: str | None = None):
        self.device = device
        super().__init__(message, detail)


class PersistenceFormatFailedError(FormatError):
    """The persistence partition could not be formatted."""

    def __init__(self, partition: str, detail: str | None = None):
        self.partition = partition
        super().__init__(f"Failed to format persistence partition {partition}", detail)


class TransferError(StorageError):
    """Base exception for file and block transfers."""


class CopyFailedError(TransferError):
    """A single file copy failed, aborting the tree copy."""

    def __init__(self, filename: str, reason: str):
        self.filename = filename
        self.reason = reason
        super().__init__(f"Failed to copy {filename}: {reason}")


class OversizedFileForFATError(TransferError):
    """The source contains a file FAT32 cannot hold."""

    def __init__(self, filename: str, size_bytes: int):
        self.filename = filename
        self.size_bytes = size_bytes
        super().__init__(
            f"{filename} is {size_bytes} bytes, larger than FAT32's 4 GiB file limit. "
            "Choose exFAT or NTFS instead"
        )


class InsufficientSpaceError(TransferError):
    """Not enough room on the target for the requested data."""

    def __init__(self, device_name: str, required: int, available: int):
        self.device_name = device_name
        self.required = required
        self.available = available
        super().__init__(
            f"Not enough space on {device_name}: {required} bytes requested, "
            f"{available} bytes available"
        )


class RawWriteFailedError(TransferError):
    """Writing the raw image to the block device failed."""

    def __init__(self, message: str, device: str | None = None, detail: str | None = None):
        self.device = device
        super().__init__(message, detail)


class PermissionDeniedError(StorageError):
    """The operation needs privileges the process does not have."""

    def __init__(self, operation: str, detail: str | None = None):
        self.operation = operation
        super().__init__(f"Permission denied: {operation}", detail)


class ElevationRefusedError(PermissionDeniedError):
    """The administrator prompt was dismissed or authorization was refused."""

    def __init__(self, operation: str, detail: str | None = None):
        super().__init__(operation, detail)
        self.args = (f"Authorization refused for {operation}",)


class OperationCancelledError(StorageError):
    """The caller requested cancellation."""

    def __init__(self, message: str = "Operation cancelled"):
        super().__init__(message)


class BootInstallWarning(StorageError):
    """A boot artifact could not be installed; the drive may boot partially."""
