import argparse
import re
import sys
import time
from pathlib import Path

from bootstick.__version__ import __version__
from bootstick.domain.models import (
    FileSystemType,
    ImagingMode,
    ImagingOptions,
    OperationStatus,
    PartitionScheme,
    StatusKind,
    TargetFirmware,
)
from bootstick.logging import setup_logging
from bootstick.services.drives import get_device_scanner
from bootstick.services.imaging import start_imaging
from bootstick.storage.devices import get_device, list_removable_devices, whole_disk_name
from bootstick.storage.exceptions import StorageError
from bootstick.storage.mount import resolve_whole_disk
from bootstick.storage.process import OperationContext

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130

_SIZE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?)(?:i?B)?\s*$", re.IGNORECASE)
_UNITS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}

TARGET_CHOICES = {"bios": TargetFirmware.BIOS, "uefi": TargetFirmware.UEFI, "both": TargetFirmware.BOTH}


def parse_size(value):
    """Parse "4G", "512M", "1.5GiB" or plain bytes into a byte count."""
    match = _SIZE.match(value)
    if not match:
        raise argparse.ArgumentTypeError(f"invalid size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _UNITS[unit.upper()])


def parse_filesystem(value):
    try:
        return FileSystemType.parse(value)
    except ValueError as error:
        raise argparse.ArgumentTypeError(str(error)) from error


def build_parser():
    parser = argparse.ArgumentParser(prog="bootstick", description="Create bootable USB drives")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log per-chunk progress as well")
    commands = parser.add_subparsers(dest="command", required=True)

    listing = commands.add_parser("list", help="List removable drives")
    listing.add_argument("-w", "--watch", action="store_true",
                         help="Keep listing as drives are plugged in or removed")

    write = commands.add_parser("write", help="Write an image to a drive")
    write.add_argument("--device", required=True, help="Target disk (sdb, /dev/sdb or a mountpoint)")
    write.add_argument("--image", type=Path, help="Source ISO or disk image; omit to just format")
    write.add_argument("--dd", action="store_true", help="Write the image byte-for-byte")
    write.add_argument("--fs", type=parse_filesystem, default=FileSystemType.FAT32,
                       help="Filesystem: FAT, FAT32, exFAT, NTFS, UDF, ext2, ext3, ext4")
    write.add_argument("--scheme", choices=["mbr", "gpt"], default="mbr")
    write.add_argument("--target", choices=sorted(TARGET_CHOICES), default="both")
    write.add_argument("--label", default="", help="Volume label (default: image name)")
    write.add_argument("--persistence", type=parse_size, default=0, metavar="SIZE",
                       help="Add a persistence partition, e.g. 4G")
    write.add_argument("--full-format", action="store_true", help="Check for bad blocks while formatting")
    write.add_argument("--bad-blocks", type=int, default=0, metavar="N",
                       help="Run N read-only bad block passes after writing")
    write.add_argument("--legacy-bios-fixes", action="store_true",
                       help="Old BIOS fixes: 63-sector alignment and boot flag")
    write.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    return parser


def build_options(args):
    return ImagingOptions(
        device_id=args.device,
        image_path=args.image,
        mode=ImagingMode.DD if args.dd else ImagingMode.STANDARD,
        filesystem=args.fs,
        partition_scheme=PartitionScheme[args.scheme.upper()],
        target_firmware=TARGET_CHOICES[args.target],
        volume_label=args.label,
        persistence_size_bytes=args.persistence,
        quick_format=not args.full_format,
        check_bad_blocks=args.bad_blocks > 0,
        bad_block_passes=max(1, args.bad_blocks),
        legacy_bios_fixes=args.legacy_bios_fixes,
    )


def _print_devices(devices):
    if not devices:
        print("No removable drives found", flush=True)
        return
    for device in devices:
        mounted = f"  mounted at {device.mount_path}" if device.mount_path else ""
        print(f"{device.format_label()}{mounted}", flush=True)


def _watch_devices():
    scanner = get_device_scanner()

    def show(devices):
        print("--", flush=True)
        _print_devices(devices)

    _print_devices(list_removable_devices(force_refresh=True))
    scanner.add_listener(show)
    scanner.start()
    try:
        while True:
            time.sleep(scanner.interval)
    except KeyboardInterrupt:
        pass
    finally:
        scanner.stop()
        scanner.remove_listener(show)
    return EXIT_OK


def cmd_list(args):
    if args.watch:
        return _watch_devices()
    _print_devices(list_removable_devices(force_refresh=True))
    return EXIT_OK


def lookup_target(target):
    """Removable, non-system disk behind a name, device node or mountpoint.

    Raises:
        StorageError: The target cannot be resolved or is not a removable disk
    """
    if target.startswith("/") and not target.startswith("/dev/"):
        disk = resolve_whole_disk(OperationContext(), target)
    else:
        disk = whole_disk_name(target) or target
    return get_device(disk)


def _render(status: OperationStatus):
    end = "\n" if status.is_terminal else ""
    print(f"\r{status.display_text:<72.72}", end=end, flush=True)


def _follow(job):
    cancelling = False
    while True:
        try:
            for status in job.statuses():
                _render(status)
            return job.wait()
        except KeyboardInterrupt:
            if not cancelling:
                print("\nCancelling, waiting for cleanup...", flush=True)
                cancelling = True
            job.cancel()


def cmd_write(args):
    options = build_options(args)
    try:
        options.validate()
    except ValueError as error:
        print(f"Error: {error}", file=sys.stderr)
        return EXIT_FAILED

    try:
        device = lookup_target(args.device)
    except StorageError as error:
        print(f"Error: {error}", file=sys.stderr)
        return EXIT_FAILED

    if not args.yes:
        answer = input(f"All data on {device.format_label()} will be destroyed. Continue? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted")
            return EXIT_CANCELLED

    job = start_imaging(options, device)
    final = _follow(job)
    if final is None or final.kind is StatusKind.FAILED:
        return EXIT_FAILED
    if final.kind is StatusKind.CANCELLED:
        return EXIT_CANCELLED
    return EXIT_OK


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace)
    if args.command == "list":
        return cmd_list(args)
    return cmd_write(args)


if __name__ == "__main__":
    sys.exit(main())
