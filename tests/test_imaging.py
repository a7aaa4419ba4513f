"""Tests for services/imaging.py - the imaging pipeline and its job handle."""

import threading
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from bootstick.domain.models import (
    BootConfiguration,
    Device,
    DistroFamily,
    FileSystemType,
    ImagingMode,
    ImagingOptions,
    OperationStatus,
    PersistenceConfig,
    StatusKind,
)
from bootstick.services import imaging
from bootstick.services.imaging import (
    IllegalTransitionError,
    ImagingJob,
    ImagingPipeline,
    PipelineState,
    StatusReporter,
    can_transition,
    default_label,
    run_imaging,
)
from bootstick.storage.boot.installer import BootInstallReport
from bootstick.storage.copy import CopyResult
from bootstick.storage.device_lock import device_operation, is_operation_active
from bootstick.storage.exceptions import (
    DeviceNotFoundError,
    FormatFailedError,
    OperationCancelledError,
    OversizedFileForFATError,
)
from bootstick.storage.iso import AttachedImage


S = PipelineState


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "ubuntu-24.04-desktop-amd64.iso"
    path.write_bytes(b"\x00" * 8192)
    return path


@pytest.fixture
def steps(mocker, tmp_path, image):
    """Patch every storage step the pipeline calls and record their order."""
    source_mount = tmp_path / "source"
    source_mount.mkdir()
    manager = Mock()
    names = {
        "resolve_whole_disk": "sdb",
        "get_device": Device("sdb", "SanDisk Cruzer Blade", True, 16013852672),
        "unmount_disk": None,
        "erase_disk": "/dev/sdb1",
        "attach_image": AttachedImage(image, source_mount, loop_device="/dev/loop7"),
        "detach_image": None,
        "check_fat_compatibility": None,
        "wait_for_partition_mount": str(tmp_path / "target"),
        "ensure_writable": None,
        "copy_tree": CopyResult(files_copied=3, bytes_copied=100),
        "detect_boot_configuration": BootConfiguration(is_linux=True, has_efi=True, has_bios=True),
        "install_boot": BootInstallReport(uefi_attempted=True, uefi_installed=True),
        "create_persistence": PersistenceConfig(1024, DistroFamily.UBUNTU),
        "write_raw_image": 8192,
        "settle": None,
        "check_bad_blocks": [],
    }
    mocks = {}
    for name, value in names.items():
        mock = mocker.patch(f"bootstick.services.imaging.{name}", return_value=value)
        manager.attach_mock(mock, name)
        mocks[name] = mock
    mocks["order"] = lambda: [call[0] for call in manager.mock_calls if "." not in call[0]]
    return SimpleNamespace(**mocks)


def standard(image, **overrides):
    return ImagingOptions(device_id="sdb", image_path=image, **overrides)


def run(options, context, device=None):
    statuses = []
    reporter = StatusReporter(statuses.append)
    pipeline = ImagingPipeline(options, device, context, reporter)
    final = pipeline.run()
    return pipeline, final, statuses


class TestTransitions:
    """Tests for the pipeline state table."""

    def test_standard_path_is_allowed(self):
        path = [S.IDLE, S.PREPARING, S.UNMOUNTING, S.FORMATTING, S.MOUNTING_SOURCE,
                S.COPYING, S.INSTALLING_BOOT, S.PERSISTENCE, S.VERIFYING, S.COMPLETED]
        assert all(can_transition(a, b) for a, b in zip(path, path[1:]))

    def test_dd_path_is_allowed(self):
        assert can_transition(S.UNMOUNTING, S.RAW_WRITING)
        assert can_transition(S.RAW_WRITING, S.COMPLETED)

    @pytest.mark.parametrize("state", [s for s in S if not s.is_terminal])
    def test_failure_and_cancel_reachable_from_any_live_state(self, state):
        assert can_transition(state, S.FAILED)
        assert can_transition(state, S.CANCELLED)

    def test_skipping_and_leaving_terminal_states_rejected(self):
        assert not can_transition(S.IDLE, S.FORMATTING)
        assert not can_transition(S.COPYING, S.FORMATTING)
        assert not can_transition(S.RAW_WRITING, S.COPYING)
        assert not can_transition(S.COMPLETED, S.FAILED)
        assert not can_transition(S.CANCELLED, S.PREPARING)

    def test_pipeline_rejects_illegal_transition(self, context, image):
        pipeline = ImagingPipeline(standard(image), None, context, StatusReporter())
        with pytest.raises(IllegalTransitionError):
            pipeline.transition(S.COPYING)

    def test_transition_is_a_cancellation_checkpoint(self, context, image):
        pipeline = ImagingPipeline(standard(image), None, context, StatusReporter())
        context.cancel()
        with pytest.raises(OperationCancelledError):
            pipeline.transition(S.PREPARING)
        pipeline.transition(S.CANCELLED)
        assert pipeline.state is S.CANCELLED


class TestStatusReporter:
    """Tests for forward-only status publication."""

    def test_drops_backward_updates(self):
        received = []
        reporter = StatusReporter(received.append)

        assert reporter.publish(OperationStatus.copying(0.5))
        assert not reporter.publish(OperationStatus.copying(0.4))
        assert not reporter.publish(OperationStatus.formatting(1.0))
        assert reporter.publish(OperationStatus.completed())
        assert not reporter.publish(OperationStatus.failed("late"))

        assert [status.kind for status in received] == [StatusKind.COPYING, StatusKind.COMPLETED]
        assert reporter.current.kind is StatusKind.COMPLETED


class TestDefaultLabel:
    def test_explicit_label_wins(self, image):
        assert default_label(standard(image, volume_label="My Stick")) == "MY_STICK"

    def test_image_stem(self, image):
        assert default_label(standard(image)) == "UBUNTU-24_0"

    def test_setting_fallback(self):
        assert default_label(ImagingOptions(device_id="sdb", filesystem=FileSystemType.NTFS)) == "UNTITLED"


class TestStandardPipeline:
    """Standard (file copy) mode."""

    def test_happy_path(self, context, image, steps):
        pipeline, final, statuses = run(standard(image), context)

        assert final.kind is StatusKind.COMPLETED
        assert pipeline.history == [
            S.IDLE, S.PREPARING, S.UNMOUNTING, S.FORMATTING, S.MOUNTING_SOURCE,
            S.COPYING, S.INSTALLING_BOOT, S.COMPLETED,
        ]
        assert statuses[0].kind is StatusKind.PREPARING
        assert statuses[-1].kind is StatusKind.COMPLETED
        kinds = [status.kind.rank for status in statuses]
        assert kinds == sorted(kinds)

        order = steps.order()
        assert order.index("attach_image") < order.index("check_fat_compatibility") < order.index("unmount_disk")
        assert order.index("unmount_disk") < order.index("erase_disk") < order.index("copy_tree")
        assert order.index("copy_tree") < order.index("install_boot")
        assert order[-2:] == ["unmount_disk", "detach_image"]
        assert steps.attach_image.call_count == 1
        assert steps.erase_disk.call_args.args[1:4] == ("sdb", standard(image), "UBUNTU-24_0")
        steps.create_persistence.assert_not_called()

    def test_oversized_file_fails_before_erasing(self, context, image, steps):
        steps.check_fat_compatibility.side_effect = OversizedFileForFATError("sources/install.wim", 5 * 1024**3)

        pipeline, final, _ = run(standard(image), context)

        assert final.kind is StatusKind.FAILED
        assert "sources/install.wim" in final.reason
        steps.unmount_disk.assert_not_called()
        steps.erase_disk.assert_not_called()
        steps.detach_image.assert_called_once()
        assert pipeline.history[-1] is S.FAILED

    def test_exfat_skips_preflight(self, context, image, steps):
        run(standard(image, filesystem=FileSystemType.EXFAT), context)

        steps.check_fat_compatibility.assert_not_called()
        order = steps.order()
        assert order.index("erase_disk") < order.index("attach_image")

    def test_format_only_without_image(self, context, steps):
        pipeline, final, _ = run(ImagingOptions(device_id="sdb"), context)

        assert final.kind is StatusKind.COMPLETED
        assert pipeline.history[-2:] == [S.FORMATTING, S.COMPLETED]
        steps.attach_image.assert_not_called()
        steps.copy_tree.assert_not_called()

    def test_format_failure(self, context, image, steps):
        steps.erase_disk.side_effect = FormatFailedError("Partitioning /dev/sdb failed", "/dev/sdb", "busy")

        _, final, _ = run(standard(image), context)

        assert final == OperationStatus.failed("Partitioning /dev/sdb failed")
        steps.copy_tree.assert_not_called()
        steps.detach_image.assert_called_once()

    def test_os_error_becomes_failed(self, context, image, steps):
        steps.copy_tree.side_effect = OSError(28, "No space left on device")

        _, final, _ = run(standard(image), context)

        assert final.kind is StatusKind.FAILED
        assert final.reason == "No space left on device"

    def test_cancel_during_copy_still_cleans_up(self, context, image, steps, fake_runner):
        def cancel_mid_copy(*args, **kwargs):
            kwargs["on_progress"](0.4, "casper/filesystem.squashfs")
            context.cancel()
            raise OperationCancelledError()

        steps.copy_tree.side_effect = cancel_mid_copy

        pipeline, final, statuses = run(standard(image), context)

        assert final.kind is StatusKind.CANCELLED
        assert pipeline.history[-1] is S.CANCELLED
        assert any(s.current_item == "casper/filesystem.squashfs" for s in statuses)
        steps.install_boot.assert_not_called()
        release_context = steps.unmount_disk.call_args_list[-1].args[0]
        assert release_context is not context
        assert release_context.runner is context.cleanup_runner
        steps.detach_image.assert_called_once()

    def test_failure_reported_after_cancel_is_cancelled(self, context, image, steps):
        def fail_after_cancel(*args, **kwargs):
            context.cancel()
            raise FormatFailedError("mkfs killed")

        steps.erase_disk.side_effect = fail_after_cancel

        _, final, _ = run(standard(image), context)

        assert final.kind is StatusKind.CANCELLED

    def test_boot_warnings_do_not_fail_the_run(self, context, image, steps):
        def warn_and_report(*args, **kwargs):
            kwargs["on_log"]("no mbr.bin")
            return BootInstallReport(bios_attempted=True, warnings=["no mbr.bin"])

        steps.install_boot.side_effect = warn_and_report

        pipeline, final, _ = run(standard(image), context)

        assert final.kind is StatusKind.COMPLETED
        assert pipeline.warnings == ["no mbr.bin"]

    def test_unexpected_error_fails_and_cleans_up(self, context, image, steps):
        steps.copy_tree.side_effect = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")

        pipeline, final, _ = run(standard(image), context)

        assert final.kind is StatusKind.FAILED
        assert "invalid start byte" in final.reason
        assert pipeline.history[-1] is S.FAILED
        steps.detach_image.assert_called_once()
        assert steps.order()[-2:] == ["unmount_disk", "detach_image"]

    def test_persistence_warnings_are_collected(self, context, image, steps):
        def fat_fallback(*args, **kwargs):
            kwargs["on_log"]("mkfs.ext4 not found, formatting the persistence partition as FAT32")
            return PersistenceConfig(1024, DistroFamily.ARCH)

        steps.create_persistence.side_effect = fat_fallback

        pipeline, final, _ = run(standard(image, persistence_size_bytes=1024), context)

        assert final.kind is StatusKind.COMPLETED
        assert pipeline.warnings == ["mkfs.ext4 not found, formatting the persistence partition as FAT32"]

    def test_persistence_and_bad_blocks(self, context, image, steps):
        options = standard(image, persistence_size_bytes=4 * 1024**3, check_bad_blocks=True, bad_block_passes=2)

        pipeline, final, statuses = run(options, context)

        assert final.kind is StatusKind.COMPLETED
        assert pipeline.history[-4:] == [S.INSTALLING_BOOT, S.PERSISTENCE, S.VERIFYING, S.COMPLETED]
        args = steps.create_persistence.call_args
        assert args.args[1:3] == ("sdb", 4 * 1024**3)
        assert steps.check_bad_blocks.call_args.args[1:3] == ("sdb", 2)
        assert any(status.kind is StatusKind.VERIFYING for status in statuses)


class TestDDPipeline:
    """Raw (DD) mode."""

    def test_raw_write(self, context, image, steps, usb_device):
        options = ImagingOptions(device_id="sdb", image_path=image, mode=ImagingMode.DD)

        pipeline, final, statuses = run(options, context, device=usb_device)

        assert final.kind is StatusKind.COMPLETED
        assert pipeline.history == [S.IDLE, S.PREPARING, S.UNMOUNTING, S.RAW_WRITING, S.COMPLETED]
        steps.erase_disk.assert_not_called()
        steps.attach_image.assert_not_called()
        assert steps.write_raw_image.call_args.kwargs["device_size"] == usb_device.size_bytes
        steps.settle.assert_called_once()
        assert any(s.current_item == image.name for s in statuses)

    def test_image_larger_than_device_fails_before_unmount(self, context, image, steps):
        tiny = Device("sdb", "Tiny", True, 1024)
        steps.get_device.return_value = tiny
        options = ImagingOptions(device_id="sdb", image_path=image, mode=ImagingMode.DD)

        _, final, _ = run(options, context, device=tiny)

        assert final.kind is StatusKind.FAILED
        steps.unmount_disk.assert_not_called()
        steps.write_raw_image.assert_not_called()


class TestRunImaging:
    """Tests for run_imaging() guards."""

    def test_invalid_options_fail_without_touching_disk(self, context, steps):
        received = []

        final = run_imaging(ImagingOptions(device_id=""), on_status=received.append, context=context)

        assert final.kind is StatusKind.FAILED
        assert received == [final]
        steps.resolve_whole_disk.assert_not_called()

    def test_busy_device_fails(self, context, image, steps):
        with device_operation("sdb"):
            final = run_imaging(standard(image), context=context)

        assert final.kind is StatusKind.FAILED
        assert "busy" in final.reason.lower()
        steps.unmount_disk.assert_not_called()
        steps.erase_disk.assert_not_called()

    def test_holds_device_lock_while_running(self, context, image, steps):
        seen = []
        steps.erase_disk.side_effect = lambda *a, **k: seen.append(is_operation_active("sdb"))

        final = run_imaging(standard(image), context=context)

        assert final.kind is StatusKind.COMPLETED
        assert seen == [True]
        assert not is_operation_active("sdb")

    def test_partition_node_of_locked_disk_is_busy(self, context, image, steps):
        """The lock is keyed on the whole disk, not on the name the caller gave."""
        with device_operation("sdb"):
            final = run_imaging(ImagingOptions(device_id="/dev/sdb1", image_path=image), context=context)

        assert final.kind is StatusKind.FAILED
        assert "busy" in final.reason.lower()
        assert steps.resolve_whole_disk.call_args.args[1] == "/dev/sdb1"
        steps.erase_disk.assert_not_called()

    def test_non_removable_disk_is_refused(self, context, image, steps):
        steps.resolve_whole_disk.return_value = "nvme0n1"
        steps.get_device.side_effect = DeviceNotFoundError("nvme0n1", "not a removable disk")

        final = run_imaging(ImagingOptions(device_id="/", image_path=image), context=context)

        assert final.kind is StatusKind.FAILED
        assert "nvme0n1" in final.reason
        steps.unmount_disk.assert_not_called()
        steps.erase_disk.assert_not_called()
        assert not is_operation_active()


class TestImagingJob:
    """Tests for the threaded job handle."""

    def test_statuses_end_with_terminal_and_logs_are_collected(self, context, image, steps):
        job = ImagingJob(standard(image), context=context).start()

        statuses = list(job.statuses())
        final = job.wait(timeout=10)

        assert final.kind is StatusKind.COMPLETED
        assert statuses[-1] == final
        assert job.done
        assert job.status == final
        messages = [entry.message for entry in job.logs()]
        assert "Imaging started" in messages
        assert all(entry.level for entry in job.logs())

    def test_cancel_from_caller(self, context, image, steps):
        entered = threading.Event()
        release = threading.Event()

        def slow_copy(*args, **kwargs):
            entered.set()
            release.wait(5)
            context.check_cancelled()
            return CopyResult()

        steps.copy_tree.side_effect = slow_copy
        job = imaging.start_imaging(standard(image), context=context)

        assert entered.wait(5)
        job.cancel()
        release.set()

        assert job.wait(timeout=10).kind is StatusKind.CANCELLED
        assert list(job.statuses())[-1].kind is StatusKind.CANCELLED

    def test_statuses_after_finish_yield_final_once(self, context, steps):
        job = ImagingJob(ImagingOptions(device_id=""), context=context).start()
        job.wait(timeout=10)

        assert [status.kind for status in job.statuses()] == [StatusKind.FAILED]
