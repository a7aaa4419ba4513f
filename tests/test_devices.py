"""Tests for storage/devices.py - lsblk discovery and device naming."""

import json

import pytest

from bootstick.storage import devices
from bootstick.storage.exceptions import DeviceNotFoundError


class TestNaming:
    """Tests for partition and whole-disk naming helpers."""

    @pytest.mark.parametrize(
        "disk, number, expected",
        [
            ("sdb", 1, "sdb1"),
            ("/dev/sdb", 2, "sdb2"),
            ("nvme0n1", 1, "nvme0n1p1"),
            ("mmcblk0", 3, "mmcblk0p3"),
            ("loop7", 1, "loop7p1"),
        ],
    )
    def test_partition_name(self, disk, number, expected):
        assert devices.partition_name(disk, number) == expected
        assert devices.partition_node(disk, number) == f"/dev/{expected}"

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("sdb", "sdb"),
            ("sdb1", "sdb"),
            ("/dev/sdc12", "sdc"),
            ("nvme0n1p2", "nvme0n1"),
            ("nvme0n1", "nvme0n1"),
            ("mmcblk0p1", "mmcblk0"),
            ("loop3p1", "loop3"),
            ("sr0", None),
            ("garbage", None),
        ],
    )
    def test_whole_disk_name(self, name, expected):
        assert devices.whole_disk_name(name) == expected

    def test_human_size(self):
        assert devices.human_size(None) == "0B"
        assert devices.human_size(512) == "512.0B"
        assert devices.human_size(16013852672) == "14.9GB"


class TestGetBlockDevices:
    """Tests for get_block_devices() and its cache."""

    def test_parses_lsblk_json(self, fake_runner, mock_lsblk_output):
        fake_runner.on("lsblk", stdout=mock_lsblk_output)

        records = devices.get_block_devices(fake_runner)

        assert [record["name"] for record in records] == ["nvme0n1", "sdb"]
        assert fake_runner.calls[0].argv[:3] == ["lsblk", "-J", "-b"]

    def test_cached_within_ttl(self, fake_runner, mock_lsblk_output):
        fake_runner.on("lsblk", stdout=mock_lsblk_output)

        devices.get_block_devices(fake_runner)
        devices.get_block_devices(fake_runner)

        assert len(fake_runner.calls) == 1

    def test_force_refresh_bypasses_cache(self, fake_runner, mock_lsblk_output):
        fake_runner.on("lsblk", stdout=mock_lsblk_output)

        devices.get_block_devices(fake_runner)
        devices.get_block_devices(fake_runner, force_refresh=True)

        assert len(fake_runner.calls) == 2

    def test_failure_returns_stale_cache(self, fake_runner, mock_lsblk_output):
        fake_runner.on("lsblk", stdout=mock_lsblk_output)
        first = devices.get_block_devices(fake_runner)
        devices._lsblk_cache_time = -1000.0
        fake_runner.on("lsblk", stderr="lsblk: failed", returncode=1)

        assert devices.get_block_devices(fake_runner) == first

    def test_failure_with_force_refresh_returns_empty(self, fake_runner, mock_lsblk_output):
        fake_runner.on("lsblk", stdout=mock_lsblk_output)
        devices.get_block_devices(fake_runner)
        fake_runner.on("lsblk", stdout="{not json")

        assert devices.get_block_devices(fake_runner, force_refresh=True) == []


class TestListRemovableDevices:
    """Tests for list_removable_devices()."""

    def test_excludes_system_disk(self, fake_runner, mock_lsblk_output):
        fake_runner.on("lsblk", stdout=mock_lsblk_output)

        found = devices.list_removable_devices(fake_runner)

        assert [device.identifier for device in found] == ["sdb"]

    def test_excludes_removable_disk_holding_root(self, fake_runner, mock_usb_device):
        mock_usb_device["children"][0]["mountpoint"] = "/"
        fake_runner.on("lsblk", stdout=json.dumps({"blockdevices": [mock_usb_device]}))

        assert devices.list_removable_devices(fake_runner) == []

    def test_excludes_empty_card_reader_and_partitions(self, fake_runner):
        records = [
            {"name": "sdc", "type": "disk", "size": 0, "rm": True},
            {"name": "sr0", "type": "rom", "size": 1024, "rm": True},
        ]
        fake_runner.on("lsblk", stdout=json.dumps({"blockdevices": records}))

        assert devices.list_removable_devices(fake_runner) == []


class TestGetDevice:
    """Tests for get_device()."""

    def test_accepts_node_path(self, fake_runner, mock_lsblk_output):
        fake_runner.on("lsblk", stdout=mock_lsblk_output)

        device = devices.get_device("/dev/sdb", fake_runner)

        assert device.identifier == "sdb"

    def test_system_disk_is_not_found(self, fake_runner, mock_lsblk_output):
        fake_runner.on("lsblk", stdout=mock_lsblk_output)

        with pytest.raises(DeviceNotFoundError):
            devices.get_device("nvme0n1", fake_runner)
