"""Tests for config/settings.py - JSON settings store."""

import json

import pytest

from bootstick.config import settings


@pytest.fixture
def settings_path(tmp_path, monkeypatch):
    path = tmp_path / "config" / "settings.json"
    monkeypatch.setattr(settings, "SETTINGS_PATH", path)
    return path


class TestLoadSettings:
    """Tests for load_settings()."""

    def test_defaults_when_file_missing(self, settings_path):
        """Missing file leaves every default in place."""
        settings.load_settings()
        assert settings.get_setting("copy_chunk_size") == settings.DEFAULT_COPY_CHUNK_SIZE
        assert settings.get_setting("elevation_tool") == "pkexec"

    def test_file_values_override_defaults(self, settings_path):
        """Values in the JSON file replace the defaults."""
        settings_path.parent.mkdir(parents=True)
        settings_path.write_text(json.dumps({"elevation_tool": "sudo", "mount_wait_attempts": 5}))

        settings.load_settings()

        assert settings.get_setting("elevation_tool") == "sudo"
        assert settings.get_int("mount_wait_attempts") == 5
        assert settings.get_float("progress_interval") == settings.DEFAULT_PROGRESS_INTERVAL

    def test_invalid_json_keeps_defaults(self, settings_path):
        """A corrupt file is ignored."""
        settings_path.parent.mkdir(parents=True)
        settings_path.write_text("{not json")

        settings.load_settings()

        assert settings.get_setting("scan_interval") == settings.DEFAULT_SCAN_INTERVAL

    def test_non_dict_json_keeps_defaults(self, settings_path):
        """A JSON list is ignored."""
        settings_path.parent.mkdir(parents=True)
        settings_path.write_text("[1, 2, 3]")

        settings.load_settings()

        assert settings.get_setting("default_volume_label") == "UNTITLED"


class TestSetSetting:
    """Tests for set_setting() and save_settings()."""

    def test_set_setting_persists(self, settings_path):
        """set_setting writes the whole store to disk."""
        settings.set_setting("elevation_tool", "sudo")

        saved = json.loads(settings_path.read_text())
        assert saved["elevation_tool"] == "sudo"
        assert saved["raw_chunk_size"] == settings.DEFAULT_RAW_CHUNK_SIZE

    def test_round_trip_through_load(self, settings_path):
        """A saved value survives a reload."""
        settings.set_setting("scan_interval", 10)
        settings.settings_store.values = {}

        settings.load_settings()

        assert settings.get_float("scan_interval") == 10.0


class TestTypedGetters:
    """Tests for get_int() and get_float()."""

    def test_get_int_falls_back_on_garbage(self):
        settings.settings_store.values["copy_chunk_size"] = "lots"
        assert settings.get_int("copy_chunk_size", 42) == 42

    def test_get_float_converts_strings(self):
        settings.settings_store.values["progress_interval"] = "0.25"
        assert settings.get_float("progress_interval") == 0.25

    def test_get_setting_default_for_unknown_key(self):
        assert settings.get_setting("no_such_key", "fallback") == "fallback"
