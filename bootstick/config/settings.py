"""Settings storage for imaging defaults and tuning knobs."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "BOOTSTICK_SETTINGS_PATH",
        Path.home() / ".config" / "bootstick" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_COPY_CHUNK_SIZE = 256 * 1024
DEFAULT_RAW_CHUNK_SIZE = 4 * 1024 * 1024
DEFAULT_PROGRESS_INTERVAL = 0.5
DEFAULT_MOUNT_WAIT_ATTEMPTS = 15
DEFAULT_MOUNT_WAIT_INTERVAL = 1.0
DEFAULT_MOUNT_WAIT_KICK_AFTER = 3
DEFAULT_SCAN_INTERVAL = 3.0

DEFAULT_SETTINGS: dict[str, Any] = {
    "copy_chunk_size": DEFAULT_COPY_CHUNK_SIZE,
    "raw_chunk_size": DEFAULT_RAW_CHUNK_SIZE,
    "progress_interval": DEFAULT_PROGRESS_INTERVAL,
    "mount_wait_attempts": DEFAULT_MOUNT_WAIT_ATTEMPTS,
    "mount_wait_interval": DEFAULT_MOUNT_WAIT_INTERVAL,
    "mount_wait_kick_after": DEFAULT_MOUNT_WAIT_KICK_AFTER,
    "elevation_tool": "pkexec",
    "default_volume_label": "UNTITLED",
    "scan_interval": DEFAULT_SCAN_INTERVAL,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_int(key: str, default: int = 0) -> int:
    try:
        return int(get_setting(key, default))
    except (TypeError, ValueError):
        return default


def get_float(key: str, default: float = 0.0) -> float:
    try:
        return float(get_setting(key, default))
    except (TypeError, ValueError):
        return default


load_settings()
