"""Settings storage for build configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "DOCKER2USB_SETTINGS_PATH",
        Path.home() / ".config" / "docker2usb" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_LABEL = "ISOIMAGE"
DEFAULT_SYSLINUX_VERSION = "6.03"
DEFAULT_SYSLINUX_MIRROR = "https://www.kernel.org/pub/linux/utils/boot/syslinux"

DEFAULT_SETTINGS: dict[str, Any] = {
    "label": DEFAULT_LABEL,
    "output_format": "raw",
    "syslinux_version": DEFAULT_SYSLINUX_VERSION,
    "syslinux_mirror": DEFAULT_SYSLINUX_MIRROR,
    "syslinux_cache_dir": "/tmp",
    "rootfs_fstype": "ext3",
    "squashfs_compression": None,
    "rootfs_buffer_percent": 1,
    "disk_buffer_percent": 10,
    "docker_binary": "docker",
    "download_timeout_seconds": 300,
    "temp_dir": None,
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


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


load_settings()
