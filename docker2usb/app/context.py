from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from docker2usb.config import settings
from docker2usb.domain.models import OutputFormat
from docker2usb.storage.cleanup import CleanupRegistry
from docker2usb.storage.command_runners import ToolRunner
from docker2usb.storage.exceptions import BuildCancelled
from docker2usb.storage.handlers import ResourceHandlers
from docker2usb.storage.sizing import DISK_BUFFER_PERCENT, ROOTFS_BUFFER_PERCENT


@dataclass(frozen=True)
class BuildOptions:
    label: str = settings.DEFAULT_LABEL
    output_format: OutputFormat = OutputFormat.RAW
    syslinux_version: str = settings.DEFAULT_SYSLINUX_VERSION
    syslinux_mirror: str = settings.DEFAULT_SYSLINUX_MIRROR
    syslinux_cache_dir: Path = Path("/tmp")
    rootfs_fstype: str = "ext3"
    squashfs_compression: Optional[str] = None
    rootfs_buffer_percent: int = ROOTFS_BUFFER_PERCENT
    disk_buffer_percent: int = DISK_BUFFER_PERCENT
    docker_binary: str = "docker"
    download_timeout_seconds: int = 300
    temp_dir: Optional[Path] = None
    keep_working_dir: bool = False

    @classmethod
    def from_settings(cls, **overrides: Any) -> BuildOptions:
        """Resolve options from the settings file, then apply non-None overrides."""
        temp_dir = settings.get_setting("temp_dir")
        values: dict[str, Any] = {
            "label": settings.get_setting("label", settings.DEFAULT_LABEL),
            "output_format": OutputFormat(settings.get_setting("output_format", "raw")),
            "syslinux_version": settings.get_setting(
                "syslinux_version", settings.DEFAULT_SYSLINUX_VERSION
            ),
            "syslinux_mirror": settings.get_setting(
                "syslinux_mirror", settings.DEFAULT_SYSLINUX_MIRROR
            ),
            "syslinux_cache_dir": Path(settings.get_setting("syslinux_cache_dir", "/tmp")),
            "rootfs_fstype": settings.get_setting("rootfs_fstype", "ext3"),
            "squashfs_compression": settings.get_setting("squashfs_compression"),
            "rootfs_buffer_percent": settings.get_int(
                "rootfs_buffer_percent", ROOTFS_BUFFER_PERCENT
            ),
            "disk_buffer_percent": settings.get_int(
                "disk_buffer_percent", DISK_BUFFER_PERCENT
            ),
            "docker_binary": settings.get_setting("docker_binary", "docker"),
            "download_timeout_seconds": settings.get_int("download_timeout_seconds", 300),
            "temp_dir": Path(temp_dir) if temp_dir else None,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


@dataclass
class BuildContext:
    """Everything one build run shares: options, tool runner and cleanup registry.

    Created once by the pipeline driver and passed down by reference; there
    is no module-level registry.
    """

    options: BuildOptions = field(default_factory=BuildOptions)
    runner: Optional[ToolRunner] = None
    registry: Optional[CleanupRegistry] = None
    cancel_reason: Optional[str] = None

    def __post_init__(self) -> None:
        if self.runner is None:
            self.runner = ToolRunner()
        if self.runner.cancel_check is None:
            self.runner.cancel_check = self.raise_if_cancelled
        if self.registry is None:
            handlers = ResourceHandlers(self.runner, docker_binary=self.options.docker_binary)
            self.registry = CleanupRegistry(handlers.teardown)

    def request_cancel(self, reason: str) -> None:
        if self.cancel_reason is None:
            self.cancel_reason = reason

    def raise_if_cancelled(self) -> None:
        if self.cancel_reason is not None:
            raise BuildCancelled(self.cancel_reason)
