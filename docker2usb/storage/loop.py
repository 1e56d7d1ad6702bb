"""Loop device helpers: sparse backing files and losetup attachment."""

from __future__ import annotations

from pathlib import Path

from docker2usb.domain.models import CleanupObligation, ResourceKind, ScopeToken
from docker2usb.logging import LoggerFactory
from docker2usb.storage.cleanup import CleanupRegistry
from docker2usb.storage.command_runners import ToolRunner
from docker2usb.storage.exceptions import CommandFailedError, LoopDeviceError


log = LoggerFactory.for_storage()


def create_sparse_file(runner: ToolRunner, path: Path, size_kb: int) -> None:
    """Create (or resize) ``path`` as a sparse file of ``size_kb`` KiB."""
    runner.run(["truncate", "-s", f"{size_kb}K", str(path)])


def attach(
    runner: ToolRunner,
    registry: CleanupRegistry,
    scope: ScopeToken,
    image_path: Path,
) -> tuple[str, CleanupObligation]:
    """Attach ``image_path`` to the first free loop device.

    The device is registered for detachment under ``scope`` before returning.

    Returns:
        (loop device path, its cleanup obligation)

    Raises:
        LoopDeviceError: No free loop device, or losetup failed
    """
    try:
        result = runner.run(["losetup", "--show", "-f", str(image_path)])
    except CommandFailedError as error:
        raise LoopDeviceError(str(image_path), error.stderr.strip() or str(error)) from error
    device = result.stdout.strip()
    if not device.startswith("/dev/"):
        raise LoopDeviceError(str(image_path), f"unexpected losetup output {device!r}")
    obligation = registry.register(scope, ResourceKind.LOOP_DEVICE, device)
    log.info(f"Attached {image_path} to {device}")
    return device, obligation


def partition_device(loop_device: str, number: int) -> str:
    """Device-mapper node kpartx creates for partition ``number``.

    Example:
        >>> partition_device("/dev/loop3", 2)
        '/dev/mapper/loop3p2'
    """
    return f"/dev/mapper/{Path(loop_device).name}p{number}"
