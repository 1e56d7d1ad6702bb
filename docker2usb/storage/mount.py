"""Mounting, temporary paths and tree copies for image population.

Every path created here is registered with the cleanup registry as soon as it
exists, so a failed build leaves no stray mount points or scratch files.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional

from docker2usb.domain.models import CleanupObligation, ResourceKind, ScopeToken
from docker2usb.logging import LoggerFactory
from docker2usb.storage.cleanup import CleanupRegistry
from docker2usb.storage.command_runners import ToolRunner
from docker2usb.storage.exceptions import (
    CommandFailedError,
    CopyError,
    InsufficientSpaceError,
    MountError,
    TempPathError,
    UnmountFailedError,
)


log = LoggerFactory.for_storage()

NO_SPACE_MARKERS = ("no space left on device", "disk quota exceeded")


def make_temp_dir(
    registry: CleanupRegistry,
    scope: ScopeToken,
    prefix: str,
    base_dir: Optional[Path] = None,
) -> Path:
    """Create a temporary directory registered for recursive removal."""
    try:
        path = Path(tempfile.mkdtemp(prefix=prefix, dir=base_dir))
    except OSError as error:
        raise TempPathError(str(base_dir or tempfile.gettempdir()), str(error)) from error
    registry.register(scope, ResourceKind.FILE, str(path))
    return path


def make_temp_file(
    registry: CleanupRegistry,
    scope: ScopeToken,
    prefix: str,
    suffix: str = "",
    base_dir: Optional[Path] = None,
) -> Path:
    """Create an empty temporary file registered for removal."""
    try:
        handle, name = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=base_dir)
    except OSError as error:
        raise TempPathError(str(base_dir or tempfile.gettempdir()), str(error)) from error
    # Only the path is needed; truncate/losetup reopen it.
    os.close(handle)
    path = Path(name)
    registry.register(scope, ResourceKind.FILE, str(path))
    return path


def mount(
    runner: ToolRunner,
    registry: CleanupRegistry,
    scope: ScopeToken,
    device: str,
    mountpoint: Path,
) -> CleanupObligation:
    """Mount ``device`` on ``mountpoint`` and register the unmount.

    Raises:
        MountError: If mount fails
    """
    try:
        runner.run(["mount", device, str(mountpoint)])
    except CommandFailedError as error:
        raise MountError(device, str(mountpoint), error.stderr.strip() or str(error)) from error
    log.debug(f"Mounted {device} on {mountpoint}")
    return registry.register(scope, ResourceKind.MOUNT, str(mountpoint))


def copy_tree(
    runner: ToolRunner,
    source: Path,
    destination: Path,
    *,
    preserve: bool = True,
    capacity_kb: Optional[int] = None,
) -> None:
    """Recursively copy the contents of ``source`` into ``destination``.

    Args:
        source: Directory whose contents are copied (not the directory itself)
        destination: Existing directory, usually a mount point
        preserve: Keep ownership, permissions, links and timestamps (``cp -a``).
            FAT targets cannot store ownership, so they use ``cp -r``.
        capacity_kb: Size of the target filesystem, reported when it fills up

    Raises:
        InsufficientSpaceError: The target filesystem ran out of space
        CopyError: Any other copy failure
    """
    flags = "-a" if preserve else "-r"
    try:
        runner.run(["cp", flags, f"{source}/.", f"{destination}/"])
    except CommandFailedError as error:
        reason = error.stderr.strip() or str(error)
        if any(marker in reason.lower() for marker in NO_SPACE_MARKERS):
            raise InsufficientSpaceError(str(destination), capacity_kb or 0, reason) from error
        raise CopyError(str(source), str(destination), reason) from error


def unmount(registry: CleanupRegistry, obligation: CleanupObligation) -> None:
    """Release a mount ahead of the rest of its scope.

    Raises:
        UnmountFailedError: If umount failed; later steps must not touch
            the device while it is still mounted.
    """
    failures = registry.release(obligation)
    if failures:
        raise UnmountFailedError(obligation.resource, failures[0].error)
    log.debug(f"Unmounted {obligation.resource}")
