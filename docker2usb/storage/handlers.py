"""Teardown actions for each kind of allocated resource.

Handlers may run during an abnormal exit when earlier steps only partly
completed, so every one of them tolerates a resource that is already gone:
unmount only if mounted, detach only if attached, delete only if present.
A handler signals failure by raising; the cleanup registry turns that into
a warning and carries on with the rest of the batch.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional

from docker2usb.domain.models import CleanupObligation, ResourceKind
from docker2usb.logging import LoggerFactory
from docker2usb.storage.command_runners import ToolRunner
from docker2usb.storage.exceptions import (
    CommandFailedError,
    UnknownResourceKindError,
    UnmountFailedError,
)


log = LoggerFactory.for_cleanup()

Handler = Callable[[str], None]


def remove_path(resource: str) -> None:
    """Delete a file or directory tree. A missing path is not an error.

    A directory that is still a mount point is refused and left in place.
    """
    path = Path(resource)
    if os.path.abspath(path) == os.path.sep:
        raise ValueError("Refusing to remove the filesystem root")
    if os.path.ismount(path):
        raise UnmountFailedError(resource, "still mounted, not removing it")
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


class ResourceHandlers:
    """Maps each ResourceKind to its teardown action."""

    def __init__(
        self,
        runner: ToolRunner,
        *,
        docker_binary: str = "docker",
        handlers: Optional[Mapping[ResourceKind, Handler]] = None,
    ):
        self.runner = runner
        self.docker_binary = docker_binary
        self._handlers: Dict[ResourceKind, Handler] = {
            ResourceKind.FILE: remove_path,
            ResourceKind.MOUNT: self.unmount,
            ResourceKind.PARTITION_MAPPING: self.remove_partition_mappings,
            ResourceKind.LOOP_DEVICE: self.detach_loop_device,
            ResourceKind.EPHEMERAL_CONTAINER: self.kill_container,
        }
        if handlers is not None:
            self._handlers = dict(handlers)

    def teardown(self, obligation: CleanupObligation) -> None:
        handler = self._handlers.get(obligation.kind)
        if handler is None:
            raise UnknownResourceKindError(obligation.kind, obligation.resource)
        log.debug(f"Cleaning up {obligation.describe()} (scope {obligation.scope.path})")
        handler(obligation.resource)

    def unmount(self, mountpoint: str) -> None:
        probe = self.runner.run(["mountpoint", "-q", mountpoint], check=False, cancellable=False)
        if probe.returncode != 0:
            log.debug(f"{mountpoint} is not mounted, skipping umount")
            return
        self.runner.run(["umount", mountpoint], cancellable=False)

    def remove_partition_mappings(self, loop_device: str) -> None:
        self.runner.run(["kpartx", "-d", loop_device], cancellable=False)

    def detach_loop_device(self, loop_device: str) -> None:
        # `losetup <dev>` fails when nothing is attached to the device.
        probe = self.runner.run(["losetup", loop_device], check=False, cancellable=False)
        if probe.returncode != 0:
            log.debug(f"{loop_device} is not attached, skipping detach")
            return
        self.runner.run(["losetup", "-d", loop_device], cancellable=False)

    def kill_container(self, container_id: str) -> None:
        command = [self.docker_binary, "rm", "-f", container_id]
        result = self.runner.run(command, check=False, cancellable=False)
        if result.returncode == 0:
            return
        stderr = result.stderr or ""
        if "no such container" in stderr.lower():
            log.debug(f"Container {container_id} already removed")
            return
        raise CommandFailedError(command, result.returncode, stderr, result.stdout or "")
