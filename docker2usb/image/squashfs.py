"""Squashed live image assembly.

Dracut's dmsquash-live module expects this exact nesting::

    <out>/LiveOS/squashfs.img          squashfs image, whose root holds
        LiveOS/rootfs.img              a loop-mountable ext3 image holding
            <root filesystem files>    the actual content tree

The layout is fixed by that consumer and must not change.
"""

from __future__ import annotations

import shutil
from pathlib import Path

from docker2usb.app.context import BuildContext
from docker2usb.domain.models import ResourceKind, ScopeToken
from docker2usb.logging import EventLogger, LoggerFactory
from docker2usb.storage import loop
from docker2usb.storage.exceptions import CommandFailedError, CopyError, SquashfsError
from docker2usb.storage.format import make_filesystem
from docker2usb.storage.mount import (
    copy_tree,
    make_temp_dir,
    make_temp_file,
    mount,
    unmount,
)
from docker2usb.storage.sizing import measure_tree_kb, plan_size


log = LoggerFactory.for_squashfs()

LIVE_DIR = "LiveOS"
ROOTFS_IMAGE = "rootfs.img"
SQUASHFS_IMAGE = "squashfs.img"


def squashfs_image_path(output_dir: Path) -> Path:
    return output_dir / LIVE_DIR / SQUASHFS_IMAGE


class SquashedImageBuilder:
    """Builds ``LiveOS/squashfs.img`` from a content tree."""

    def __init__(self, context: BuildContext):
        self.context = context
        self.runner = context.runner
        self.registry = context.registry
        self.options = context.options

    def build(self, rootfs_path: Path, output_dir: Path, parent: ScopeToken) -> Path:
        """Squash ``rootfs_path`` into ``output_dir/LiveOS/squashfs.img``.

        The loop device and every scratch path are released when this
        returns, whether it succeeds or raises.

        Returns:
            Path of the squashfs image
        """
        base_dir = self.options.temp_dir
        with self.registry.scope("squashfs", parent=parent) as scope:
            plan = plan_size(
                measure_tree_kb(self.runner, rootfs_path),
                self.options.rootfs_buffer_percent,
            )
            EventLogger.log_size_plan(log, ROOTFS_IMAGE, plan)

            image_file = make_temp_file(
                self.registry, scope, "rootfs-", suffix=".img", base_dir=base_dir
            )
            loop.create_sparse_file(self.runner, image_file, plan.target_kb)
            device, _ = loop.attach(self.runner, self.registry, scope, image_file)
            make_filesystem(self.runner, device, self.options.rootfs_fstype)

            mount_dir = make_temp_dir(self.registry, scope, "rootfs-mnt-", base_dir=base_dir)
            mounted = mount(self.runner, self.registry, scope, device, mount_dir)
            copy_tree(
                self.runner, rootfs_path, mount_dir, preserve=True, capacity_kb=plan.target_kb
            )
            # Only the mount goes here; the loop device stays attached until
            # the scope is flushed.
            unmount(self.registry, mounted)

            staging_dir = make_temp_dir(self.registry, scope, "squashfs-", base_dir=base_dir)
            staged_image = self._stage_rootfs_image(image_file, staging_dir, scope)
            log.debug(f"Staged {staged_image}")

            output = squashfs_image_path(output_dir)
            self._mksquashfs(staging_dir, output)

        log.info(f"Squashed image ready: {output}")
        return output

    def _stage_rootfs_image(
        self, image_file: Path, staging_dir: Path, scope: ScopeToken
    ) -> Path:
        """Move the populated image to ``<staging>/LiveOS/rootfs.img``.

        The staging directory takes over ownership of the file, so its own
        FILE obligation is withdrawn rather than left pointing at a moved path.
        """
        live_dir = staging_dir / LIVE_DIR
        target = live_dir / ROOTFS_IMAGE
        try:
            live_dir.mkdir(parents=True, exist_ok=True)
            shutil.move(str(image_file), str(target))
        except OSError as error:
            raise CopyError(str(image_file), str(target), str(error)) from error
        for obligation in self.registry.pending(scope):
            if obligation.kind is ResourceKind.FILE and obligation.resource == str(image_file):
                self.registry.withdraw(scope, obligation.kind, obligation.sequence)
        return target

    def _mksquashfs(self, staging_dir: Path, output: Path) -> None:
        output.parent.mkdir(parents=True, exist_ok=True)
        command = ["mksquashfs", str(staging_dir), str(output), "-noappend"]
        if self.options.squashfs_compression:
            command.extend(["-comp", self.options.squashfs_compression])
        try:
            self.runner.run(command)
        except CommandFailedError as error:
            raise SquashfsError(str(output), error.stderr.strip() or str(error)) from error
