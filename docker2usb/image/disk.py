"""Raw disk image packaging.

Packages a populated working tree (``LiveOS/squashfs.img`` plus the
``syslinux`` boot assets) into a partitioned, bootable raw disk image:

    1. Size the image at working tree + 10%
    2. Align the boot partition end down to a 4 MiB boundary
    3. Create the sparse image file and attach it to a loop device
    4. Write the MSDOS partition table (alignment partition + boot partition)
    5. Map the partitions with kpartx
    6. Create a FAT filesystem labelled with the volume label
    7. Mount it and copy the working tree in, leaving it mounted
    8. Write the syslinux MBR to the first 440 bytes of the loop device
    9. Install syslinux into the mounted boot partition
    10. Unmount, unmap and detach, in that order

The image file can be grown later with ``truncate`` and given extra
partitions; two primary slots remain after the alignment and boot partitions.
"""

from __future__ import annotations

from pathlib import Path

from docker2usb.app.context import BuildContext
from docker2usb.domain.models import PartitionLayout, ScopeToken
from docker2usb.image.bootloader import BOOT_DIR, INSTALLER_BINARY, MBR_BINARY
from docker2usb.logging import EventLogger, LoggerFactory
from docker2usb.storage import loop
from docker2usb.storage.exceptions import BootloaderError, CommandFailedError
from docker2usb.storage.format import make_filesystem
from docker2usb.storage.mount import copy_tree, make_temp_dir, mount
from docker2usb.storage.partition import map_partitions, write_partition_table
from docker2usb.storage.sizing import (
    ALIGNMENT_MB,
    measure_tree_kb,
    plan_partition_layout,
    plan_size,
)


log = LoggerFactory.for_disk()

MBR_SIZE_BYTES = 440
BOOT_FILESYSTEM = "msdos"


class DiskPartitioner:
    """Turns a working tree into a bootable raw disk image."""

    def __init__(self, context: BuildContext):
        self.context = context
        self.runner = context.runner
        self.registry = context.registry
        self.options = context.options

    def package(
        self, working_path: Path, output: Path, label: str, parent: ScopeToken
    ) -> Path:
        """Write a bootable disk image of ``working_path`` to ``output``.

        On failure the output file may hold a partial partition table or boot
        sector; the loop device, mappings and mount are always released.
        """
        boot_dir = working_path / BOOT_DIR
        with self.registry.scope("disk", parent=parent) as scope:
            plan = plan_size(
                measure_tree_kb(self.runner, working_path),
                self.options.disk_buffer_percent,
            )
            EventLogger.log_size_plan(log, output.name, plan)
            layout = plan_partition_layout(plan)

            loop.create_sparse_file(self.runner, output, plan.target_kb)
            device, _ = loop.attach(self.runner, self.registry, scope, output)

            write_partition_table(self.runner, device, layout)
            map_partitions(self.runner, self.registry, scope, device)
            boot_device = loop.partition_device(device, layout.boot_partition.number)

            make_filesystem(self.runner, boot_device, BOOT_FILESYSTEM, label=label)

            mount_dir = make_temp_dir(
                self.registry, scope, "boot-mnt-", base_dir=self.options.temp_dir
            )
            mount(self.runner, self.registry, scope, boot_device, mount_dir)
            copy_tree(
                self.runner,
                working_path,
                mount_dir,
                preserve=False,
                capacity_kb=self._boot_partition_kb(layout),
            )

            self.install_mbr(boot_dir / MBR_BINARY, device)
            self.install_syslinux(boot_dir / INSTALLER_BINARY, boot_device)

        log.info(f"Disk image ready: {output} ({layout.aligned_end_mb}MiB partitioned)")
        return output

    def install_mbr(self, mbr_binary: Path, device: str) -> None:
        """Write the boot sector code without touching the partition table."""
        if not mbr_binary.is_file():
            raise BootloaderError(f"Boot sector binary not found: {mbr_binary}", str(mbr_binary))
        try:
            self.runner.run(
                [
                    "dd",
                    f"bs={MBR_SIZE_BYTES}",
                    "count=1",
                    "conv=notrunc",
                    f"if={mbr_binary}",
                    f"of={device}",
                ]
            )
        except CommandFailedError as error:
            raise BootloaderError(
                f"Failed to write boot sector to {device}: {error.stderr.strip() or error}",
                device,
            ) from error

    def install_syslinux(self, installer: Path, boot_device: str) -> None:
        """Install syslinux boot code into the mounted boot partition."""
        if not installer.is_file():
            raise BootloaderError(f"Syslinux installer not found: {installer}", str(installer))
        try:
            self.runner.run(
                [str(installer), "--install", boot_device, "--directory", f"/{BOOT_DIR}"]
            )
        except CommandFailedError as error:
            raise BootloaderError(
                f"Failed to install syslinux on {boot_device}: {error.stderr.strip() or error}",
                boot_device,
            ) from error

    @staticmethod
    def _boot_partition_kb(layout: PartitionLayout) -> int:
        return (layout.aligned_end_mb - ALIGNMENT_MB) * 1024
