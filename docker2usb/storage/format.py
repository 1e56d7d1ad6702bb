"""Filesystem creation on loop devices and mapped partitions.

Supported Filesystems:
    ext2/ext3/ext4: journaling Linux filesystems for the rootfs loop image
                    (ext3 by default, which every dracut live initramfs reads)
    vfat/msdos:     FAT for the boot partition, which syslinux installs into

Example:
    >>> make_filesystem(runner, "/dev/loop3", "ext3")
    >>> make_filesystem(runner, "/dev/mapper/loop4p2", "msdos", label="ISOIMAGE")
"""

from __future__ import annotations

from typing import List, Optional

from docker2usb.logging import LoggerFactory
from docker2usb.storage.command_runners import ToolRunner
from docker2usb.storage.exceptions import CommandFailedError, FormatError


log = LoggerFactory.for_storage()

EXT_FILESYSTEMS = {"ext2", "ext3", "ext4"}
FAT_FILESYSTEMS = {"vfat", "msdos"}


def build_mkfs_command(device: str, filesystem: str, label: Optional[str] = None) -> List[str]:
    """Build the mkfs command line for ``filesystem``.

    Raises:
        FormatError: For unsupported filesystem types
    """
    filesystem = filesystem.lower()

    if filesystem in EXT_FILESYSTEMS:
        # -F: the target is a loop device, not a whole-disk node.
        command = [f"mkfs.{filesystem}", "-F", "-q"]
        if label:
            command.extend(["-L", label])
    elif filesystem in FAT_FILESYSTEMS:
        command = ["mkfs.msdos"]
        if label:
            command.extend(["-n", label])
    else:
        raise FormatError(device, filesystem, "unsupported filesystem type")

    command.append(device)
    return command


def make_filesystem(
    runner: ToolRunner, device: str, filesystem: str, label: Optional[str] = None
) -> None:
    """Create ``filesystem`` on ``device``.

    Raises:
        FormatError: If the filesystem is unsupported or mkfs fails
    """
    command = build_mkfs_command(device, filesystem, label)
    log.debug(f"Formatting {device} as {filesystem}")
    try:
        runner.run(command)
    except CommandFailedError as error:
        raise FormatError(device, filesystem, error.stderr.strip() or str(error)) from error
    log.info(f"Formatted {device} as {filesystem}" + (f" ({label})" if label else ""))
