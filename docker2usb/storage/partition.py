"""MSDOS partition tables and kpartx partition mappings on loop devices.

Partition Layout:
    1: alignment partition, 64s to 4MiB, never formatted
    2: boot partition, 4MiB to the 4MiB-aligned end, flags boot + lba

Only partition 2 is visible to Windows when the image is written to a USB
stick, since it is the first one carrying a filesystem. Two primary slots
remain free for partitions added after extending the image file.
"""

from __future__ import annotations

from typing import List

from docker2usb.domain.models import (
    CleanupObligation,
    PartitionLayout,
    ResourceKind,
    ScopeToken,
)
from docker2usb.logging import LoggerFactory
from docker2usb.storage.cleanup import CleanupRegistry
from docker2usb.storage.command_runners import ToolRunner
from docker2usb.storage.exceptions import CommandFailedError, PartitionError


log = LoggerFactory.for_storage()


def build_parted_commands(device: str, layout: PartitionLayout) -> List[List[str]]:
    """parted invocations that write ``layout`` to ``device``, in order."""
    commands = [["parted", "-s", device, "mklabel", "msdos"]]
    for partition in layout.partitions:
        mkpart = ["parted", "-s", device, "mkpart", "primary"]
        if partition.fs_type:
            mkpart.append(partition.fs_type)
        mkpart.extend([partition.start, partition.end])
        commands.append(mkpart)
    for partition in layout.partitions:
        for flag in partition.flags:
            commands.append(
                ["parted", "-s", device, "set", str(partition.number), flag, "on"]
            )
    return commands


def write_partition_table(runner: ToolRunner, device: str, layout: PartitionLayout) -> None:
    """Write a fresh MSDOS label and ``layout`` to ``device``.

    Raises:
        PartitionError: If any parted step fails
    """
    log.debug(f"Writing partition table to {device} (end {layout.aligned_end_mb}MiB)")
    for command in build_parted_commands(device, layout):
        try:
            runner.run(command)
        except CommandFailedError as error:
            raise PartitionError(device, error.stderr.strip() or str(error)) from error


def map_partitions(
    runner: ToolRunner,
    registry: CleanupRegistry,
    scope: ScopeToken,
    loop_device: str,
) -> CleanupObligation:
    """Create /dev/mapper nodes for each partition of ``loop_device``.

    Raises:
        PartitionError: If kpartx fails
    """
    try:
        # -s waits for udev to create the nodes before returning.
        runner.run(["kpartx", "-a", "-s", loop_device])
    except CommandFailedError as error:
        raise PartitionError(loop_device, error.stderr.strip() or str(error)) from error
    log.debug(f"Mapped partitions of {loop_device}")
    return registry.register(scope, ResourceKind.PARTITION_MAPPING, loop_device)
