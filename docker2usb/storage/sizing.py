"""Image size estimation and partition alignment arithmetic.

Sizes are whole KiB throughout: that is what ``du -s -k`` reports and what
``truncate -s <n>K`` accepts, so no rounding happens between measuring a tree
and creating the sparse file for it.
"""

from __future__ import annotations

from pathlib import Path

from docker2usb.domain.models import Partition, PartitionLayout, SizePlan
from docker2usb.storage.command_runners import ToolRunner
from docker2usb.storage.exceptions import InsufficientSpaceError


# Default buffer for the ext3 loop image inside the squashfs.
ROOTFS_BUFFER_PERCENT = 1
# Default buffer for the whole disk image.
DISK_BUFFER_PERCENT = 10

ALIGNMENT_MB = 4
ALIGNMENT_PARTITION_START = "64s"


def measure_tree_kb(runner: ToolRunner, path: Path) -> int:
    """Disk usage of a tree in KiB, as reported by ``du -s -k``."""
    result = runner.run(["du", "-s", "-k", str(path)])
    field = result.stdout.split()[0] if result.stdout.split() else ""
    try:
        return int(field)
    except ValueError as error:
        raise ValueError(f"Unexpected du output for {path}: {result.stdout!r}") from error


def plan_size(measured_kb: int, buffer_percent: int) -> SizePlan:
    """Add ``buffer_percent`` of whole hundredths of the measured size.

    ``target = measured + (measured // 100) * buffer_percent``
    """
    if measured_kb < 0:
        raise ValueError(f"Measured size cannot be negative: {measured_kb}")
    if buffer_percent < 0:
        raise ValueError(f"Buffer percentage cannot be negative: {buffer_percent}")
    target_kb = measured_kb + (measured_kb // 100) * buffer_percent
    return SizePlan(
        measured_kb=measured_kb,
        buffer_percent=buffer_percent,
        target_kb=target_kb,
    )


def aligned_partition_end(size_kb: int) -> int:
    """Largest multiple of 4 MiB that fits in ``size_kb``, in MiB.

    Ending the last partition on a 4 MiB boundary lets any partition added
    after it start on an erase-block friendly offset.
    """
    size_mb = size_kb // 1024
    return (size_mb // ALIGNMENT_MB) * ALIGNMENT_MB


def plan_partition_layout(plan: SizePlan) -> PartitionLayout:
    """Alignment partition up to 4 MiB, then the boot partition to the aligned end."""
    aligned_end_mb = aligned_partition_end(plan.target_kb)
    if aligned_end_mb <= ALIGNMENT_MB:
        raise InsufficientSpaceError(
            "disk image",
            plan.target_kb,
            f"aligned end {aligned_end_mb}MiB leaves no room after the "
            f"{ALIGNMENT_MB}MiB alignment partition",
        )
    return PartitionLayout(
        aligned_end_mb=aligned_end_mb,
        partitions=(
            Partition(
                number=1,
                start=ALIGNMENT_PARTITION_START,
                end=f"{ALIGNMENT_MB}MiB",
                fs_type="fat32",
            ),
            Partition(
                number=2,
                start=f"{ALIGNMENT_MB}MiB",
                end=f"{aligned_end_mb}MiB",
                flags=("boot", "lba"),
            ),
        ),
    )
