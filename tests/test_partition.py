"""Tests for partition table writing and kpartx mappings."""

import pytest

from docker2usb.domain.models import ResourceKind
from docker2usb.storage.exceptions import PartitionError
from docker2usb.storage.partition import (
    build_parted_commands,
    map_partitions,
    write_partition_table,
)
from docker2usb.storage.sizing import plan_partition_layout, plan_size


@pytest.fixture
def layout():
    return plan_partition_layout(plan_size(500 * 1024, 10))


class TestBuildPartedCommands:
    """Tests for build_parted_commands()."""

    def test_full_sequence(self, layout):
        """Test label, both partitions, then boot and lba flags on partition 2."""
        assert build_parted_commands("/dev/loop4", layout) == [
            ["parted", "-s", "/dev/loop4", "mklabel", "msdos"],
            ["parted", "-s", "/dev/loop4", "mkpart", "primary", "fat32", "64s", "4MiB"],
            ["parted", "-s", "/dev/loop4", "mkpart", "primary", "4MiB", "548MiB"],
            ["parted", "-s", "/dev/loop4", "set", "2", "boot", "on"],
            ["parted", "-s", "/dev/loop4", "set", "2", "lba", "on"],
        ]


class TestWritePartitionTable:
    """Tests for write_partition_table()."""

    def test_runs_all_commands(self, fake_runner, layout):
        write_partition_table(fake_runner, "/dev/loop4", layout)

        assert len(fake_runner.ran("parted")) == 5

    def test_failure_stops_and_wraps(self, fake_runner, layout):
        """Test that a failing parted step raises PartitionError and stops."""
        fake_runner.fail_on(
            "parted -s /dev/loop4 mkpart", stderr="Error: Can't have overlapping partitions."
        )

        with pytest.raises(PartitionError, match="overlapping"):
            write_partition_table(fake_runner, "/dev/loop4", layout)

        assert len(fake_runner.ran("parted")) == 2


class TestMapPartitions:
    """Tests for map_partitions()."""

    def test_registers_mapping(self, fake_runner, recording_registry):
        scope = recording_registry.open_scope("disk")

        obligation = map_partitions(fake_runner, recording_registry, scope, "/dev/loop4")

        assert fake_runner.commands == [["kpartx", "-a", "-s", "/dev/loop4"]]
        assert obligation.kind is ResourceKind.PARTITION_MAPPING
        assert obligation.resource == "/dev/loop4"
        assert recording_registry.pending(scope) == [obligation]

    def test_failure_registers_nothing(self, fake_runner, recording_registry):
        fake_runner.fail_on("kpartx", stderr="device-mapper: reload ioctl failed")
        scope = recording_registry.open_scope("disk")

        with pytest.raises(PartitionError):
            map_partitions(fake_runner, recording_registry, scope, "/dev/loop4")

        assert len(recording_registry) == 0
