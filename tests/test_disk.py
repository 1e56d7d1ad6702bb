"""
Tests for docker2usb.image.disk module.

This test suite covers:
- Image sizing and the partition table written to the loop device
- Boot sector and syslinux installation
- Unmount -> unmap -> detach ordering on success and failure
"""

from pathlib import Path

import pytest

from docker2usb.domain.models import ResourceKind
from docker2usb.image.bootloader import INSTALLER_BINARY, MBR_BINARY
from docker2usb.image.disk import DiskPartitioner
from docker2usb.storage.exceptions import (
    BootloaderError,
    FormatError,
    InsufficientSpaceError,
    MountError,
    PartitionError,
)


@pytest.fixture
def working(tmp_path):
    path = tmp_path / "work"
    boot = path / "syslinux"
    boot.mkdir(parents=True)
    (boot / MBR_BINARY).write_bytes(b"\x33" * 440)
    (boot / INSTALLER_BINARY).write_bytes(b"#!/bin/false\n")
    (boot / "syslinux.cfg").write_text("APPEND root=live:LABEL=LIVE\n")
    (path / "LiveOS").mkdir()
    (path / "LiveOS" / "squashfs.img").write_bytes(b"hsqs")
    return path


@pytest.fixture
def output(tmp_path):
    return tmp_path / "live.img"


def _package(context, working, output, label="LIVE"):
    run_scope = context.registry.open_scope("build")
    return DiskPartitioner(context).package(working, output, label, run_scope)


class TestPackage:
    """Tests for DiskPartitioner.package()."""

    def test_sizing_and_partition_table(self, build_context, fake_runner, working, output):
        """Test that a 500 MiB tree yields a 550 MiB image ending at 548 MiB."""
        fake_runner.du_kb[str(working)] = 500 * 1024

        result = _package(build_context, working, output)

        assert result == output
        assert fake_runner.ran("truncate") == [["truncate", "-s", "563200K", str(output)]]
        assert fake_runner.ran("losetup --show -f") == [
            ["losetup", "--show", "-f", str(output)]
        ]
        assert fake_runner.ran("parted -s /dev/loop0 mkpart")[-1][-2:] == ["4MiB", "548MiB"]
        assert fake_runner.ran("kpartx -a") == [["kpartx", "-a", "-s", "/dev/loop0"]]

    def test_formats_boot_partition_with_label(self, build_context, fake_runner, working, output):
        _package(build_context, working, output, label="FEDORA_LIVE")

        assert fake_runner.ran("mkfs.msdos") == [
            ["mkfs.msdos", "-n", "FEDORA_LIVE", "/dev/mapper/loop0p2"]
        ]
        mount_cmd = fake_runner.ran("mount")[0]
        assert mount_cmd[1] == "/dev/mapper/loop0p2"
        assert fake_runner.ran("cp")[0][:3] == ["cp", "-r", f"{working}/."]

    def test_installs_mbr_and_syslinux(self, build_context, fake_runner, working, output):
        """Test dd of the first 440 bytes and the syslinux --install invocation."""
        _package(build_context, working, output)

        assert fake_runner.ran("dd") == [
            [
                "dd",
                "bs=440",
                "count=1",
                "conv=notrunc",
                f"if={working / 'syslinux' / 'mbr.bin'}",
                "of=/dev/loop0",
            ]
        ]
        assert fake_runner.ran("syslinux") == [
            [
                str(working / "syslinux" / "syslinux"),
                "--install",
                "/dev/mapper/loop0p2",
                "--directory",
                "/syslinux",
            ]
        ]
        # syslinux installs into the still-mounted partition
        assert fake_runner.index("syslinux") < fake_runner.index("umount")

    def test_teardown_order(self, build_context, fake_runner, working, output):
        """Test unmount, then kpartx -d, then losetup -d."""
        _package(build_context, working, output)

        umount = fake_runner.index("umount")
        unmap = fake_runner.index("kpartx -d")
        detach = fake_runner.index("losetup -d")
        assert umount < unmap < detach
        assert fake_runner.leaked() == {}

    def test_scratch_released(self, build_context, fake_runner, working, output, scratch_dir):
        _package(build_context, working, output)

        assert len(build_context.registry) == 0
        assert list(scratch_dir.iterdir()) == []

    def test_too_small(self, build_context, fake_runner, working, output):
        """Test that a tiny tree fails before any device is allocated."""
        fake_runner.du_kb[str(working)] = 1000

        with pytest.raises(InsufficientSpaceError):
            _package(build_context, working, output)

        assert [cmd[0] for cmd in fake_runner.commands] == ["du"]


class TestPackageFailures:
    """Tests for DiskPartitioner.package() error paths."""

    @pytest.mark.parametrize(
        "failing,error",
        [
            ("parted", PartitionError),
            ("kpartx -a", PartitionError),
            ("mkfs.msdos", FormatError),
            ("mount", MountError),
            ("dd", BootloaderError),
            ("syslinux", BootloaderError),
        ],
    )
    def test_failure_leaves_nothing_attached(
        self, build_context, fake_runner, working, output, scratch_dir, failing, error
    ):
        fake_runner.fail_on(failing)

        with pytest.raises(error):
            _package(build_context, working, output)

        assert fake_runner.leaked() == {}
        assert len(build_context.registry) == 0
        assert list(scratch_dir.iterdir()) == []

    def test_missing_mbr_binary(self, build_context, fake_runner, working, output):
        (working / "syslinux" / MBR_BINARY).unlink()

        with pytest.raises(BootloaderError, match="Boot sector binary not found"):
            _package(build_context, working, output)

        assert fake_runner.ran("dd") == []
        assert fake_runner.leaked() == {}

    def test_unmap_failure_still_detaches(self, build_context, fake_runner, working, output):
        """Test that a failing kpartx -d is reported and the loop device still detached."""
        fake_runner.fail_on("kpartx -d", stderr="device-mapper: remove ioctl failed: busy")

        _package(build_context, working, output)

        failures = build_context.registry.teardown_failures
        assert [failure.obligation.resource for failure in failures] == ["/dev/loop0"]
        assert "/dev/loop0" not in fake_runner.loops

    def test_busy_mount_keeps_boot_contents(
        self, build_context, fake_runner, fake_mount_table, working, output
    ):
        """Test that a boot partition that stays mounted is not emptied by teardown."""
        mount_dirs = []

        def populate(command):
            target = Path(command[-1])
            (target / "LiveOS").mkdir()
            (target / "LiveOS" / "squashfs.img").write_bytes(b"hsqs")
            mount_dirs.append(target)

        fake_runner.hooks["cp"] = populate
        fake_runner.fail_on("umount", stderr="umount: target is busy.")

        _package(build_context, working, output)

        mount_dir = mount_dirs[0]
        assert str(mount_dir) in fake_runner.mounts
        assert (mount_dir / "LiveOS" / "squashfs.img").read_bytes() == b"hsqs"
        failed = {
            (failure.obligation.kind, failure.obligation.resource)
            for failure in build_context.registry.teardown_failures
        }
        assert failed == {
            (ResourceKind.MOUNT, str(mount_dir)),
            (ResourceKind.FILE, str(mount_dir)),
        }
        assert "/dev/loop0" not in fake_runner.loops
