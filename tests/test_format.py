"""Tests for filesystem creation."""

import pytest

from docker2usb.storage.exceptions import FormatError
from docker2usb.storage.format import build_mkfs_command, make_filesystem


class TestBuildMkfsCommand:
    """Tests for build_mkfs_command()."""

    def test_ext3(self):
        assert build_mkfs_command("/dev/loop0", "ext3") == ["mkfs.ext3", "-F", "-q", "/dev/loop0"]

    def test_ext4_with_label(self):
        assert build_mkfs_command("/dev/loop0", "ext4", label="root") == [
            "mkfs.ext4",
            "-F",
            "-q",
            "-L",
            "root",
            "/dev/loop0",
        ]

    def test_fat_with_label(self):
        """Test that FAT uses mkfs.msdos with -n for the volume label."""
        assert build_mkfs_command("/dev/mapper/loop1p2", "msdos", label="ISOIMAGE") == [
            "mkfs.msdos",
            "-n",
            "ISOIMAGE",
            "/dev/mapper/loop1p2",
        ]

    def test_vfat_alias(self):
        assert build_mkfs_command("/dev/mapper/loop1p2", "VFAT")[0] == "mkfs.msdos"

    def test_unsupported(self):
        with pytest.raises(FormatError, match="unsupported filesystem type"):
            build_mkfs_command("/dev/loop0", "btrfs")


class TestMakeFilesystem:
    """Tests for make_filesystem()."""

    def test_runs_mkfs(self, fake_runner):
        make_filesystem(fake_runner, "/dev/loop0", "ext3")

        assert fake_runner.commands == [["mkfs.ext3", "-F", "-q", "/dev/loop0"]]

    def test_failure_wrapped(self, fake_runner):
        """Test that a failing mkfs surfaces as FormatError."""
        fake_runner.fail_on("mkfs.msdos", stderr="mkfs.msdos: unable to open /dev/mapper/loop1p2")

        with pytest.raises(FormatError, match="unable to open") as exc_info:
            make_filesystem(fake_runner, "/dev/mapper/loop1p2", "msdos", label="LIVE")

        assert exc_info.value.device == "/dev/mapper/loop1p2"
        assert exc_info.value.filesystem == "msdos"
