"""Custom exceptions for image build operations.

This module defines a hierarchy of exceptions for the build pipeline so that
callers can tell resource allocation failures apart from content failures and
report them with specific messages.

Exception Hierarchy:
    BuildError (base)
        ├── CommandError
        │   ├── ToolNotFoundError
        │   └── CommandFailedError
        ├── ResourceAllocationError
        │   ├── LoopDeviceError
        │   ├── MountError
        │   │   └── UnmountFailedError
        │   ├── PartitionError
        │   ├── FormatError
        │   └── TempPathError
        ├── ContentError
        │   ├── ExtractionError
        │   ├── CopyError
        │   ├── InsufficientSpaceError
        │   └── SquashfsError
        ├── BootloaderError
        ├── BuildCancelled
        └── UnknownResourceKindError

Usage:
    from docker2usb.storage.exceptions import LoopDeviceError

    if not loop_device:
        raise LoopDeviceError(image_path, "losetup returned no device")
"""

from __future__ import annotations

from typing import Sequence


class BuildError(Exception):
    """Base exception for all build operations."""



class CommandError(BuildError):
    """Base exception for external tool invocation errors."""



class ToolNotFoundError(CommandError):
    """A required external tool is not installed."""

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"Required tool not found: {tool}")


class CommandFailedError(CommandError):
    """An external tool exited with a non-zero status."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int,
        stderr: str = "",
        stdout: str = "",
    ):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        message = stderr.strip() or stdout.strip() or "Command failed"
        super().__init__(
            f"Command failed ({' '.join(self.command)}) rc={returncode}: {message}"
        )


class ResourceAllocationError(BuildError):
    """Base exception for failures allocating kernel resources."""



class LoopDeviceError(ResourceAllocationError):
    """Failed to attach a file to a loop device."""

    def __init__(self, image_path: str, reason: str):
        self.image_path = image_path
        self.reason = reason
        super().__init__(f"Failed to attach loop device for {image_path}: {reason}")


class MountError(ResourceAllocationError):
    """Failed to mount a block device."""

    def __init__(self, device: str, mountpoint: str, reason: str, action: str = "mount"):
        self.device = device
        self.mountpoint = mountpoint
        self.reason = reason
        target = mountpoint if device == mountpoint else f"{device} on {mountpoint}"
        super().__init__(f"Failed to {action} {target}: {reason}")


class UnmountFailedError(MountError):
    """A mount could not be released before the next step needed it gone."""

    def __init__(self, mountpoint: str, reason: str):
        super().__init__(mountpoint, mountpoint, reason, action="unmount")


class PartitionError(ResourceAllocationError):
    """Failed to write a partition table or map partitions."""

    def __init__(self, device: str, reason: str):
        self.device = device
        self.reason = reason
        super().__init__(f"Partitioning failed on {device}: {reason}")


class FormatError(ResourceAllocationError):
    """Failed to create a filesystem."""

    def __init__(self, device: str, filesystem: str, reason: str):
        self.device = device
        self.filesystem = filesystem
        self.reason = reason
        super().__init__(f"Failed to format {device} as {filesystem}: {reason}")


class TempPathError(ResourceAllocationError):
    """A scratch file or directory could not be created."""

    def __init__(self, base_dir: str, reason: str):
        self.base_dir = base_dir
        self.reason = reason
        super().__init__(f"Failed to create a temporary path in {base_dir}: {reason}")


class ContentError(BuildError):
    """Base exception for failures handling the image content."""



class ExtractionError(ContentError):
    """The root filesystem source could not be extracted."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Failed to extract {source}: {reason}")


class CopyError(ContentError):
    """Copying a tree into a mounted filesystem failed."""

    def __init__(self, source: str, destination: str, reason: str):
        self.source = source
        self.destination = destination
        self.reason = reason
        super().__init__(f"Failed to copy {source} to {destination}: {reason}")


class InsufficientSpaceError(ContentError):
    """A sized image turned out to be too small for its content."""

    def __init__(self, target: str, size_kb: int, reason: str = ""):
        self.target = target
        self.size_kb = size_kb
        self.reason = reason
        msg = f"{target} ({size_kb} KiB) is too small"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class SquashfsError(ContentError):
    """Building the compressed squashfs image failed."""

    def __init__(self, output: str, reason: str):
        self.output = output
        self.reason = reason
        super().__init__(f"Failed to build squashfs image {output}: {reason}")


class BootloaderError(BuildError):
    """Boot assets are missing or boot code could not be installed."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class BuildCancelled(BuildError):
    """The build was interrupted by a termination signal."""

    def __init__(self, signal_name: str):
        self.signal_name = signal_name
        super().__init__(f"Build cancelled by {signal_name}")


class UnknownResourceKindError(BuildError):
    """A cleanup obligation names a resource kind with no teardown handler."""

    def __init__(self, kind: object, resource: str):
        self.kind = kind
        self.resource = resource
        super().__init__(f"Unknown cleanup item type {kind!r} for {resource}")
