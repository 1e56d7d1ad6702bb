"""Domain model for image build operations.

Type-safe objects shared by the cleanup registry, the storage helpers and the
image builders, so that none of them pass raw strings or tuples around.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


# ==============================================================================
# Cleanup Domain
# ==============================================================================


class ResourceKind(Enum):
    """Kinds of OS resources the build allocates and must release."""

    FILE = "file"
    MOUNT = "mount"
    PARTITION_MAPPING = "kpartx"
    LOOP_DEVICE = "loopdev"
    EPHEMERAL_CONTAINER = "container"


@dataclass(frozen=True)
class ScopeToken:
    """Handle for a unit of work whose obligations are released together.

    Tokens are handed down by the caller. Two tokens with the same name are
    still distinct scopes because ``id`` is unique per registry.
    """

    id: int
    name: str
    parent: ScopeToken | None = None

    @property
    def path(self) -> str:
        """Dotted scope path for log output (e.g., "build.squashfs")."""
        if self.parent is None:
            return self.name
        return f"{self.parent.path}.{self.name}"


@dataclass(frozen=True)
class CleanupObligation:
    """A pending release of one allocated resource."""

    scope: ScopeToken
    kind: ResourceKind
    sequence: int
    resource: str

    def describe(self) -> str:
        return f"{self.kind.value}:{self.resource}"


@dataclass(frozen=True)
class TeardownFailure:
    """A teardown action that failed while its obligation was consumed."""

    obligation: CleanupObligation
    error: str


# ==============================================================================
# Sizing & Layout Domain
# ==============================================================================


@dataclass(frozen=True)
class SizePlan:
    """Target size of an image derived from measured content plus a buffer.

    All sizes are KiB, matching ``du -s -k`` and ``truncate -s <n>K``.
    """

    measured_kb: int
    buffer_percent: int
    target_kb: int

    @property
    def target_mb(self) -> int:
        return self.target_kb // 1024


@dataclass(frozen=True)
class Partition:
    """One entry of an MSDOS partition table, expressed in parted units."""

    number: int
    start: str  # e.g., "64s" or "4MiB"
    end: str  # e.g., "4MiB" or "548MiB"
    fs_type: str | None = None  # parted type hint, e.g., "fat32"
    flags: tuple[str, ...] = ()


@dataclass(frozen=True)
class PartitionLayout:
    """Alignment partition followed by the boot-and-data partition."""

    aligned_end_mb: int
    partitions: tuple[Partition, ...] = field(default_factory=tuple)

    @property
    def boot_partition(self) -> Partition:
        return self.partitions[-1]


# ==============================================================================
# Build Domain
# ==============================================================================


class OutputFormat(Enum):
    """Final image packaging."""

    RAW = "raw"
    ISO = "iso"


CONTAINER_PREFIX = "docker://"


@dataclass(frozen=True)
class RootfsSource:
    """Where the root filesystem content comes from.

    A reference starting with ``docker://`` names a container image which is
    started and exported. Anything else is a tar archive on disk.
    """

    reference: str

    @property
    def is_container(self) -> bool:
        return self.reference.startswith(CONTAINER_PREFIX)

    @property
    def image(self) -> str:
        """Container image name without the ``docker://`` prefix."""
        return self.reference[len(CONTAINER_PREFIX) :]

    @property
    def archive(self) -> Path:
        return Path(self.reference)


@dataclass
class BuildResult:
    """Outcome of one pipeline run."""

    output: Path
    succeeded: bool = False
    cancelled: bool = False
    error: str | None = None
    teardown_failures: list[TeardownFailure] = field(default_factory=list)

    @property
    def has_warnings(self) -> bool:
        return bool(self.teardown_failures)
