"""Domain models for image build operations."""

from __future__ import annotations

from .models import (
    BuildResult,
    CleanupObligation,
    OutputFormat,
    Partition,
    PartitionLayout,
    ResourceKind,
    RootfsSource,
    ScopeToken,
    SizePlan,
    TeardownFailure,
)


__all__ = [
    "BuildResult",
    "CleanupObligation",
    "OutputFormat",
    "Partition",
    "PartitionLayout",
    "ResourceKind",
    "RootfsSource",
    "ScopeToken",
    "SizePlan",
    "TeardownFailure",
]
