from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

    from docker2usb.domain.models import CleanupObligation, SizePlan

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "DOCKER2USB_LOG_DIR",
        Path.home() / ".local" / "state" / "docker2usb" / "logs",
    )
)

# Note: TRACE level already exists in loguru at level 5 (below DEBUG which is 10)
# External tool output is logged there.


def _should_log_command_output(record) -> bool:
    """Filter raw stdout/stderr of external tools - only show in TRACE mode."""
    tags = record["extra"].get("tags", [])

    # Always log errors
    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "output" in tags:
        return record["level"].no <= logger.level("TRACE").no

    return True


def _should_log_bookkeeping(record) -> bool:
    """Filter per-obligation registry bookkeeping - noisy on large builds."""
    message = record["message"].lower()
    tags = record["extra"].get("tags", [])

    if "cleanup" in tags and message.startswith("registered"):
        return record["level"].no <= logger.level("DEBUG").no

    return True


def _combined_filter(record) -> bool:
    """Combined filter for all log suppression rules."""
    return _should_log_command_output(record) and _should_log_bookkeeping(record)


FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "{extra[source]: <10} | "
    "{extra[job_id]: <18} | "
    "{message}"
)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup logging for one build run.

    Logging Tiers:
    - ERROR: Build failures
    - WARNING: Teardown that left resources behind
    - SUCCESS/INFO: Pipeline steps, allocated devices, final image
    - DEBUG: Every external command line, registry bookkeeping
    - TRACE: Raw stdout/stderr of external tools

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ (or TRACE+ with --trace) when enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/docker2usb/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        verbose_level = "TRACE"
    elif debug:
        verbose_level = "DEBUG"
    else:
        verbose_level = None

    # Console (stderr) - user-facing, filtered
    logger.add(
        sys.stderr,
        level=verbose_level or "INFO",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=FILE_FORMAT,
    )

    if verbose_level is not None:
        logger.add(
            log_dir / "debug.log",
            level=verbose_level,
            rotation="50 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=FILE_FORMAT,
        )

    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["disk", "storage"])
        source: Source component (e.g., "disk", "squashfs", "cleanup")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Automatically logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "extract", "squashfs", "disk")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("squashfs", rootfs="/tmp/work/rootfs") as log:
            log.debug("Attaching loop device")
            # ... build image ...
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    # Bind context for all logs in this block
    with logger.contextualize(
        job_id=job_id,
        operation=operation,
        **details,
    ):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        # Log operation start
        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source, tags, and context for the domain.
    """

    @staticmethod
    def for_cleanup() -> Logger:
        """Logger for the cleanup registry and teardown handlers."""
        return logger.bind(source="cleanup", tags=["cleanup", "storage"])

    @staticmethod
    def for_command() -> Logger:
        """Logger for external tool invocations."""
        return logger.bind(source="command", tags=["command"])

    @staticmethod
    def for_storage() -> Logger:
        """Logger for loop devices, mounts, filesystems and partitions."""
        return logger.bind(source="storage", tags=["storage"])

    @staticmethod
    def for_rootfs(job_id: str | None = None) -> Logger:
        """Logger for root filesystem extraction."""
        if job_id is None:
            job_id = f"rootfs-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="rootfs", tags=["rootfs"])

    @staticmethod
    def for_squashfs(job_id: str | None = None) -> Logger:
        """Logger for squashed image assembly."""
        if job_id is None:
            job_id = f"squashfs-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="squashfs", tags=["squashfs", "storage"])

    @staticmethod
    def for_bootloader() -> Logger:
        """Logger for syslinux provisioning."""
        return logger.bind(source="bootloader", tags=["bootloader"])

    @staticmethod
    def for_disk(job_id: str | None = None) -> Logger:
        """Logger for disk image partitioning and packaging."""
        if job_id is None:
            job_id = f"disk-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="disk", tags=["disk", "storage"])

    @staticmethod
    def for_pipeline(job_id: str | None = None) -> Logger:
        """Logger for the top-level build run."""
        if job_id is None:
            job_id = f"build-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="pipeline", tags=["pipeline"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, shutdown, config)."""
        return logger.bind(source="system", tags=["system"])


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Provides type-safe methods for logging common events with
    consistent structure and fields.
    """

    @staticmethod
    def log_obligation_registered(log: Logger, obligation: CleanupObligation) -> None:
        """Log a new cleanup obligation."""
        log.debug(
            f"Registered {obligation.describe()}",
            event_type="obligation_registered",
            scope=obligation.scope.path,
            kind=obligation.kind.value,
            sequence=obligation.sequence,
            resource=obligation.resource,
        )

    @staticmethod
    def log_teardown_failed(
        log: Logger, obligation: CleanupObligation, error: str
    ) -> None:
        """Log a teardown action that could not release its resource."""
        log.warning(
            f"Failed to clean up {obligation.kind.value} {obligation.resource}: {error}",
            event_type="teardown_failed",
            scope=obligation.scope.path,
            kind=obligation.kind.value,
            sequence=obligation.sequence,
            resource=obligation.resource,
        )

    @staticmethod
    def log_size_plan(log: Logger, target: str, plan: SizePlan) -> None:
        """Log a computed image size."""
        log.info(
            f"Sized {target}: {plan.measured_kb} KiB measured, "
            f"+{plan.buffer_percent}% -> {plan.target_kb} KiB ({plan.target_mb} MiB)",
            event_type="size_plan",
            measured_kb=plan.measured_kb,
            buffer_percent=plan.buffer_percent,
            target_kb=plan.target_kb,
        )
