"""Build pipeline driver.

Sequences the image builders over one temporary working directory:

    extract rootfs -> stage syslinux -> squash rootfs -> raw disk (or ISO)

The driver owns the run's cleanup registry and is the only place that calls
``flush_all``. It does so exactly once, in a ``finally`` block around the
whole run, so no loop device, mapping or mount outlives the process however
far the build got.

Termination signals (SIGINT, SIGTERM, SIGHUP) do not interrupt the external
command that is running. They mark the run as cancelled; the runner then
refuses to start the next command and the normal unwind path tears down.
"""

from __future__ import annotations

import signal
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from docker2usb.app.context import BuildContext
from docker2usb.domain.models import (
    BuildResult,
    OutputFormat,
    ResourceKind,
    RootfsSource,
    ScopeToken,
)
from docker2usb.image.bootloader import BootloaderInstaller
from docker2usb.image.disk import DiskPartitioner
from docker2usb.image.iso import package_isohybrid
from docker2usb.image.rootfs import RootfsProvisioner
from docker2usb.image.squashfs import SquashedImageBuilder
from docker2usb.logging import LoggerFactory, operation_context
from docker2usb.storage.exceptions import BuildError, TempPathError
from docker2usb.storage.handlers import remove_path


log = LoggerFactory.for_pipeline()

TRAPPED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)
ROOTFS_DIR = "rootfs"


@contextmanager
def trap_signals(context: BuildContext) -> Generator[None, None, None]:
    """Turn termination signals into a cancellation request for the run."""
    if threading.current_thread() is not threading.main_thread():
        # signal.signal() only works in the main thread.
        yield
        return

    def _request_cancel(signum, frame) -> None:
        name = signal.Signals(signum).name
        if context.cancel_reason is None:
            log.warning(f"Received {name}, stopping after the current command")
        context.request_cancel(name)

    previous = {sig: signal.signal(sig, _request_cancel) for sig in TRAPPED_SIGNALS}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


class BuildPipeline:
    """Runs one build from a rootfs source to a bootable image file."""

    def __init__(self, context: BuildContext):
        self.context = context
        self.registry = context.registry
        self.options = context.options

    def run(self, source: RootfsSource, output: Path) -> BuildResult:
        """Build ``output`` from ``source``.

        Build errors are reported in the result rather than raised. Any other
        exception propagates after teardown.
        """
        result = BuildResult(output=output)
        run_scope = self.registry.open_scope("build")
        log.info(f"Building {output} from {source.reference}")

        with trap_signals(self.context):
            try:
                self._run_steps(source, output, run_scope)
                result.succeeded = True
            except BuildError as error:
                result.error = str(error)
                log.error(f"Build failed: {error}")
            finally:
                self.registry.flush_all()

        result.teardown_failures = list(self.registry.teardown_failures)
        if self.context.cancel_reason is not None:
            result.cancelled = True
            result.succeeded = False
            result.error = result.error or f"Build cancelled by {self.context.cancel_reason}"
        if result.succeeded and result.has_warnings:
            log.warning(
                f"Build succeeded but {len(result.teardown_failures)} resource(s) "
                "could not be released cleanly"
            )
        elif result.succeeded:
            log.success(f"Image written to {output}")
        return result

    def _run_steps(self, source: RootfsSource, output: Path, run_scope: ScopeToken) -> None:
        try:
            working_path = Path(tempfile.mkdtemp(prefix="docker2usb-", dir=self.options.temp_dir))
        except OSError as error:
            base_dir = self.options.temp_dir or tempfile.gettempdir()
            raise TempPathError(str(base_dir), str(error)) from error
        working = self.registry.register(run_scope, ResourceKind.FILE, str(working_path))
        if self.options.keep_working_dir:
            self.registry.withdraw(run_scope, working.kind, working.sequence)
            log.info(f"Keeping working directory {working_path}")

        rootfs_path = working_path / ROOTFS_DIR
        label = self.options.label

        with operation_context("extract", source=source.reference):
            RootfsProvisioner(self.context).provision(source, rootfs_path, run_scope)
        self.context.raise_if_cancelled()

        # Boot files are moved out of the rootfs before it is squashed.
        with operation_context("bootloader", version=self.options.syslinux_version):
            BootloaderInstaller(self.context).prepare(rootfs_path, working_path, label, run_scope)
        self.context.raise_if_cancelled()

        with operation_context("squashfs", rootfs=str(rootfs_path)):
            SquashedImageBuilder(self.context).build(rootfs_path, working_path, run_scope)
            remove_path(str(rootfs_path))
        self.context.raise_if_cancelled()

        if self.options.output_format is OutputFormat.ISO:
            with operation_context("iso", output=str(output)):
                package_isohybrid(self.context, working_path, output, label)
        else:
            with operation_context("disk", output=str(output), label=label):
                DiskPartitioner(self.context).package(working_path, output, label, run_scope)


def run_build(context: BuildContext, source: RootfsSource, output: Path) -> BuildResult:
    """Convenience wrapper: build ``output`` from ``source`` with ``context``."""
    return BuildPipeline(context).run(source, output)
