"""Root filesystem extraction from archives and container images.

Sources:
    docker://<image>   The image is started detached, its filesystem is
                       streamed out with ``docker export`` into ``tar -x``, and
                       the container is removed again.
    <path>             Any archive ``tar`` can auto-detect (.tar, .tgz,
                       .tar.bz2, .tar.xz, ...).
"""

from __future__ import annotations

from pathlib import Path

from docker2usb.app.context import BuildContext
from docker2usb.domain.models import ResourceKind, RootfsSource, ScopeToken
from docker2usb.logging import LoggerFactory
from docker2usb.storage.exceptions import CommandError, CommandFailedError, ExtractionError


log = LoggerFactory.for_rootfs()


class RootfsProvisioner:
    """Produces a content tree from a rootfs source."""

    def __init__(self, context: BuildContext):
        self.context = context
        self.runner = context.runner
        self.registry = context.registry

    def provision(self, source: RootfsSource, rootfs_path: Path, parent: ScopeToken) -> Path:
        """Extract ``source`` into ``rootfs_path``.

        Raises:
            ExtractionError: Archive missing or corrupt, image unresolvable
        """
        rootfs_path.mkdir(parents=True, exist_ok=True)
        with self.registry.scope("rootfs", parent=parent) as scope:
            if source.is_container:
                self._export_container(source, rootfs_path, scope)
            else:
                self._extract_archive(source, rootfs_path)
        log.info(f"Extracted {source.reference} to {rootfs_path}")
        return rootfs_path

    def _extract_archive(self, source: RootfsSource, rootfs_path: Path) -> None:
        archive = source.archive
        if not archive.is_file():
            raise ExtractionError(source.reference, "archive not found")
        try:
            self.runner.run(["tar", "-xf", str(archive), "-C", str(rootfs_path)])
        except CommandFailedError as error:
            raise ExtractionError(source.reference, error.stderr.strip() or str(error)) from error

    def _export_container(
        self, source: RootfsSource, rootfs_path: Path, scope: ScopeToken
    ) -> None:
        docker = self.context.options.docker_binary
        if not source.image:
            raise ExtractionError(source.reference, "no image name given")
        try:
            result = self.runner.run([docker, "run", "-d", "-t", source.image, "sh"])
        except CommandFailedError as error:
            raise ExtractionError(source.reference, error.stderr.strip() or str(error)) from error
        container_id = result.stdout.strip()
        if not container_id:
            raise ExtractionError(source.reference, "docker run returned no container id")
        self.registry.register(scope, ResourceKind.EPHEMERAL_CONTAINER, container_id)
        log.debug(f"Started container {container_id[:12]} from {source.image}")

        try:
            self.runner.pipe(
                [docker, "export", container_id],
                ["tar", "-x", "-C", str(rootfs_path)],
            )
        except CommandError as error:
            raise ExtractionError(source.reference, str(error)) from error
