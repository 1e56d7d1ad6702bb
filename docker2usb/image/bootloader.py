"""Syslinux provisioning for the working tree.

The kernel command line is distro specific, so the image itself must ship
``/syslinux/syslinux.cfg`` (plus any menu assets) in its root filesystem.
This module moves that directory out of the rootfs into
``<working>/syslinux``, fills in the volume label, and adds the prebuilt
syslinux binaries from an upstream release tarball cached on the host.

The installer and the menu modules must come from the same release, so the
host syslinux is never used.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from string import Template

import aiohttp

from docker2usb.app.context import BuildContext
from docker2usb.domain.models import ResourceKind, ScopeToken
from docker2usb.logging import LoggerFactory
from docker2usb.storage.exceptions import BootloaderError, CommandFailedError, CopyError


log = LoggerFactory.for_bootloader()

BOOT_DIR = "syslinux"
BOOT_CONFIG = "syslinux.cfg"
MBR_BINARY = "mbr.bin"
ISOHYBRID_MBR_BINARY = "isohdpfx.bin"
ISOLINUX_BINARY = "isolinux.bin"
INSTALLER_BINARY = "syslinux"

# Paths inside the extracted release tarball.
SYSLINUX_ASSETS = (
    "bios/linux/syslinux",  # installer binary
    "bios/core/isolinux.bin",  # isolinux bootloader binary
    "bios/mbr/mbr.bin",  # raw disk boot sector
    "bios/mbr/isohdpfx.bin",  # isohybrid boot sector
    "bios/com32/menu/vesamenu.c32",  # graphical menu module
    "bios/com32/menu/menu.c32",  # text menu module
    "bios/com32/lib/libcom32.c32",
    "bios/com32/libutil/libutil.c32",
)

CHUNK_SIZE = 1024 * 1024


def render_boot_config(text: str, label: str) -> str:
    """Substitute ``$ROOT_LABEL`` / ``${ROOT_LABEL}``; other ``$`` text is kept."""
    return Template(text).safe_substitute(ROOT_LABEL=label)


class BootloaderInstaller:
    """Places syslinux assets under ``<working>/syslinux``."""

    def __init__(self, context: BuildContext):
        self.context = context
        self.runner = context.runner
        self.registry = context.registry
        self.options = context.options

    @property
    def release_name(self) -> str:
        return f"syslinux-{self.options.syslinux_version}"

    @property
    def release_dir(self) -> Path:
        return self.options.syslinux_cache_dir / self.release_name

    @property
    def tarball_url(self) -> str:
        return f"{self.options.syslinux_mirror.rstrip('/')}/{self.release_name}.tar.xz"

    def prepare(
        self, rootfs_path: Path, working_path: Path, label: str, parent: ScopeToken
    ) -> Path:
        """Stage the image's boot config and the syslinux binaries.

        Returns:
            The ``<working>/syslinux`` directory

        Raises:
            BootloaderError: Missing boot config, download or extract failure
            CopyError: The boot files could not be staged
        """
        with self.registry.scope("bootloader", parent=parent) as scope:
            release_dir = self.ensure_release(scope)
        boot_dir = working_path / BOOT_DIR
        self.stage_boot_config(rootfs_path, boot_dir, label)
        for asset in SYSLINUX_ASSETS:
            source = release_dir / asset
            if not source.is_file():
                raise BootloaderError(f"Syslinux release is missing {asset}", str(source))
            try:
                shutil.copy2(source, boot_dir / source.name)
            except OSError as error:
                raise CopyError(str(source), str(boot_dir), str(error)) from error
        log.info(f"Staged {self.release_name} boot assets in {boot_dir}")
        return boot_dir

    def stage_boot_config(self, rootfs_path: Path, boot_dir: Path, label: str) -> None:
        """Move ``<rootfs>/syslinux`` into ``boot_dir`` and render its config."""
        source_dir = rootfs_path / BOOT_DIR
        config = source_dir / BOOT_CONFIG
        if not config.is_file():
            raise BootloaderError(
                f"Root filesystem must provide /{BOOT_DIR}/{BOOT_CONFIG}", str(config)
            )
        try:
            boot_dir.mkdir(parents=True, exist_ok=True)
            shutil.copytree(source_dir, boot_dir, symlinks=True, dirs_exist_ok=True)
            staged_config = boot_dir / BOOT_CONFIG
            staged_config.write_text(
                render_boot_config(config.read_text(encoding="utf-8"), label),
                encoding="utf-8",
            )
            # Boot files live on the FAT partition only, not inside the squashed rootfs.
            shutil.rmtree(source_dir)
        except OSError as error:
            raise CopyError(str(source_dir), str(boot_dir), str(error)) from error

    def ensure_release(self, scope: ScopeToken) -> Path:
        """Return the extracted release directory, downloading it on first use."""
        if self.release_dir.is_dir():
            log.debug(f"Using cached {self.release_dir}")
            return self.release_dir

        cache_dir = self.options.syslinux_cache_dir
        cache_dir.mkdir(parents=True, exist_ok=True)
        tarball = cache_dir / f"{self.release_name}.tar.xz"
        if not tarball.is_file():
            partial = tarball.with_name(tarball.name + ".part")
            download = self.registry.register(scope, ResourceKind.FILE, str(partial))
            asyncio.run(self._download(self.tarball_url, partial))
            partial.rename(tarball)
            self.registry.withdraw(scope, download.kind, download.sequence)

        # A half-extracted release must not be mistaken for a cached one.
        extracted = self.registry.register(scope, ResourceKind.FILE, str(self.release_dir))
        try:
            self.runner.run(["tar", "-xf", str(tarball), "-C", str(cache_dir)])
        except CommandFailedError as error:
            raise BootloaderError(
                f"Failed to extract {tarball.name}: {error.stderr.strip() or error}",
                str(tarball),
            ) from error
        self.registry.withdraw(scope, extracted.kind, extracted.sequence)
        return self.release_dir

    async def _download(self, url: str, destination: Path) -> None:
        log.info(f"Downloading {url}")
        timeout = aiohttp.ClientTimeout(total=self.options.download_timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            try:
                async with session.get(url) as resp:
                    if resp.status != 200:
                        raise BootloaderError(
                            f"Download of {url} failed with status {resp.status}", url
                        )
                    with destination.open("wb") as handle:
                        async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                            handle.write(chunk)
            except aiohttp.ClientError as e:
                log.error(f"Network error downloading {url}: {e}")
                raise BootloaderError(f"Network error: {e}", url) from e
            except asyncio.TimeoutError as e:
                log.error(f"Timed out downloading {url}")
                raise BootloaderError(f"Download of {url} timed out", url) from e
            except OSError as e:
                raise BootloaderError(f"Failed to write {destination}: {e}", str(destination)) from e
