"""ISO-hybrid packaging.

A single xorriso invocation over the working tree. It allocates no kernel
resources, so nothing is registered for cleanup. Less exercised than the raw
disk path; the syslinux assets used are the ones staged in the working tree,
never the host's.
"""

from __future__ import annotations

from pathlib import Path
from typing import List

from docker2usb.app.context import BuildContext
from docker2usb.image.bootloader import BOOT_DIR, ISOHYBRID_MBR_BINARY, ISOLINUX_BINARY
from docker2usb.logging import LoggerFactory
from docker2usb.storage.exceptions import BootloaderError, CommandFailedError


log = LoggerFactory.for_disk()

BOOT_CATALOG = "boot.cat"


def build_xorriso_command(working_path: Path, output: Path, label: str) -> List[str]:
    return [
        "xorriso",
        "-as",
        "mkisofs",
        "-o",
        str(output),
        "-volid",
        label,
        "-isohybrid-mbr",
        str(working_path / BOOT_DIR / ISOHYBRID_MBR_BINARY),
        "-c",
        f"{BOOT_DIR}/{BOOT_CATALOG}",
        "-b",
        f"{BOOT_DIR}/{ISOLINUX_BINARY}",
        "-no-emul-boot",
        "-boot-load-size",
        "4",
        "-boot-info-table",
        str(working_path),
    ]


def package_isohybrid(context: BuildContext, working_path: Path, output: Path, label: str) -> Path:
    """Write an isohybrid image of ``working_path`` to ``output``."""
    mbr = working_path / BOOT_DIR / ISOHYBRID_MBR_BINARY
    if not mbr.is_file():
        raise BootloaderError(f"Isohybrid boot sector not found: {mbr}", str(mbr))
    try:
        context.runner.run(build_xorriso_command(working_path, output, label))
    except CommandFailedError as error:
        raise BootloaderError(
            f"xorriso failed: {error.stderr.strip() or error}", str(output)
        ) from error
    log.info(f"ISO image ready: {output}")
    return output
