"""Build bootable USB disk images from container images and rootfs archives."""

from .__version__ import __version__


__all__ = ["__version__"]
