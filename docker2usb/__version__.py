"""Version information for docker2usb."""

__version__ = "0.3.0"
