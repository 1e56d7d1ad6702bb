import argparse
import os
import sys
from pathlib import Path

from docker2usb.__version__ import __version__
from docker2usb.app.context import BuildContext, BuildOptions
from docker2usb.domain.models import OutputFormat, RootfsSource
from docker2usb.image.pipeline import run_build
from docker2usb.logging import LoggerFactory, setup_logging


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docker2usb",
        description="Build a bootable USB disk image from a container image or rootfs archive",
    )
    parser.add_argument(
        "input",
        help="rootfs archive (anything tar can extract) or docker://<image>",
    )
    parser.add_argument("output", type=Path, help="image file to write")
    parser.add_argument("-l", "--label", help="volume label (default: ISOIMAGE)")
    parser.add_argument(
        "-f",
        "--format",
        dest="output_format",
        choices=[fmt.value for fmt in OutputFormat],
        help="raw partitioned disk (default) or isohybrid",
    )
    parser.add_argument("--syslinux-version", help="syslinux release to install")
    parser.add_argument(
        "--keep-working-dir",
        action="store_true",
        help="leave the temporary working tree in place for inspection",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log raw output of every command")
    parser.add_argument("--log-dir", type=Path, help="directory for log files")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    if os.geteuid() != 0:
        log.error("Run as root: loop devices, kpartx and mount need it")
        return EXIT_USAGE

    options = BuildOptions.from_settings(
        label=args.label,
        output_format=OutputFormat(args.output_format) if args.output_format else None,
        syslinux_version=args.syslinux_version,
        keep_working_dir=args.keep_working_dir or None,
    )
    context = BuildContext(options=options)
    result = run_build(context, RootfsSource(args.input), args.output.resolve())

    for failure in result.teardown_failures:
        log.warning(f"Left behind: {failure.obligation.describe()} ({failure.error})")
    if result.cancelled:
        return EXIT_CANCELLED
    if not result.succeeded:
        log.error(result.error or "Build failed")
        return EXIT_FAILED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
