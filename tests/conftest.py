"""
Pytest configuration and shared fixtures for docker2usb tests.

The image builders only touch block devices through a ``ToolRunner``, so the
tests swap in ``FakeRunner``: it records every command line and simulates
just enough kernel state (attached loop devices, mounts, kpartx mappings,
running containers) to tell whether a build leaked anything.
"""

import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from docker2usb.app.context import BuildContext, BuildOptions
from docker2usb.config.settings import DEFAULT_SYSLINUX_VERSION
from docker2usb.image.bootloader import SYSLINUX_ASSETS
from docker2usb.storage.cleanup import CleanupRegistry
from docker2usb.storage.exceptions import CommandFailedError


# ==============================================================================
# Fake Tool Runner
# ==============================================================================


class FakeRunner:
    """Drop-in ToolRunner replacement backed by an in-memory machine model."""

    def __init__(self) -> None:
        self.commands: List[List[str]] = []
        self.cancel_check: Optional[Callable[[], None]] = None
        self.loops: Dict[str, str] = {}
        self.mounts: Dict[str, str] = {}
        self.mappings: set = set()
        self.containers: set = set()
        self.du_kb: Dict[str, int] = {}
        self.default_du_kb = 100 * 1024
        # Files "extracted" by any tar invocation into its -C directory.
        self.tar_files: Dict[str, str] = {}
        self.hooks: Dict[str, Callable[[List[str]], None]] = {}
        self._failures: List[Dict[str, Any]] = []
        self._next_loop = 0
        self._next_container = 0

    # -- test helpers ---------------------------------------------------------

    def fail_on(self, prefix: str, stderr: str = "simulated failure", after: int = 0) -> None:
        """Fail the next command starting with ``prefix``, skipping ``after`` matches."""
        self._failures.append({"prefix": prefix.split(), "stderr": stderr, "skip": after})

    def ran(self, prefix: str) -> List[List[str]]:
        """Recorded commands whose (basename-normalised) argv starts with ``prefix``."""
        tokens = prefix.split()
        return [cmd for cmd in self.commands if self._normalise(cmd)[: len(tokens)] == tokens]

    def index(self, prefix: str) -> int:
        """Position of the first recorded command starting with ``prefix``."""
        tokens = prefix.split()
        for position, cmd in enumerate(self.commands):
            if self._normalise(cmd)[: len(tokens)] == tokens:
                return position
        raise AssertionError(f"{prefix!r} never ran; commands: {self.commands}")

    def leaked(self) -> Dict[str, Any]:
        """Simulated kernel resources still held, keyed by kind. Empty when clean."""
        state = {
            "loops": dict(self.loops),
            "mounts": dict(self.mounts),
            "mappings": sorted(self.mappings),
            "containers": sorted(self.containers),
        }
        return {kind: held for kind, held in state.items() if held}

    # -- ToolRunner interface -------------------------------------------------

    def run(self, command, *, check=True, cancellable=True):
        command = [str(part) for part in command]
        if cancellable and self.cancel_check is not None:
            self.cancel_check()
        self.commands.append(command)
        hook = self.hooks.get(Path(command[0]).name)
        if hook is not None:
            hook(command)
        stderr = self._injected_failure(command)
        if stderr is not None:
            returncode, stdout = 1, ""
        else:
            returncode, stdout, stderr = self._simulate(command)
        if returncode != 0 and check:
            raise CommandFailedError(command, returncode, stderr, stdout)
        return subprocess.CompletedProcess(command, returncode, stdout, stderr)

    def pipe(self, producer, consumer, *, cancellable=True) -> None:
        producer = [str(part) for part in producer]
        consumer = [str(part) for part in consumer]
        if cancellable and self.cancel_check is not None:
            self.cancel_check()
        self.commands.append(producer + ["|"] + consumer)
        for command in (producer, consumer):
            stderr = self._injected_failure(command)
            if stderr is not None:
                raise CommandFailedError(command, 1, stderr)
        self._simulate(consumer)

    # -- simulation -----------------------------------------------------------

    @staticmethod
    def _normalise(command: List[str]) -> List[str]:
        return [Path(command[0]).name] + command[1:]

    def _injected_failure(self, command: List[str]) -> Optional[str]:
        normalised = self._normalise(command)
        for failure in self._failures:
            prefix = failure["prefix"]
            if normalised[: len(prefix)] != prefix:
                continue
            if failure["skip"]:
                failure["skip"] -= 1
                continue
            self._failures.remove(failure)
            return failure["stderr"]
        return None

    def _simulate(self, command: List[str]):
        tool = Path(command[0]).name
        args = command[1:]

        if tool == "du":
            path = args[-1]
            return 0, f"{self.du_kb.get(path, self.default_du_kb)}\t{path}\n", ""

        if tool == "losetup":
            if args[:2] == ["--show", "-f"]:
                device = f"/dev/loop{self._next_loop}"
                self._next_loop += 1
                self.loops[device] = args[2]
                return 0, f"{device}\n", ""
            if args[0] == "-d":
                if self.loops.pop(args[1], None) is None:
                    return 1, "", f"losetup: {args[1]}: detach failed: No such device"
                return 0, "", ""
            if args[0] in self.loops:
                return 0, f"{args[0]}: [0042]:12 ({self.loops[args[0]]})\n", ""
            return 1, "", f"losetup: {args[0]}: No such device or address"

        if tool == "kpartx":
            if args[0] == "-a":
                self.mappings.add(args[-1])
            elif args[0] == "-d":
                self.mappings.discard(args[-1])
            return 0, "", ""

        if tool == "mount":
            self.mounts[args[1]] = args[0]
            return 0, "", ""

        if tool == "mountpoint":
            return (0 if args[-1] in self.mounts else 1), "", ""

        if tool == "umount":
            if self.mounts.pop(args[0], None) is None:
                return 32, "", f"umount: {args[0]}: not mounted."
            return 0, "", ""

        if tool == "tar" and "-C" in args:
            target = Path(args[args.index("-C") + 1])
            for relative, content in self.tar_files.items():
                path = target / relative
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(content)
            return 0, "", ""

        if tool == "docker":
            if args[0] == "run":
                container_id = f"{self._next_container:064x}"
                self._next_container += 1
                self.containers.add(container_id)
                return 0, f"{container_id}\n", ""
            if args[:2] == ["rm", "-f"]:
                if args[2] not in self.containers:
                    return 1, "", f"Error: No such container: {args[2]}"
                self.containers.discard(args[2])
                return 0, "", ""

        if tool == "mksquashfs":
            Path(args[1]).write_bytes(b"hsqs")
            return 0, "", ""

        return 0, "", ""


class RecordingTeardown:
    """Teardown callable that records resources and fails for selected ones."""

    def __init__(self) -> None:
        self.released: List[str] = []
        self.failing: Dict[str, Exception] = {}

    def __call__(self, obligation) -> None:
        self.released.append(obligation.resource)
        error = self.failing.get(obligation.resource)
        if error is not None:
            raise error


# ==============================================================================
# Runner & Registry Fixtures
# ==============================================================================


SYSLINUX_CONFIG = (
    "DEFAULT live\n"
    "LABEL live\n"
    "  KERNEL /syslinux/vmlinuz\n"
    "  APPEND initrd=/syslinux/initrd.img root=live:LABEL=$ROOT_LABEL rd.live.image\n"
)


@pytest.fixture
def fake_runner() -> FakeRunner:
    """
    Fixture providing a FakeRunner whose tar "extracts" a minimal bootable rootfs.

    Returns:
        FakeRunner with ``syslinux/syslinux.cfg`` and ``etc/os-release`` staged.
    """
    runner = FakeRunner()
    runner.tar_files = {
        "syslinux/syslinux.cfg": SYSLINUX_CONFIG,
        "syslinux/vmlinuz": "kernel",
        "etc/os-release": "ID=test\n",
    }
    return runner


@pytest.fixture
def fake_mount_table(fake_runner, monkeypatch) -> None:
    """Make os.path.ismount report the FakeRunner's simulated mounts."""
    monkeypatch.setattr(
        "docker2usb.storage.handlers.os.path.ismount",
        lambda path: str(path) in fake_runner.mounts,
    )


@pytest.fixture
def teardown_recorder() -> RecordingTeardown:
    return RecordingTeardown()


@pytest.fixture
def recording_registry(teardown_recorder) -> CleanupRegistry:
    """Fixture providing a registry whose teardowns are only recorded."""
    return CleanupRegistry(teardown_recorder)


# ==============================================================================
# File System Fixtures
# ==============================================================================


@pytest.fixture
def scratch_dir(tmp_path) -> Path:
    """Fixture providing the temp_dir under which builds create scratch paths."""
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture
def syslinux_cache(tmp_path) -> Path:
    """
    Fixture providing a syslinux cache with an already-extracted release.

    Returns:
        Cache directory containing ``syslinux-<version>/bios/...`` assets.
    """
    cache = tmp_path / "cache"
    release = cache / f"syslinux-{DEFAULT_SYSLINUX_VERSION}"
    for asset in SYSLINUX_ASSETS:
        path = release / asset
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\x00" * 16)
    return cache


@pytest.fixture
def rootfs_archive(tmp_path) -> Path:
    archive = tmp_path / "rootfs.tar.xz"
    archive.write_bytes(b"not really xz")
    return archive


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    """Fixture providing a temporary settings file path."""
    settings_dir = tmp_path / ".config" / "docker2usb"
    settings_dir.mkdir(parents=True, exist_ok=True)
    return settings_dir / "settings.json"


# ==============================================================================
# Build Context Fixtures
# ==============================================================================


@pytest.fixture
def build_options(scratch_dir, syslinux_cache) -> BuildOptions:
    return BuildOptions(temp_dir=scratch_dir, syslinux_cache_dir=syslinux_cache)


@pytest.fixture
def build_context(build_options, fake_runner) -> BuildContext:
    """Fixture providing a BuildContext wired to the fake runner."""
    return BuildContext(options=build_options, runner=fake_runner)
