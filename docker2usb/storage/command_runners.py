"""External tool execution.

Every block-device, filesystem and archive operation in the build is an
external tool invocation routed through ``ToolRunner``. Builders receive the
runner from the build context, so tests can swap in a recording fake and the
sizing, alignment and cleanup logic stays testable without real devices.
"""

from __future__ import annotations

import subprocess
from typing import Callable, Optional, Sequence

from docker2usb.logging import LoggerFactory
from docker2usb.storage.exceptions import CommandFailedError, ToolNotFoundError


log = LoggerFactory.for_command()
output_log = log.bind(tags=["command", "output"])


class ToolRunner:
    """Runs external tools and raises ``CommandFailedError`` on failure.

    Args:
        cancel_check: Called before each new command is started. It raises
            when the run has been cancelled, so a command that is already
            running is always allowed to finish or fail first.
    """

    def __init__(self, cancel_check: Optional[Callable[[], None]] = None):
        self.cancel_check = cancel_check

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        cancellable: bool = True,
    ) -> subprocess.CompletedProcess:
        """Run a command and capture its output.

        Args:
            command: Argument list (never passed through a shell)
            check: Raise CommandFailedError on a non-zero exit status
            cancellable: Honour a pending cancellation before starting.
                Teardown handlers pass False so cleanup always runs. Such
                commands run in their own session and do not receive
                terminal signals.

        Returns:
            CompletedProcess with text stdout/stderr
        """
        command = [str(part) for part in command]
        if cancellable and self.cancel_check is not None:
            self.cancel_check()
        log.debug(f"Running command: {' '.join(command)}")
        try:
            result = subprocess.run(
                command,
                text=True,
                capture_output=True,
                start_new_session=not cancellable,
            )
        except FileNotFoundError as error:
            raise ToolNotFoundError(command[0]) from error
        if result.stdout:
            output_log.trace(f"stdout: {result.stdout.strip()}")
        if result.stderr:
            output_log.trace(f"stderr: {result.stderr.strip()}")
        if result.returncode != 0:
            log.debug(f"Command exited with code {result.returncode}: {command[0]}")
            if check:
                raise CommandFailedError(
                    command, result.returncode, result.stderr or "", result.stdout or ""
                )
        return result

    def pipe(
        self,
        producer: Sequence[str],
        consumer: Sequence[str],
        *,
        cancellable: bool = True,
    ) -> None:
        """Stream ``producer`` stdout into ``consumer`` stdin (``a | b``).

        Raises CommandFailedError naming whichever side failed, producer first.
        """
        producer = [str(part) for part in producer]
        consumer = [str(part) for part in consumer]
        if cancellable and self.cancel_check is not None:
            self.cancel_check()
        log.debug(f"Running pipeline: {' '.join(producer)} | {' '.join(consumer)}")
        try:
            source = subprocess.Popen(
                producer,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=not cancellable,
            )
        except FileNotFoundError as error:
            raise ToolNotFoundError(producer[0]) from error
        try:
            sink = subprocess.Popen(
                consumer,
                stdin=source.stdout,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=not cancellable,
            )
        except FileNotFoundError as error:
            source.kill()
            source.wait()
            raise ToolNotFoundError(consumer[0]) from error
        # Let the producer see SIGPIPE if the consumer exits early.
        if source.stdout is not None:
            source.stdout.close()
        _, sink_stderr = sink.communicate()
        source_stderr = source.stderr.read() if source.stderr else b""
        source.wait()
        if source.stderr is not None:
            source.stderr.close()
        if source.returncode != 0:
            raise CommandFailedError(
                producer, source.returncode, source_stderr.decode(errors="replace")
            )
        if sink.returncode != 0:
            raise CommandFailedError(
                consumer, sink.returncode, sink_stderr.decode(errors="replace")
            )
