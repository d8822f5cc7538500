"""
Passthrough capture of piped stdin or a child command's output.

Everything read is echoed to the console as it arrives and accumulated in a
:class:`CaptureBuffer` for the dependency correlator.
"""

from __future__ import annotations

import subprocess
import sys
import threading
from typing import BinaryIO, List, Optional, TextIO

from .core import CommandError, status, warn

DEFAULT_COMMAND = "cargo test"


class CaptureBuffer:
    """Thread-safe accumulation of captured text."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._parts: List[str] = []

    def append(self, text: str) -> None:
        with self._lock:
            self._parts.append(text)

    def getvalue(self) -> str:
        with self._lock:
            return "".join(self._parts)

    def __bool__(self) -> bool:
        with self._lock:
            return any(self._parts)


def _relay(
    source: BinaryIO, sink: TextIO, buffer: CaptureBuffer, label: str
) -> Optional[OSError]:
    """
    Copy *source* to *sink* line by line, appending each line to *buffer*.

    *source* is always drained to EOF. The first error writing to *sink*
    stops the echo and is returned.
    """
    warned = False
    sink_error: Optional[OSError] = None
    for raw in iter(source.readline, b""):
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            if not warned:
                warn(f"{label} contained non-UTF-8 bytes; they were replaced")
                warned = True
            text = raw.decode("utf-8", errors="replace")
        buffer.append(text)
        if sink_error is None:
            try:
                sink.write(text)
                sink.flush()
            except OSError as e:
                sink_error = e
    return sink_error


def passthrough_stdin(
    buffer: CaptureBuffer,
    source: Optional[BinaryIO] = None,
    echo: Optional[TextIO] = None,
) -> None:
    """Echo piped stdin to the console while capturing it."""
    source = source if source is not None else sys.stdin.buffer
    echo = echo if echo is not None else sys.stdout
    try:
        sink_error = _relay(source, echo, buffer, "stdin")
    except OSError as e:
        warn(f"Error reading stdin: {e}")
        return
    if sink_error is not None:
        warn(f"Could not echo stdin: {sink_error}")


def run_command(
    command: str,
    buffer: CaptureBuffer,
    cwd: Optional[str] = None,
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
    verbose: bool = False,
) -> int:
    """
    Run *command* through the shell and relay its output.

    stdout and stderr are drained by two threads into the same *buffer*, so
    the relative order of lines from the two streams is best effort only.
    A non-zero exit status is reported as a warning and returned. Failing to
    relay either stream raises :class:`CommandError` once the command has
    finished.
    """
    stdout = stdout if stdout is not None else sys.stdout
    stderr = stderr if stderr is not None else sys.stderr

    status(f"Running {command!r}", verbose)
    try:
        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        raise CommandError(f"Failed to run command '{command}': {e}")

    failures: List[str] = []

    def _drain(source: BinaryIO, sink: TextIO, label: str) -> None:
        try:
            sink_error = _relay(source, sink, buffer, label)
        except OSError as e:
            failures.append(f"{label} could not be read: {e}")
            return
        if sink_error is not None:
            failures.append(f"{label} could not be echoed: {sink_error}")

    readers = [
        threading.Thread(
            target=_drain,
            args=(proc.stdout, stdout, "Command stdout"),
            daemon=True,
        ),
        threading.Thread(
            target=_drain,
            args=(proc.stderr, stderr, "Command stderr"),
            daemon=True,
        ),
    ]
    for reader in readers:
        reader.start()
    for reader in readers:
        reader.join()
    proc.stdout.close()
    proc.stderr.close()

    returncode = proc.wait()
    if failures:
        raise CommandError("; ".join(failures))
    if returncode != 0:
        warn(f"Command '{command}' exited with status {returncode}")
    return returncode
