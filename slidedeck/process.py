"""Subprocess runner shared by the yt-dlp, ffmpeg and ffprobe invocations."""

from __future__ import annotations

import codecs
import logging
import os
import re
import shutil
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Sequence

from slidedeck.constants import STDERR_TAIL_BYTES

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]

_LINE_SPLIT = re.compile(r"\r?\n")
_PUMP_JOIN_TIMEOUT = 5.0


class ProcessError(Exception):
    """Raised when an external process fails or cannot be started."""

    def __init__(self, message: str, label: str, returncode: Optional[int] = None,
                 stderr_tail: str = "") -> None:
        super().__init__(message)
        self.label = label
        self.returncode = returncode
        self.stderr_tail = stderr_tail


class ProcessTimeoutError(ProcessError):
    """Raised when an external process exceeded its timeout and was killed."""
    pass


@dataclass
class ProcessResult:
    """Outcome of a successful process run."""

    returncode: int
    stdout: bytes
    stderr_tail: str


class LineReader:
    """Buffer incoming byte chunks and emit complete, non-empty lines.

    The trailing partial line is held until more data arrives or
    :meth:`close` flushes it.
    """

    def __init__(self, on_line: Optional[LineCallback]) -> None:
        self._on_line = on_line
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: bytes | str) -> None:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        lines = _LINE_SPLIT.split(self._buffer)
        self._buffer = lines.pop()
        for line in lines:
            if line:
                self._emit(line)

    def close(self) -> None:
        self._buffer += self._decoder.decode(b"", final=True)
        remainder = self._buffer.strip()
        self._buffer = ""
        if remainder:
            self._emit(remainder)

    def _emit(self, line: str) -> None:
        if self._on_line is not None:
            self._on_line(line)


class _StderrTail:
    """Keep only the last ``limit`` bytes written."""

    def __init__(self, limit: int = STDERR_TAIL_BYTES) -> None:
        self._limit = limit
        self._data = bytearray()

    def write(self, chunk: bytes) -> None:
        self._data.extend(chunk)
        if len(self._data) > self._limit:
            del self._data[: len(self._data) - self._limit]

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace").strip()


def run_process(
    cmd: Sequence[str],
    *,
    timeout: float,
    label: str,
    on_stderr_line: Optional[LineCallback] = None,
    on_stdout_line: Optional[LineCallback] = None,
    capture_stdout: bool = False,
) -> ProcessResult:
    """Run an external command with a hard timeout.

    Stdout and stderr are pumped on background threads so line callbacks
    fire while the process is still running.

    Args:
        cmd: Command and arguments.
        timeout: Seconds before the process is force-killed.
        label: Short tool name used in error messages (e.g. ``"ffmpeg"``).
        on_stderr_line: Called for each complete stderr line.
        on_stdout_line: Called for each complete stdout line.
        capture_stdout: If True, raw stdout bytes are returned in the result.

    Returns:
        ProcessResult with captured stdout (empty unless requested).

    Raises:
        ProcessTimeoutError: If the process exceeded ``timeout``.
        ProcessError: If the process could not start or exited non-zero.
    """
    logger.debug(f"Running {label}: {' '.join(str(part) for part in cmd)}")
    try:
        proc = subprocess.Popen(
            [str(part) for part in cmd],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        raise ProcessError(f"{label} failed to start: {e}", label) from e

    tail = _StderrTail()
    stdout_chunks: list[bytes] = []
    stderr_reader = LineReader(on_stderr_line)
    stdout_reader = LineReader(on_stdout_line) if on_stdout_line else None

    def pump_stderr() -> None:
        for chunk in iter(lambda: proc.stderr.read1(8192), b""):
            tail.write(chunk)
            stderr_reader.feed(chunk)
        stderr_reader.close()

    def pump_stdout() -> None:
        for chunk in iter(lambda: proc.stdout.read1(65536), b""):
            if capture_stdout:
                stdout_chunks.append(chunk)
            if stdout_reader is not None:
                stdout_reader.feed(chunk)
        if stdout_reader is not None:
            stdout_reader.close()

    pumps = [
        threading.Thread(target=pump_stderr, name=f"{label}-stderr", daemon=True),
        threading.Thread(target=pump_stdout, name=f"{label}-stdout", daemon=True),
    ]
    for pump in pumps:
        pump.start()

    try:
        returncode = proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()
        for pump in pumps:
            pump.join(_PUMP_JOIN_TIMEOUT)
        raise ProcessTimeoutError(f"{label} timed out", label, stderr_tail=tail.text())

    for pump in pumps:
        pump.join(_PUMP_JOIN_TIMEOUT)
    for stream in (proc.stdout, proc.stderr):
        if stream is not None:
            stream.close()

    stderr_text = tail.text()
    if returncode != 0:
        suffix = f": {stderr_text}" if stderr_text else ""
        raise ProcessError(
            f"{label} exited with code {returncode}{suffix}",
            label,
            returncode=returncode,
            stderr_tail=stderr_text,
        )

    return ProcessResult(returncode=returncode, stdout=b"".join(stdout_chunks), stderr_tail=stderr_text)


def find_executable(
    binary: str,
    env: Optional[Mapping[str, str]] = None,
    env_key: Optional[str] = None,
) -> Optional[str]:
    """Resolve an executable from an explicit env override or PATH.

    Args:
        binary: Executable name to look up in PATH.
        env: Environment mapping (defaults to ``os.environ``).
        env_key: Variable holding an explicit path or name, e.g. ``FFMPEG_PATH``.

    Returns:
        Absolute path to the executable, or None if not found.
    """
    env = os.environ if env is None else env
    explicit = (env.get(env_key) or "").strip() if env_key else ""
    candidate = explicit or binary
    return shutil.which(candidate, path=env.get("PATH"))
