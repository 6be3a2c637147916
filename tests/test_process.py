"""Tests for the external process runner."""

import sys
from pathlib import Path

import pytest

from slidedeck.process import (
    LineReader,
    ProcessError,
    ProcessTimeoutError,
    find_executable,
    run_process,
)


def test_line_reader_splits_chunks():
    lines = []
    reader = LineReader(lines.append)
    reader.feed(b"hel")
    reader.feed(b"lo\r\nwor")
    reader.feed(b"ld\n\npartial")
    assert lines == ["hello", "world"]

    reader.close()
    assert lines == ["hello", "world", "partial"]


def test_line_reader_handles_split_utf8():
    lines = []
    reader = LineReader(lines.append)
    reader.feed(b"caf\xc3")
    reader.feed(b"\xa9\n")
    assert lines == ["café"]


def test_run_process_streams_lines():
    stderr_lines = []
    result = run_process(
        [sys.executable, "-c", "import sys; print('out'); sys.stderr.write('a\\nb\\n')"],
        timeout=30,
        label="python",
        on_stderr_line=stderr_lines.append,
        capture_stdout=True,
    )
    assert result.returncode == 0
    assert result.stdout.strip() == b"out"
    assert stderr_lines == ["a", "b"]


def test_run_process_nonzero_exit_keeps_stderr_tail():
    with pytest.raises(ProcessError) as excinfo:
        run_process(
            [sys.executable, "-c", "import sys; sys.stderr.write('broken input'); sys.exit(3)"],
            timeout=30,
            label="ffmpeg",
        )
    assert excinfo.value.returncode == 3
    assert excinfo.value.label == "ffmpeg"
    assert "broken input" in excinfo.value.stderr_tail
    assert str(excinfo.value).startswith("ffmpeg exited with code 3")


def test_run_process_timeout():
    with pytest.raises(ProcessTimeoutError, match="sleeper timed out"):
        run_process(
            [sys.executable, "-c", "import time; time.sleep(30)"],
            timeout=0.5,
            label="sleeper",
        )


def test_run_process_missing_binary():
    with pytest.raises(ProcessError, match="failed to start"):
        run_process(["/nonexistent/ffmpeg-binary"], timeout=5, label="ffmpeg")


def test_find_executable(tmp_path: Path):
    binary = tmp_path / "ffmpeg"
    binary.write_text("#!/bin/sh\nexit 0\n")
    binary.chmod(0o755)

    assert find_executable("ffmpeg", env={"PATH": str(tmp_path)}) == str(binary)
    assert find_executable("ffmpeg", env={"PATH": ""}) is None
    assert find_executable(
        "ffmpeg", env={"PATH": "", "FFMPEG_PATH": str(binary)}, env_key="FFMPEG_PATH"
    ) == str(binary)
