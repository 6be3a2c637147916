"""Media acquisition: stream URLs and downloads via yt-dlp or plain HTTP."""

import logging
import os
import re
import shutil
import sys
import tempfile
import time
from pathlib import Path
from typing import Callable, Literal, Mapping, Optional
from urllib.parse import urlparse

import requests
import yt_dlp
from yt_dlp.utils import DownloadError

from slidedeck.constants import YT_DLP_TIMEOUT
from slidedeck.errors import AcquisitionError
from slidedeck.models import SlideSource
from slidedeck.process import ProcessError, find_executable, run_process
from slidedeck.settings import EngineConfig
from slidedeck.source import is_direct_media_url, is_url

logger = logging.getLogger(__name__)

MediaPurpose = Literal["detect", "extract"]
DownloadProgress = Callable[[float, Optional[str]], None]

_TEMP_PREFIX = "slidedeck-"
_PROGRESS_TEMPLATE = (
    "progress:%(progress.downloaded_bytes)s|%(progress.total_bytes)s"
    "|%(progress.total_bytes_estimate)s"
)
_PERCENT_PATTERN = re.compile(r"\b(\d{1,3}(?:\.\d+)?)%")
_ETA_PATTERN = re.compile(r"\bETA\s+(\S+)")
_SPEED_PATTERN = re.compile(r"\bat\s+(\S+)")
_HTTP_CHUNK_BYTES = 1024 * 1024
_UNKNOWN_SIZE_REPORT_BYTES = 2 * 1024 * 1024
_HTTP_CONNECT_TIMEOUT = 10.0
_MODULE_COMMAND = [sys.executable, "-m", "yt_dlp"]


class MediaHandle:
    """Playable media input plus the action that releases it.

    ``cleanup`` runs its action at most once, so it is safe to call from
    both an error path and a ``finally`` block.
    """

    def __init__(
        self,
        input_path: str,
        is_stream: bool,
        on_cleanup: Optional[Callable[[], None]] = None,
    ) -> None:
        self.input_path = input_path
        self.is_stream = is_stream
        self._on_cleanup = on_cleanup

    def cleanup(self) -> None:
        action, self._on_cleanup = self._on_cleanup, None
        if action is not None:
            action()

    def __enter__(self) -> "MediaHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    def __repr__(self) -> str:
        kind = "stream" if self.is_stream else "file"
        return f"MediaHandle({kind}: {self.input_path})"


def _remove_dir(path: Path) -> Callable[[], None]:
    def remove() -> None:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug(f"Removed temp media dir {path}")
    return remove


def format_bytes(size: float) -> str:
    """Format a byte count like ``1.5MB`` (integers from 100 up)."""
    if not size or size <= 0:
        return "0B"
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    unit = units[0]
    for next_unit in units[1:]:
        if value < 1024:
            break
        value /= 1024
        unit = next_unit
    if value >= 100:
        return f"{round(value)}{unit}"
    rounded = round(value, 1)
    label = f"{rounded:.1f}".rstrip("0").rstrip(".")
    return f"{label}{unit}"


def _parse_float(raw: str) -> Optional[float]:
    try:
        return float(raw)
    except ValueError:
        return None


def parse_progress_line(line: str) -> Optional[tuple[float, Optional[str]]]:
    """Parse a yt-dlp progress line into ``(percent, detail)``.

    Understands both the ``progress:downloaded|total|estimate`` template and
    the default ``[download]  42.0% of ... at 1.2MiB/s ETA 00:10`` lines.

    Returns:
        Percent (0-100) and an optional human detail, or None for other lines.
    """
    trimmed = line.strip()
    if trimmed.startswith("progress:"):
        parts = trimmed[len("progress:"):].split("|")
        parts += [""] * (3 - len(parts))
        downloaded = _parse_float(parts[0])
        if downloaded is None or downloaded < 0:
            return None
        total = _parse_float(parts[1])
        if total is None or total <= 0:
            total = _parse_float(parts[2])
        if total is None or total <= 0:
            return None
        percent = max(0, min(100, round(downloaded / total * 100)))
        return float(percent), f"({format_bytes(downloaded)}/{format_bytes(total)})"

    if not trimmed.startswith("[download]"):
        return None
    percent_match = _PERCENT_PATTERN.search(trimmed)
    if not percent_match:
        return None
    percent = float(percent_match.group(1))
    if percent < 0 or percent > 100:
        return None
    detail_parts = []
    speed_match = _SPEED_PATTERN.search(trimmed)
    if speed_match:
        detail_parts.append(f"at {speed_match.group(1)}")
    eta_match = _ETA_PATTERN.search(trimmed)
    if eta_match:
        detail_parts.append(f"ETA {eta_match.group(1)}")
    return percent, " ".join(detail_parts) or None


def resolve_ytdlp_command(
    explicit_path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Optional[list[str]]:
    """Find a yt-dlp command line prefix.

    An explicit path (or ``YT_DLP_PATH``) must resolve; otherwise the
    ``yt-dlp`` executable on PATH is used, falling back to the installed
    ``yt_dlp`` package run as a module.

    Returns:
        Command prefix, or None when an explicit path does not resolve.
    """
    env = os.environ if env is None else env
    explicit = explicit_path or (env.get("YT_DLP_PATH") or "").strip()
    if explicit:
        resolved = shutil.which(explicit, path=env.get("PATH"))
        return [resolved] if resolved else None
    resolved = find_executable("yt-dlp", env=env)
    return [resolved] if resolved else list(_MODULE_COMMAND)


def _stream_url_from_info(info: Optional[dict]) -> Optional[str]:
    if not info:
        return None
    if info.get("url"):
        return info["url"]
    for requested in info.get("requested_formats") or []:
        if requested.get("url"):
            return requested["url"]
    entries = info.get("entries")
    if entries:
        return _stream_url_from_info(next(iter(entries), None))
    return None


def resolve_stream_url(
    url: str,
    format_selector: str,
    timeout: float,
    ytdlp_command: Optional[list[str]] = None,
) -> str:
    """Resolve a directly playable media URL without downloading.

    When a yt-dlp executable was configured it is invoked with ``-g``;
    otherwise the yt_dlp library resolves the format in-process.

    Raises:
        AcquisitionError: If no stream URL could be resolved.
    """
    if ytdlp_command and ytdlp_command != _MODULE_COMMAND:
        try:
            result = run_process(
                [*ytdlp_command, "-f", format_selector, "-g", url],
                timeout=max(timeout, YT_DLP_TIMEOUT),
                label="yt-dlp",
                capture_stdout=True,
            )
        except ProcessError as e:
            raise AcquisitionError(str(e)) from e
        lines = [
            line.strip()
            for line in result.stdout.decode("utf-8", errors="replace").splitlines()
            if line.strip()
        ]
        if not lines:
            raise AcquisitionError("yt-dlp did not return a stream URL.")
        return lines[0]

    ydl_opts = {
        "format": format_selector,
        "quiet": True,
        "no_warnings": True,
        "noplaylist": True,
        "socket_timeout": timeout,
    }
    try:
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            info = ydl.extract_info(url, download=False)
    except DownloadError as e:
        raise AcquisitionError(f"yt-dlp could not resolve a stream URL: {e}") from e

    stream_url = _stream_url_from_info(info)
    if not stream_url:
        raise AcquisitionError("yt-dlp did not return a stream URL.")
    return stream_url


def download_with_ytdlp(
    url: str,
    format_selector: str,
    timeout: float,
    ytdlp_command: list[str],
    on_progress: Optional[DownloadProgress] = None,
) -> MediaHandle:
    """Download a video into a fresh temp directory with yt-dlp.

    Args:
        url: Page or video URL.
        format_selector: yt-dlp ``-f`` selector.
        timeout: Request timeout in seconds (floored at 300s).
        ytdlp_command: Command prefix from :func:`resolve_ytdlp_command`.
        on_progress: Receives ``(percent, detail)`` while downloading.

    Returns:
        Handle whose cleanup removes the temp directory.

    Raises:
        ProcessError: If yt-dlp fails or times out.
        AcquisitionError: If yt-dlp finished but left no media file.
    """
    output_dir = Path(tempfile.mkdtemp(prefix=_TEMP_PREFIX))
    cmd = [
        *ytdlp_command,
        "-f", format_selector,
        "--no-playlist",
        "--no-warnings",
        "--concurrent-fragments", "4",
    ]
    if on_progress is not None:
        cmd += ["--progress", "--newline", "--progress-template", _PROGRESS_TEMPLATE]
    cmd += ["-o", str(output_dir / "video.%(ext)s"), url]

    def handle_line(line: str) -> None:
        parsed = parse_progress_line(line)
        if parsed is not None and on_progress is not None:
            on_progress(*parsed)

    logger.info(f"Downloading video from: {url}")
    try:
        run_process(
            cmd,
            timeout=max(timeout, YT_DLP_TIMEOUT),
            label="yt-dlp",
            on_stderr_line=handle_line,
            on_stdout_line=handle_line,
        )
    except ProcessError:
        shutil.rmtree(output_dir, ignore_errors=True)
        raise

    candidates = [
        entry
        for entry in output_dir.iterdir()
        if entry.is_file() and not entry.name.endswith((".part", ".ytdl"))
    ]
    if not candidates:
        shutil.rmtree(output_dir, ignore_errors=True)
        raise AcquisitionError("yt-dlp completed but no video file was downloaded.")

    media_path = max(candidates, key=lambda entry: entry.stat().st_size)
    logger.info(f"Downloaded video to: {media_path}")
    return MediaHandle(str(media_path), is_stream=False, on_cleanup=_remove_dir(output_dir))


def download_remote_video(
    url: str,
    timeout: float,
    on_progress: Optional[DownloadProgress] = None,
) -> MediaHandle:
    """Stream a direct media URL to a temp file over HTTP.

    ``timeout`` bounds the whole transfer, not just each read.

    Raises:
        AcquisitionError: On connection, HTTP or write errors, or when the
            transfer outlives ``timeout``.
    """
    output_dir = Path(tempfile.mkdtemp(prefix=_TEMP_PREFIX))
    suffix = Path(urlparse(url).path).suffix or ".bin"
    output_path = output_dir / f"video{suffix}"
    deadline = time.monotonic() + timeout

    response = None
    try:
        response = requests.get(url, stream=True, timeout=(_HTTP_CONNECT_TIMEOUT, timeout))
        response.raise_for_status()
        total = int(response.headers.get("content-length") or 0)
        downloaded = 0
        last_percent = -1
        last_reported = 0
        with open(output_path, "wb") as f:
            for chunk in response.iter_content(chunk_size=_HTTP_CHUNK_BYTES):
                if time.monotonic() > deadline:
                    raise AcquisitionError(
                        f"Timed out downloading video after {timeout:g}s "
                        f"({format_bytes(downloaded)} received)."
                    )
                if not chunk:
                    continue
                f.write(chunk)
                downloaded += len(chunk)
                if on_progress is None:
                    continue
                if total > 0:
                    percent = max(0, min(100, round(downloaded / total * 100)))
                    if percent != last_percent:
                        last_percent = percent
                        on_progress(
                            float(percent),
                            f"({format_bytes(downloaded)}/{format_bytes(total)})",
                        )
                elif downloaded - last_reported >= _UNKNOWN_SIZE_REPORT_BYTES:
                    last_reported = downloaded
                    on_progress(0.0, f"({format_bytes(downloaded)})")
        if total > 0 and on_progress is not None:
            on_progress(100.0, f"({format_bytes(downloaded)}/{format_bytes(total)})")
    except AcquisitionError:
        shutil.rmtree(output_dir, ignore_errors=True)
        raise
    except (requests.RequestException, OSError) as e:
        shutil.rmtree(output_dir, ignore_errors=True)
        raise AcquisitionError(
            f"Failed to download video from {url} (check the URL and network): {e}"
        ) from e
    finally:
        if response is not None:
            response.close()

    logger.info(f"Downloaded {format_bytes(downloaded)} to {output_path}")
    return MediaHandle(str(output_path), is_stream=False, on_cleanup=_remove_dir(output_dir))


def needs_ytdlp(source: SlideSource) -> bool:
    """True for sources that only yt-dlp can turn into playable media."""
    if source.kind == "youtube":
        return True
    return is_url(source.url) and not is_direct_media_url(source.url)


def download_media(
    source: SlideSource,
    config: EngineConfig,
    ytdlp_command: Optional[list[str]],
    on_progress: Optional[DownloadProgress] = None,
) -> MediaHandle:
    """Download a source to a local file suitable for detection and extraction."""
    if needs_ytdlp(source):
        if not ytdlp_command:
            raise AcquisitionError("yt-dlp is required to download this source.")
        return download_with_ytdlp(
            source.url,
            config.ytdlp_format_extract,
            config.timeout_seconds,
            ytdlp_command,
            on_progress,
        )
    if not is_url(source.url):
        return MediaHandle(source.url, is_stream=False)
    return download_remote_video(source.url, config.timeout_seconds, on_progress)


def acquire_media(
    source: SlideSource,
    purpose: MediaPurpose,
    config: EngineConfig,
    ytdlp_command: Optional[list[str]],
    warnings: list[str],
    on_progress: Optional[DownloadProgress] = None,
) -> MediaHandle:
    """Obtain playable media for a source.

    Stream-first (the default) resolves a stream URL using the purpose's
    format selector and falls back to a download. Download-first tries the
    download and falls back to a stream URL. Local files are used directly.
    Every fallback appends a warning.

    Args:
        source: Resolved slide source.
        purpose: ``"detect"`` (low-res proxy) or ``"extract"`` (crisp stills).
        config: Engine configuration.
        ytdlp_command: yt-dlp command prefix, required for non-direct sources.
        warnings: Run warnings, appended to on fallback.
        on_progress: Download progress callback.

    Returns:
        A MediaHandle the caller must clean up.

    Raises:
        AcquisitionError, ProcessError: When both the preferred path and its
            fallback fail.
    """
    if not is_url(source.url):
        return MediaHandle(source.url, is_stream=False)

    if not needs_ytdlp(source):
        if config.stream_first:
            return MediaHandle(source.url, is_stream=True)
        try:
            return download_remote_video(source.url, config.timeout_seconds, on_progress)
        except AcquisitionError as e:
            _warn(warnings, f"Failed to download video; falling back to stream URL: {e}")
            return MediaHandle(source.url, is_stream=True)

    if not ytdlp_command:
        raise AcquisitionError("yt-dlp is required to acquire this source.")

    stream_format = (
        config.ytdlp_format_detect if purpose == "detect" else config.ytdlp_format_extract
    )
    if config.stream_first:
        try:
            stream_url = resolve_stream_url(
                source.url, stream_format, config.timeout_seconds, ytdlp_command
            )
            return MediaHandle(stream_url, is_stream=True)
        except AcquisitionError as e:
            _warn(warnings, f"Failed to resolve stream URL; downloading video instead: {e}")
        return download_media(source, config, ytdlp_command, on_progress)

    try:
        return download_media(source, config, ytdlp_command, on_progress)
    except (ProcessError, AcquisitionError) as e:
        _warn(warnings, f"Failed to download video; falling back to stream URL: {e}")
    stream_url = resolve_stream_url(
        source.url, stream_format, config.timeout_seconds, ytdlp_command
    )
    return MediaHandle(stream_url, is_stream=True)


def _warn(warnings: list[str], message: str) -> None:
    logger.warning(message)
    warnings.append(message)
