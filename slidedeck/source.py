"""Resolve a URL (plus optional content hints) to a canonical slide source."""

import hashlib
import logging
import posixpath
import re
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qs, urlparse

from slidedeck.constants import DIRECT_MEDIA_EXTENSIONS
from slidedeck.models import SlideSource

logger = logging.getLogger(__name__)

_YOUTUBE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{6,}$")
_SLUG_MAX_LENGTH = 64


def is_url(input_str: str) -> bool:
    """Check if input string is a URL.

    Args:
        input_str: String to check.

    Returns:
        True if input looks like a URL, False otherwise.
    """
    return input_str.startswith(("http://", "https://", "www."))


def is_youtube_url(url: str) -> bool:
    """Return True if the URL points at a YouTube host."""
    host = (urlparse(url).hostname or "").lower()
    if not host:
        lowered = url.lower()
        return "youtube.com" in lowered or "youtu.be" in lowered
    return "youtube.com" in host or "youtu.be" in host


def extract_youtube_video_id(url: Optional[str]) -> Optional[str]:
    """Extract the video id from watch, short, embed, live and youtu.be URLs.

    Returns:
        The video id, or None if the URL is not a recognizable YouTube video.
    """
    if not url:
        return None
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    path = parsed.path or ""

    candidate: Optional[str] = None
    if host == "youtu.be" or host.endswith(".youtu.be"):
        candidate = path.lstrip("/").split("/")[0]
    elif "youtube.com" in host:
        if path.startswith("/watch"):
            candidate = parse_qs(parsed.query).get("v", [None])[0]
        else:
            parts = [part for part in path.split("/") if part]
            if len(parts) >= 2 and parts[0] in ("shorts", "embed", "live", "v"):
                candidate = parts[1]

    if candidate and _YOUTUBE_ID_PATTERN.match(candidate):
        return candidate
    return None


def is_direct_media_url(url: Optional[str]) -> bool:
    """Return True for http(s) URLs whose path ends in a playable media extension."""
    if not url:
        return False
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return False
    return parsed.path.lower().endswith(DIRECT_MEDIA_EXTENSIONS)


def to_slug(value: str) -> str:
    """Lowercase, collapse non-alphanumerics to '-', cap at 64 chars."""
    normalized = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    if len(normalized) <= _SLUG_MAX_LENGTH:
        return normalized
    return normalized[:_SLUG_MAX_LENGTH].rstrip("-")


def build_youtube_source_id(video_id: str) -> str:
    return f"youtube-{video_id}"


def build_direct_source_id(url: str) -> str:
    """Build a stable id from host, file name and a short URL hash.

    Example: ``https://cdn.example.com/talks/Intro%20Talk.mp4`` ->
    ``cdn-example-com-intro-20talk-<sha1[:8]>``.
    """
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    if is_youtube_url(url):
        host_slug = "youtube"
    else:
        host_slug = to_slug(host)

    raw_name = posixpath.basename(parsed.path)
    base = re.sub(r"\.[a-z0-9]+$", "", raw_name, flags=re.IGNORECASE).strip() or "video"
    name_slug = to_slug(base)

    combined = "-".join(part for part in (host_slug, name_slug) if part)
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:8]
    return f"{combined}-{digest}" if combined else f"video-{digest}"


def _youtube_source(video_id: str) -> SlideSource:
    return SlideSource(
        url=f"https://www.youtube.com/watch?v={video_id}",
        kind="youtube",
        source_id=build_youtube_source_id(video_id),
    )


def resolve_slide_source(
    url: str,
    video_url: Optional[str] = None,
    content_url: Optional[str] = None,
    video_kind: Optional[str] = None,
) -> Optional[SlideSource]:
    """Pick the slide source for a URL and optional extracted-content hints.

    Args:
        url: The URL the user asked for.
        video_url: Embedded video URL found on the page, if any.
        content_url: Final URL of the extracted content (after redirects).
        video_kind: Hint for ``video_url`` (``"youtube"`` or ``"direct"``).

    Returns:
        A SlideSource, or None when the URL has no slide-able video.
    """
    for candidate in (video_url, content_url, url):
        video_id = extract_youtube_video_id(candidate)
        if video_id:
            return _youtube_source(video_id)

    if video_kind == "direct" and video_url:
        direct_url: Optional[str] = video_url
    else:
        direct_url = next(
            (candidate for candidate in (video_url, content_url, url) if is_direct_media_url(candidate)),
            None,
        )
    if direct_url:
        return SlideSource(url=direct_url, kind="direct", source_id=build_direct_source_id(direct_url))

    logger.debug(f"No slide source for {url}")
    return None


def resolve_slide_source_from_url(url: str) -> Optional[SlideSource]:
    """Resolve a bare URL with no content hints."""
    return resolve_slide_source(url)


def resolve_local_source(video_path: Path) -> SlideSource:
    """Build a direct source for a local video file.

    The id is derived from the absolute file URI so the same file always maps
    to the same output directory.
    """
    resolved = video_path.expanduser().resolve()
    return SlideSource(
        url=str(resolved),
        kind="direct",
        source_id=build_direct_source_id(resolved.as_uri()),
    )
