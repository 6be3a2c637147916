"""Tests for slide source resolution and stable source ids."""

import re
from pathlib import Path

import pytest

from slidedeck.source import (
    build_direct_source_id,
    extract_youtube_video_id,
    is_direct_media_url,
    is_youtube_url,
    is_url,
    resolve_local_source,
    resolve_slide_source,
    resolve_slide_source_from_url,
    to_slug,
)


@pytest.mark.parametrize(
    "url,expected",
    [
        ("https://www.youtube.com/watch?v=dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("https://youtu.be/dQw4w9WgXcQ?t=42", "dQw4w9WgXcQ"),
        ("https://www.youtube.com/shorts/dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("https://www.youtube.com/embed/dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("https://www.youtube.com/live/dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("https://www.youtube.com/channel/UC123", None),
        ("https://www.youtube.com/watch?v=bad!", None),
        ("https://example.com/watch?v=dQw4w9WgXcQ", None),
        (None, None),
    ],
)
def test_extract_youtube_video_id(url, expected):
    assert extract_youtube_video_id(url) == expected


def test_is_url_and_direct_media():
    assert is_url("https://example.com")
    assert is_url("www.example.com")
    assert not is_url("/videos/talk.mp4")
    assert is_youtube_url("https://m.youtube.com/watch?v=abcdefghijk")
    assert not is_youtube_url("https://vimeo.com/123")

    assert is_direct_media_url("https://cdn.example.com/a/talk.MP4")
    assert is_direct_media_url("https://cdn.example.com/live/index.m3u8?token=1")
    assert not is_direct_media_url("https://example.com/article")
    assert not is_direct_media_url("ftp://example.com/talk.mp4")


def test_to_slug():
    assert to_slug("Hello, World!") == "hello-world"
    assert to_slug("--Intro%20Talk--") == "intro-20talk"
    assert len(to_slug("a" * 100)) == 64


def test_build_direct_source_id_is_stable():
    url = "https://cdn.example.com/talks/Intro%20Talk.mp4"
    source_id = build_direct_source_id(url)

    assert re.fullmatch(r"cdn-example-com-intro-20talk-[0-9a-f]{8}", source_id)
    assert build_direct_source_id(url) == source_id
    assert build_direct_source_id(url + "?v=2") != source_id


def test_resolve_prefers_youtube_hints():
    source = resolve_slide_source(
        "https://blog.example.com/post",
        video_url="https://youtu.be/abcdefghijk",
    )
    assert source is not None
    assert source.kind == "youtube"
    assert source.url == "https://www.youtube.com/watch?v=abcdefghijk"
    assert source.source_id == "youtube-abcdefghijk"


def test_resolve_direct_media():
    source = resolve_slide_source_from_url("https://cdn.example.com/talks/intro.webm")
    assert source is not None
    assert source.kind == "direct"
    assert source.url == "https://cdn.example.com/talks/intro.webm"

    hinted = resolve_slide_source(
        "https://example.com/post",
        video_url="https://media.example.com/stream",
        video_kind="direct",
    )
    assert hinted is not None
    assert hinted.url == "https://media.example.com/stream"

    assert resolve_slide_source_from_url("https://example.com/article") is None


def test_resolve_local_source(tmp_path: Path):
    video = tmp_path / "lecture.mp4"
    video.write_bytes(b"")

    source = resolve_local_source(video)
    assert source.kind == "direct"
    assert source.url == str(video.resolve())
    assert "lecture" in source.source_id
    assert resolve_local_source(video).source_id == source.source_id
