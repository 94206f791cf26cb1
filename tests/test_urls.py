from __future__ import annotations

import pytest

from backend.errors import InvalidUrl
from backend.urls import parse_video_url, watch_url


@pytest.mark.parametrize(
    "url",
    [
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        "https://youtu.be/dQw4w9WgXcQ",
        "https://www.youtube.com/embed/dQw4w9WgXcQ",
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ&t=42s",
        "  https://youtu.be/dQw4w9WgXcQ?si=abc  ",
    ],
)
def test_recognized_shapes_yield_same_id(url) -> None:
    ref = parse_video_url(url)

    assert ref.video_id == "dQw4w9WgXcQ"
    assert ref.source_url == url.strip()


@pytest.mark.parametrize(
    "url",
    ["not a url", "", "https://vimeo.com/12345", "https://www.youtube.com/channel/UC123"],
)
def test_unrecognized_urls_are_rejected(url) -> None:
    with pytest.raises(InvalidUrl, match="Invalid YouTube URL"):
        parse_video_url(url)


def test_watch_url_is_canonical() -> None:
    assert watch_url("abc123") == "https://www.youtube.com/watch?v=abc123"
