"""
Video URL parsing.

Only three page-URL shapes are recognized:
    https://www.youtube.com/watch?v=ID
    https://youtu.be/ID
    https://www.youtube.com/embed/ID
"""

import re
from dataclasses import dataclass

from .errors import InvalidUrl

VIDEO_ID_PATTERN = re.compile(
    r"(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/)([^&\n?#]+)"
)


@dataclass(frozen=True)
class VideoReference:
    source_url: str
    video_id: str


def parse_video_url(url: str) -> VideoReference:
    """Validate a page URL and extract its video ID.

    Raises:
        InvalidUrl: If the URL is empty or not a recognized shape.
    """
    text = (url or "").strip()
    match = VIDEO_ID_PATTERN.search(text)
    if not match:
        raise InvalidUrl("Invalid YouTube URL")
    return VideoReference(source_url=text, video_id=match.group(1))


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"
