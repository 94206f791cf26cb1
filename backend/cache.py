"""
Audio caches.

AudioCache   - on-disk store of downloaded audio (download mode). One file
               per video ID plus a JSON sidecar record.
StreamUrlCache - in-memory map of video ID to direct stream URL (stream
               mode). Stream URLs expire upstream, so entries are short-lived.
"""

import hashlib
import json
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import mutagen

from .strategies import ExtractionResult

logger = logging.getLogger("ytaudio.cache")

ACCEPTED_EXTENSIONS = (".mp3", ".m4a", ".webm", ".opus", ".ogg", ".aac")

MIME_TYPES = {
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".aac": "audio/aac",
    ".webm": "audio/webm",
    ".ogg": "audio/ogg",
    ".opus": "audio/ogg",
}

# Video IDs end up in file names; anything else is never cached
SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


def is_cacheable_id(video_id: str) -> bool:
    return bool(SAFE_ID.match(video_id))


def probe_duration(path: Path) -> int | None:
    """Read the duration in seconds from the audio headers, if mutagen can."""
    try:
        audio = mutagen.File(str(path))
    except (mutagen.MutagenError, OSError) as e:
        logger.warning(f"Could not probe {path.name}: {e}")
        return None
    if audio is None or audio.info is None:
        return None
    length = getattr(audio.info, "length", None)
    return int(round(length)) if length else None


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(64 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    video_id: str
    file_path: Path
    title: Optional[str]
    duration_seconds: Optional[int]
    created_at: float
    size: int
    sha256: str

    @property
    def filename(self) -> str:
        return self.file_path.name

    def to_record(self) -> dict:
        return {
            "id": self.video_id,
            "filename": self.filename,
            "title": self.title,
            "durationSeconds": self.duration_seconds,
            "createdAt": self.created_at,
            "size": self.size,
            "sha256": self.sha256,
        }


class AudioCache:
    """
    File store keyed by video ID.

    Layout inside `directory`:
        <id>.<ext>   the audio file
        <id>.json    sidecar record (see CacheEntry.to_record)

    First writer wins: storing an ID that already has a fresh entry keeps
    the existing file. Entries older than `max_age`, or whose file is gone
    or has a different size than recorded, are dropped on lookup.
    """

    def __init__(self, directory: Path, max_age: float = 7 * 24 * 3600, base_url: str = "http://localhost:3001"):
        self.directory = Path(directory)
        self.max_age = max_age
        self.base_url = base_url.rstrip("/")

    def _sidecar_path(self, video_id: str) -> Path:
        return self.directory / f"{video_id}.json"

    def ensure_directory(self) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        return self.directory

    def staging_dir(self, video_id: str) -> Path:
        """Scratch directory on the same filesystem so store() can rename."""
        self.ensure_directory()
        return Path(tempfile.mkdtemp(prefix=f".staging-{video_id}-", dir=self.directory))

    def lookup(self, video_id: str) -> CacheEntry | None:
        if not is_cacheable_id(video_id):
            return None
        sidecar = self._sidecar_path(video_id)
        if not sidecar.exists():
            return None

        try:
            record = json.loads(sidecar.read_text(encoding="utf-8"))
            title = record.get("title")
            if title is not None and not isinstance(title, str):
                raise TypeError(f"title is {type(title).__name__}")
            duration = record.get("durationSeconds")
            entry = CacheEntry(
                video_id=video_id,
                file_path=self.directory / record["filename"],
                title=title,
                duration_seconds=int(duration) if duration is not None else None,
                created_at=float(record["createdAt"]),
                size=int(record["size"]),
                sha256=record["sha256"],
            )
            if record["filename"] != f"{video_id}{entry.file_path.suffix}":
                raise ValueError(f"unexpected filename {record['filename']!r}")
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"⚠️  Corrupt cache record for {video_id}: {e}")
            self.invalidate(video_id)
            return None

        if not entry.file_path.is_file():
            logger.info(f"Cached file for {video_id} is missing, dropping entry")
            self.invalidate(video_id)
            return None
        if entry.file_path.stat().st_size != entry.size:
            logger.warning(f"⚠️  Cached file for {video_id} changed size, dropping entry")
            self.invalidate(video_id)
            return None
        if time.time() - entry.created_at > self.max_age:
            logger.info(f"Cached file for {video_id} expired, dropping entry")
            self.invalidate(video_id)
            return None

        return entry

    def invalidate(self, video_id: str) -> None:
        if not is_cacheable_id(video_id):
            return
        self._sidecar_path(video_id).unlink(missing_ok=True)
        for ext in ACCEPTED_EXTENSIONS:
            (self.directory / f"{video_id}{ext}").unlink(missing_ok=True)

    def store(
        self,
        video_id: str,
        source: Path,
        title: str | None = None,
        duration_seconds: int | None = None,
    ) -> CacheEntry:
        """
        Move a finished audio file into the cache and record its sidecar.

        Returns the existing entry instead if one is still fresh.
        """
        if not is_cacheable_id(video_id):
            raise ValueError(f"Video ID not usable as a file name: {video_id!r}")
        source = Path(source)
        ext = source.suffix.lower()
        if ext not in ACCEPTED_EXTENSIONS:
            raise ValueError(f"Unsupported audio extension: {ext!r}")

        existing = self.lookup(video_id)
        if existing is not None:
            source.unlink(missing_ok=True)
            return existing

        self.ensure_directory()
        target = self.directory / f"{video_id}{ext}"
        os.replace(source, target)

        if duration_seconds is None:
            duration_seconds = probe_duration(target)

        entry = CacheEntry(
            video_id=video_id,
            file_path=target,
            title=title,
            duration_seconds=duration_seconds,
            created_at=time.time(),
            size=target.stat().st_size,
            sha256=_sha256(target),
        )

        tmp_sidecar = self.directory / f".{video_id}.json.tmp"
        tmp_sidecar.write_text(json.dumps(entry.to_record()), encoding="utf-8")
        os.replace(tmp_sidecar, self._sidecar_path(video_id))

        logger.info(f"💾 Cached {entry.filename} ({entry.size} bytes)")
        return entry

    def url_for(self, entry: CacheEntry) -> str:
        return f"{self.base_url}/audio/{entry.filename}"

    def path_for(self, filename: str) -> Path | None:
        """Resolve a requested file name to a servable file, or None."""
        if "/" in filename or "\\" in filename or filename.startswith("."):
            return None
        path = self.directory / filename
        if path.suffix.lower() not in ACCEPTED_EXTENSIONS or not path.is_file():
            return None
        return path


class StreamUrlCache:
    """In-memory cache of direct stream results, expiring after `ttl` seconds."""

    def __init__(self, ttl: float = 300.0):
        self.ttl = ttl
        self._entries: dict[str, tuple[ExtractionResult, float]] = {}

    def get(self, video_id: str) -> ExtractionResult | None:
        cached = self._entries.get(video_id)
        if not cached:
            return None
        result, cached_time = cached
        if time.monotonic() - cached_time > self.ttl:
            del self._entries[video_id]
            return None
        return result

    def put(self, video_id: str, result: ExtractionResult) -> None:
        now = time.monotonic()
        self._entries = {k: v for k, v in self._entries.items() if now - v[1] <= self.ttl}
        self._entries[video_id] = (result, now)

    def __len__(self):
        return len(self._entries)
