"""
Extraction strategies.

A strategy turns a VideoReference into an ExtractionResult or raises
StrategyFailed. The pipeline only ever talks to the ExtractionStrategy
interface, so strategies can be reordered, added or mocked freely.

Remote-API strategies live here; the yt-dlp subprocess strategy lives in
ytdlp.py.
"""

import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from .errors import StrategyFailed
from .urls import VideoReference, watch_url

logger = logging.getLogger("ytaudio.strategies")


@dataclass(frozen=True)
class ExtractionResult:
    """A playable audio reference produced by exactly one strategy."""

    audio_url: str
    is_direct_stream: bool
    source_strategy: str
    # Set from a yt-dlp sidecar (authoritative) or, duration only, a remote API
    title: Optional[str] = None
    duration_seconds: Optional[int] = None

    def __post_init__(self):
        if not self.audio_url.startswith("http"):
            raise ValueError(f"Not a stream URL: {self.audio_url[:40]!r}")


class ExtractionStrategy(ABC):
    """Abstract base class for one method of obtaining an audio stream."""

    name: str = "strategy"

    @property
    @abstractmethod
    def timeout(self) -> float:
        """Wall-clock budget in seconds the pipeline grants one attempt."""

    @abstractmethod
    async def attempt(self, ref: VideoReference) -> ExtractionResult:
        """
        Try to resolve the reference into an audio stream.

        Raises:
            StrategyFailed: On any recoverable failure (network error,
                non-2xx, missing field, timeout, bad process exit).
        """

    def __repr__(self):
        return f"<{type(self).__name__} {self.name}>"


# ---------- Per-service response mapping ----------
@dataclass(frozen=True)
class MappedStream:
    url: str
    duration_seconds: Optional[int] = None


def _http_url(value: Any) -> str | None:
    if isinstance(value, str) and value.startswith("http"):
        return value
    return None


def _as_int(value: Any) -> int | None:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _seconds(value: Any) -> int | None:
    seconds = _as_int(value)
    return seconds if seconds and seconds > 0 else None


def _best_by_bitrate(streams: list) -> dict | None:
    candidates = [s for s in streams if isinstance(s, dict) and _http_url(s.get("url"))]
    if not candidates:
        return None
    return max(candidates, key=lambda s: _as_int(s.get("bitrate")) or 0)


def map_invidious_response(data: Any) -> MappedStream | None:
    """Invidious /api/v1/videos: best audio/* entry of adaptiveFormats."""
    if not isinstance(data, dict) or "error" in data:
        return None
    formats = data.get("adaptiveFormats") or []
    audio = [f for f in formats if isinstance(f, dict) and str(f.get("type", "")).startswith("audio/")]
    best = _best_by_bitrate(audio)
    if best is None:
        return None
    return MappedStream(url=best["url"], duration_seconds=_seconds(data.get("lengthSeconds")))


def map_piped_response(data: Any) -> MappedStream | None:
    """Piped /streams: best entry of audioStreams."""
    if not isinstance(data, dict) or "error" in data:
        return None
    best = _best_by_bitrate(data.get("audioStreams") or [])
    if best is None:
        return None
    return MappedStream(url=best["url"], duration_seconds=_seconds(data.get("duration")))


def map_cobalt_response(data: Any) -> MappedStream | None:
    """Cobalt v10: `url` is only meaningful for tunnel/redirect/stream statuses."""
    if not isinstance(data, dict) or data.get("status") not in ("tunnel", "redirect", "stream"):
        return None
    url = _http_url(data.get("url"))
    return MappedStream(url=url) if url else None


def map_vevioz_response(data: Any) -> MappedStream | None:
    """Vevioz button API puts the link in `url`."""
    if not isinstance(data, dict):
        return None
    url = _http_url(data.get("url"))
    return MappedStream(url=url, duration_seconds=_seconds(data.get("duration"))) if url else None


def map_mp36_response(data: Any) -> MappedStream | None:
    """RapidAPI youtube-mp36 puts the link in `link` once status is ok."""
    if not isinstance(data, dict) or data.get("status") == "fail":
        return None
    url = _http_url(data.get("link"))
    return MappedStream(url=url, duration_seconds=_seconds(data.get("duration"))) if url else None


# ---------- Remote API strategies ----------
class RemoteApiStrategy(ExtractionStrategy):
    """
    Strategy backed by a third-party HTTP API.

    Tries up to `max_instances` instances (shuffled) with one request each.
    Subclasses provide the request and the response mapper.
    """

    mapper: Callable[[Any], MappedStream | None]
    shuffle_instances = True

    def __init__(
        self,
        instances: list[str],
        request_timeout: float = 15.0,
        max_instances: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.instances = [i.rstrip("/") for i in instances]
        self.request_timeout = request_timeout
        self.max_instances = max_instances
        self._transport = transport

    @property
    def timeout(self) -> float:
        return self.request_timeout * max(1, min(self.max_instances, len(self.instances)))

    @abstractmethod
    async def request(self, client: httpx.AsyncClient, instance: str, ref: VideoReference) -> httpx.Response:
        ...

    async def attempt(self, ref: VideoReference) -> ExtractionResult:
        instances = list(self.instances)
        if not instances:
            raise StrategyFailed(self.name, "no instances configured")
        if self.shuffle_instances:
            random.shuffle(instances)

        reason = "no usable response"
        async with httpx.AsyncClient(
            timeout=self.request_timeout, follow_redirects=True, transport=self._transport
        ) as client:
            for instance in instances[: self.max_instances]:
                try:
                    response = await self.request(client, instance, ref)
                except httpx.HTTPError as e:
                    reason = f"{type(e).__name__}"
                    logger.warning(f"{self.name} instance {instance} failed: {e}")
                    continue

                if response.status_code != 200:
                    reason = f"HTTP {response.status_code}"
                    logger.warning(f"{self.name} instance {instance} returned {response.status_code}")
                    continue

                try:
                    data = response.json()
                except ValueError:
                    reason = "malformed JSON"
                    continue

                mapped = self.mapper(data)
                if mapped is None:
                    reason = "no audio URL in response"
                    continue

                logger.info(f"✅ {self.name} resolved {ref.video_id}")
                return ExtractionResult(
                    audio_url=mapped.url,
                    is_direct_stream=True,
                    source_strategy=self.name,
                    duration_seconds=mapped.duration_seconds,
                )

        raise StrategyFailed(self.name, reason)


class InvidiousStrategy(RemoteApiStrategy):
    name = "invidious"
    mapper = staticmethod(map_invidious_response)

    async def request(self, client, instance, ref):
        return await client.get(f"{instance}/api/v1/videos/{ref.video_id}")


class PipedStrategy(RemoteApiStrategy):
    name = "piped"
    mapper = staticmethod(map_piped_response)

    async def request(self, client, instance, ref):
        return await client.get(f"{instance}/streams/{ref.video_id}")


class CobaltStrategy(RemoteApiStrategy):
    name = "cobalt"
    mapper = staticmethod(map_cobalt_response)

    async def request(self, client, instance, ref):
        payload = {
            "url": watch_url(ref.video_id),
            "downloadMode": "audio",
            "audioFormat": "mp3",
        }
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        return await client.post(f"{instance}/", json=payload, headers=headers)


class VeviozStrategy(RemoteApiStrategy):
    name = "vevioz"
    mapper = staticmethod(map_vevioz_response)

    def __init__(self, request_timeout: float = 15.0, transport=None):
        super().__init__(["https://api.vevioz.com"], request_timeout, 1, transport)

    async def request(self, client, instance, ref):
        return await client.get(f"{instance}/api/button/mp3/{ref.video_id}")


class Mp36Strategy(RemoteApiStrategy):
    name = "mp36"
    mapper = staticmethod(map_mp36_response)
    host = "youtube-mp36.p.rapidapi.com"

    def __init__(self, api_key: str, request_timeout: float = 15.0, transport=None):
        super().__init__([f"https://{self.host}"], request_timeout, 1, transport)
        self.api_key = api_key

    async def request(self, client, instance, ref):
        headers = {
            "X-RapidAPI-Key": self.api_key,
            "X-RapidAPI-Host": self.host,
        }
        return await client.get(f"{instance}/dl", params={"id": ref.video_id}, headers=headers)
