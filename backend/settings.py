"""
Runtime configuration read from the environment.

Every knob has a sane default so the server starts with no environment at all:
stream mode, yt-dlp first, then the public Invidious/Piped/Cobalt/Vevioz APIs.
"""

import logging
import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel

logger = logging.getLogger("ytaudio.settings")

BACKEND_DIR = Path(__file__).parent.resolve()

# Always-reachable sample used when every strategy fails
DEFAULT_FALLBACK_AUDIO_URL = "https://www2.cs.uic.edu/~i101/SoundFiles/BabyElephantWalk60.wav"

DEFAULT_STRATEGY_ORDER = ["ytdlp", "invidious", "piped", "cobalt", "vevioz"]

# Public instances, same pool the web client fell back to
DEFAULT_INVIDIOUS_INSTANCES = [
    "https://vid.puffyan.us",
    "https://invidious.lunar.icu",
    "https://iv.ggtyler.dev",
    "https://invidious.privacyredirect.com",
    "https://invidious.drgns.space",
    "https://inv.us.projectsegfau.lt",
]

DEFAULT_PIPED_INSTANCES = [
    "https://pipedapi.kavin.rocks",
    "https://pipedapi.r4fo.com",
    "https://api.piped.privacydev.net",
    "https://pipedapi.darkness.services",
]

DEFAULT_COBALT_INSTANCES = [
    "https://api.cobalt.tools",
]

ExtractionMode = Literal["stream", "download"]


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name, "")
    if not raw.strip():
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️  {name}={raw!r} is not a number, using {default}")
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️  {name}={raw!r} is not an integer, using {default}")
        return default


class Settings(BaseModel, frozen=True):
    host: str = "0.0.0.0"
    port: int = 3001
    mode: ExtractionMode = "stream"
    strategy_order: list[str] = DEFAULT_STRATEGY_ORDER

    ytdlp_binary: str = "yt-dlp"
    ytdlp_profiles: list[str] = ["ios", "web"]
    ytdlp_timeout: float = 30.0
    ytdlp_cookie_file: str | None = None
    ffmpeg_location: str | None = None
    max_concurrent_extractions: int = 4

    remote_api_timeout: float = 15.0
    metadata_timeout: float = 10.0
    invidious_instances: list[str] = DEFAULT_INVIDIOUS_INSTANCES
    piped_instances: list[str] = DEFAULT_PIPED_INSTANCES
    cobalt_instances: list[str] = DEFAULT_COBALT_INSTANCES
    rapidapi_key: str | None = None

    audio_cache_dir: Path = BACKEND_DIR / "audio"
    cache_max_age: float = 7 * 24 * 3600
    stream_cache_ttl: float = 300.0

    fallback_audio_url: str = DEFAULT_FALLBACK_AUDIO_URL
    public_base_url: str | None = None
    cors_origins: list[str] = ["*"]
    extract_rate_limit: str = "30/minute"

    @property
    def base_url(self) -> str:
        """Absolute prefix for files served from the audio cache."""
        if self.public_base_url:
            return self.public_base_url.rstrip("/")
        return f"http://localhost:{self.port}"

    @classmethod
    def from_env(cls) -> "Settings":
        mode = os.getenv("EXTRACTION_MODE", "stream").strip().lower()
        if mode not in ("stream", "download"):
            logger.warning(f"⚠️  Unknown EXTRACTION_MODE {mode!r}, using 'stream'")
            mode = "stream"

        cache_dir = os.getenv("AUDIO_CACHE_DIR", "")

        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", 3001),
            mode=mode,
            strategy_order=_env_list("STRATEGY_ORDER", DEFAULT_STRATEGY_ORDER),
            ytdlp_binary=os.getenv("YTDLP_BINARY", "yt-dlp"),
            ytdlp_profiles=_env_list("YTDLP_PROFILES", ["ios", "web"]),
            ytdlp_timeout=_env_float("YTDLP_TIMEOUT", 30.0),
            ytdlp_cookie_file=os.getenv("YTDLP_COOKIE_FILE") or None,
            ffmpeg_location=os.getenv("FFMPEG_LOCATION") or None,
            max_concurrent_extractions=max(1, _env_int("MAX_CONCURRENT_EXTRACTIONS", 4)),
            remote_api_timeout=_env_float("REMOTE_API_TIMEOUT", 15.0),
            metadata_timeout=_env_float("METADATA_TIMEOUT", 10.0),
            invidious_instances=_env_list("INVIDIOUS_INSTANCES", DEFAULT_INVIDIOUS_INSTANCES),
            piped_instances=_env_list("PIPED_INSTANCES", DEFAULT_PIPED_INSTANCES),
            cobalt_instances=_env_list("COBALT_INSTANCES", DEFAULT_COBALT_INSTANCES),
            rapidapi_key=os.getenv("RAPIDAPI_KEY") or None,
            audio_cache_dir=Path(cache_dir) if cache_dir else BACKEND_DIR / "audio",
            cache_max_age=_env_float("CACHE_MAX_AGE", 7 * 24 * 3600),
            stream_cache_ttl=_env_float("STREAM_CACHE_TTL", 300.0),
            fallback_audio_url=os.getenv("FALLBACK_AUDIO_URL") or DEFAULT_FALLBACK_AUDIO_URL,
            public_base_url=os.getenv("PUBLIC_BASE_URL") or None,
            cors_origins=_env_list("CORS_ORIGINS", ["*"]),
            extract_rate_limit=os.getenv("EXTRACT_RATE_LIMIT", "30/minute"),
        )
