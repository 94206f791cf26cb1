"""
YouTube Audio Server API

Resolves a YouTube page URL into something a mobile media player can
stream right away:
- Primary: yt-dlp subprocess with iOS + web client profiles
- Fallback: Invidious / Piped / Cobalt / Vevioz APIs (no cookies needed)
- Last resort: a fixed sample stream, so the client always gets audio
- Download mode: transcode to MP3 once, cache on disk, serve from /audio
- Rate limiting on extraction (per IP)
- Privacy-first logging (video IDs only, no URLs)
"""

import datetime
import logging
import shutil

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from yt_dlp.version import __version__ as YTDLP_VERSION

from .cache import MIME_TYPES
from .errors import FatalLaunchError
from .pipeline import build_pipeline
from .settings import Settings
from .ytdlp import tool_available

# ---------- Logging Setup (Privacy-First) ----------
logging.getLogger("uvicorn.access").disabled = True

logger = logging.getLogger("ytaudio")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
    logger.addHandler(handler)

# ---------- Pipeline Setup ----------
settings = Settings.from_env()
pipeline = build_pipeline(settings)

# ---------- Rate Limiter Setup ----------
limiter = Limiter(key_func=get_remote_address)

app = FastAPI(title="YouTube Audio Server")
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ---------- CORS Setup ----------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials="*" not in settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


def ffmpeg_available() -> bool:
    if settings.ffmpeg_location:
        return True
    return shutil.which("ffmpeg") is not None


@app.on_event("startup")
def startup_checks():
    """Log system status on startup (no sensitive data)."""
    if tool_available(settings.ytdlp_binary):
        logger.info(f"✅ yt-dlp found (package {YTDLP_VERSION})")
    else:
        logger.warning("⚠️  yt-dlp not found on PATH - subprocess extraction will be skipped over")

    if settings.mode == "download":
        if ffmpeg_available():
            logger.info("✅ ffmpeg found")
        else:
            logger.warning("⚠️  ffmpeg not found! MP3 transcoding will fail.")
        pipeline.audio_cache.ensure_directory()
        logger.info(f"💾 Download mode, caching audio in {settings.audio_cache_dir}")
    else:
        logger.info("📺 Stream mode, returning direct stream URLs")

    if settings.ytdlp_cookie_file:
        logger.info("🍪 Cookie file configured for yt-dlp")

    names = ", ".join(s.name for s in pipeline.strategies) or "none"
    logger.info(f"🔄 Strategy order: {names} → fallback audio")


# ---------- Schemas ----------
class ExtractAudioRequest(BaseModel):
    youtubeUrl: str | None = None
    url: str | None = None  # Field name used by some client builds

    @property
    def source_url(self) -> str | None:
        return self.youtubeUrl or self.url


class ExtractAudioResponse(BaseModel):
    success: bool
    title: str
    duration: str
    audioUrl: str
    isDirectStream: bool


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "YouTube URL is required"})


# ---------- Endpoints ----------
def health_payload() -> dict:
    return {
        "status": "OK",
        "message": "YouTube audio server is running",
        "mode": settings.mode,
        "ytDlp": {
            "available": tool_available(settings.ytdlp_binary),
            "version": YTDLP_VERSION,
        },
        "ffmpeg": ffmpeg_available(),
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    }


@app.get("/api/health")
def api_health():
    return health_payload()


@app.get("/health")
def health():
    return health_payload()


@app.get("/")
def root():
    return {"name": "YouTube Audio Server", "health": "/api/health"}


@app.post("/api/extract-audio", response_model=ExtractAudioResponse)
@limiter.limit(settings.extract_rate_limit)
async def extract_audio(request: Request, body: ExtractAudioRequest):
    """
    Resolve a YouTube URL to a playable audio URL.

    Always answers 200 with something playable once the URL is valid:
    when every strategy fails, success is false and audioUrl points at the
    fallback sample. 400 is reserved for a missing or malformed URL, 500
    for the server being unable to start processes at all.
    """
    source_url = body.source_url
    if not source_url or not source_url.strip():
        return JSONResponse(status_code=400, content={"error": "YouTube URL is required"})

    logger.info("Extract request received")  # No URL logged for privacy

    try:
        outcome = await pipeline.resolve(source_url)
    except FatalLaunchError as e:
        logger.error(f"Extraction could not start: {e}")
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to extract audio", "details": str(e)},
        )

    if outcome.is_client_error:
        return JSONResponse(status_code=400, content={"error": outcome.error})

    return ExtractAudioResponse(
        success=outcome.success,
        title=outcome.title,
        duration=outcome.duration,
        audioUrl=outcome.audio_url,
        isDirectStream=outcome.is_direct_stream,
    )


@app.get("/audio/{filename}")
def serve_audio(filename: str):
    """Serve a cached audio file (download mode only)."""
    cache = pipeline.audio_cache
    path = cache.path_for(filename) if cache is not None else None
    if path is None:
        return JSONResponse(status_code=404, content={"error": "Audio file not found"})
    return FileResponse(path, media_type=MIME_TYPES.get(path.suffix.lower(), "application/octet-stream"))


def main():
    logger.info(f"🚀 YouTube audio server running on port {settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
