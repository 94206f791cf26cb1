"""
Resolution pipeline.

    URL -> parse -> (title lookup || cache check -> strategy 1 -> strategy 2 -> ...) -> outcome

resolve() never fails outward for anything a client can cause or a remote
service can break: an invalid URL becomes a client-error outcome and total
strategy failure becomes the fallback stream with success=False. The only
exception that escapes is FatalLaunchError.
"""

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from .cache import AudioCache, StreamUrlCache
from .errors import FatalLaunchError, InvalidUrl, StrategyFailed
from .metadata import fetch_title
from .settings import Settings
from .strategies import (
    CobaltStrategy,
    ExtractionResult,
    ExtractionStrategy,
    InvidiousStrategy,
    Mp36Strategy,
    PipedStrategy,
    VeviozStrategy,
)
from .urls import VideoReference, parse_video_url
from .ytdlp import YtDlpRunner, YtDlpStrategy, get_profiles

logger = logging.getLogger("ytaudio.pipeline")

UNKNOWN_DURATION = "unknown"


def format_duration(seconds: int | None) -> str:
    if seconds is None:
        return UNKNOWN_DURATION
    mins, secs = divmod(int(seconds), 60)
    hrs, mins = divmod(mins, 60)
    if hrs:
        return f"{hrs}:{mins:02}:{secs:02}"
    return f"{mins}:{secs:02}"


@dataclass(frozen=True)
class ResolutionOutcome:
    title: str
    duration: str
    audio_url: str
    is_direct_stream: bool
    success: bool
    error: Optional[str] = None

    @classmethod
    def client_error(cls, message: str) -> "ResolutionOutcome":
        return cls(
            title="",
            duration=UNKNOWN_DURATION,
            audio_url="",
            is_direct_stream=False,
            success=False,
            error=message,
        )

    @property
    def is_client_error(self) -> bool:
        return self.error is not None


@dataclass
class StrategyAttempt:
    strategy: ExtractionStrategy
    timeout: float
    started_at: float = field(default_factory=time.monotonic)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at


class ResolutionPipeline:
    def __init__(
        self,
        strategies: list[ExtractionStrategy],
        fallback_audio_url: str,
        title_fetcher: Callable[[str], Awaitable[str]] = fetch_title,
        audio_cache: AudioCache | None = None,
        stream_cache: StreamUrlCache | None = None,
    ):
        if not fallback_audio_url.startswith("http"):
            raise ValueError("Fallback audio URL must be an http(s) URL")
        self.strategies = list(strategies)
        self.fallback_audio_url = fallback_audio_url
        self.title_fetcher = title_fetcher
        self.audio_cache = audio_cache
        self.stream_cache = stream_cache
        self._inflight: dict[str, asyncio.Future] = {}

    async def resolve(self, source_url: str) -> ResolutionOutcome:
        try:
            ref = parse_video_url(source_url)
        except InvalidUrl as e:
            logger.info("Rejected unrecognized URL")
            return ResolutionOutcome.client_error(str(e))

        logger.info(f"Resolving {ref.video_id}")
        title_task = asyncio.ensure_future(self.title_fetcher(ref.source_url))
        try:
            result = await self._extract_shared(ref)
        except BaseException:
            title_task.cancel()
            raise

        if result is None:
            return ResolutionOutcome(
                title=await title_task,
                duration=UNKNOWN_DURATION,
                audio_url=self.fallback_audio_url,
                is_direct_stream=True,
                success=False,
            )

        # A sidecar or cache record title wins, so the lookup is not awaited
        if result.title:
            title_task.cancel()
            title = result.title
        else:
            title = await title_task

        return ResolutionOutcome(
            title=title,
            duration=format_duration(result.duration_seconds),
            audio_url=result.audio_url,
            is_direct_stream=result.is_direct_stream,
            success=True,
        )

    async def _extract_shared(self, ref: VideoReference) -> ExtractionResult | None:
        """Concurrent requests for one video ID share a single extraction."""
        task = self._inflight.get(ref.video_id)
        if task is None:
            task = asyncio.ensure_future(self._extract(ref))
            self._inflight[ref.video_id] = task
            task.add_done_callback(lambda _: self._inflight.pop(ref.video_id, None))
        else:
            logger.info(f"Joining in-flight extraction for {ref.video_id}")
        return await asyncio.shield(task)

    def _cached(self, ref: VideoReference) -> ExtractionResult | None:
        if self.audio_cache is not None:
            entry = self.audio_cache.lookup(ref.video_id)
            if entry is not None:
                return ExtractionResult(
                    audio_url=self.audio_cache.url_for(entry),
                    is_direct_stream=False,
                    source_strategy="cache",
                    title=entry.title,
                    duration_seconds=entry.duration_seconds,
                )
        if self.stream_cache is not None:
            return self.stream_cache.get(ref.video_id)
        return None

    async def _attempt(self, attempt: StrategyAttempt, ref: VideoReference) -> ExtractionResult:
        try:
            return await asyncio.wait_for(attempt.strategy.attempt(ref), attempt.timeout)
        except asyncio.TimeoutError:
            raise StrategyFailed(attempt.strategy.name, f"timed out after {attempt.timeout:.1f}s") from None

    async def _extract(self, ref: VideoReference) -> ExtractionResult | None:
        cached = self._cached(ref)
        if cached is not None:
            logger.info(f"⚡ Cache hit for {ref.video_id}")
            return cached

        for strategy in self.strategies:
            attempt = StrategyAttempt(strategy=strategy, timeout=strategy.timeout)
            try:
                result = await self._attempt(attempt, ref)
            except StrategyFailed as e:
                logger.warning(f"⚠️  {e} ({attempt.elapsed:.1f}s)")
                continue
            except FatalLaunchError:
                raise
            except Exception:
                logger.exception(f"Strategy {strategy.name} crashed")
                continue

            logger.info(f"✅ {ref.video_id} resolved by {result.source_strategy} in {attempt.elapsed:.1f}s")
            if self.stream_cache is not None and result.is_direct_stream:
                self.stream_cache.put(ref.video_id, result)
            return result

        logger.warning(f"All strategies failed for {ref.video_id}, serving fallback audio")
        return None


def build_strategies(
    settings: Settings,
    audio_cache: AudioCache | None = None,
    transport=None,
) -> list[ExtractionStrategy]:
    """Instantiate strategies in the configured priority order."""
    runner = YtDlpRunner(
        settings.ytdlp_binary,
        cache=audio_cache,
        cookie_file=settings.ytdlp_cookie_file,
        ffmpeg_location=settings.ffmpeg_location,
        max_concurrent=settings.max_concurrent_extractions,
    )
    timeout = settings.remote_api_timeout

    factories: dict[str, Callable[[], ExtractionStrategy]] = {
        "ytdlp": lambda: YtDlpStrategy(
            runner,
            get_profiles(settings.ytdlp_profiles),
            profile_timeout=settings.ytdlp_timeout,
            download=settings.mode == "download",
        ),
        "invidious": lambda: InvidiousStrategy(settings.invidious_instances, timeout, transport=transport),
        "piped": lambda: PipedStrategy(settings.piped_instances, timeout, transport=transport),
        "cobalt": lambda: CobaltStrategy(settings.cobalt_instances, timeout, max_instances=1, transport=transport),
        "vevioz": lambda: VeviozStrategy(timeout, transport=transport),
        "mp36": lambda: Mp36Strategy(settings.rapidapi_key, timeout, transport=transport),
    }

    order = list(settings.strategy_order)
    if settings.rapidapi_key and "mp36" not in order:
        order.append("mp36")

    strategies = []
    for name in order:
        name = name.strip().lower()
        factory = factories.get(name)
        if factory is None:
            logger.warning(f"⚠️  Unknown strategy {name!r} in STRATEGY_ORDER, skipping")
            continue
        if name == "mp36" and not settings.rapidapi_key:
            logger.info("Skipping mp36 strategy: RAPIDAPI_KEY not set")
            continue
        strategies.append(factory())
    return strategies


def build_pipeline(settings: Settings, transport=None) -> ResolutionPipeline:
    audio_cache = None
    stream_cache = None
    if settings.mode == "download":
        audio_cache = AudioCache(settings.audio_cache_dir, settings.cache_max_age, settings.base_url)
    else:
        stream_cache = StreamUrlCache(settings.stream_cache_ttl)

    return ResolutionPipeline(
        strategies=build_strategies(settings, audio_cache, transport),
        fallback_audio_url=settings.fallback_audio_url,
        title_fetcher=functools.partial(fetch_title, timeout=settings.metadata_timeout, transport=transport),
        audio_cache=audio_cache,
        stream_cache=stream_cache,
    )
