"""
yt-dlp subprocess extraction.

The tool runs as a child process so a hung extraction can be killed
outright. Two modes:
- URL only (-g): stdout ends with the direct googlevideo URL.
- Download (-x): yt-dlp writes <id>.<ext> plus <id>.info.json into a
  staging directory, which is then adopted by the AudioCache.

Each run uses one ClientProfile. YouTube applies different restrictions
per client, so when one identity is blocked the next one often works.
"""

import asyncio
import contextlib
import json
import logging
import shlex
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .cache import ACCEPTED_EXTENSIONS, AudioCache, is_cacheable_id
from .errors import FatalLaunchError, StrategyFailed
from .strategies import ExtractionResult, ExtractionStrategy
from .urls import VideoReference, watch_url

logger = logging.getLogger("ytaudio.ytdlp")

# Seconds granted on top of the per-profile timeouts for killing and reaping
KILL_GRACE = 5.0


@dataclass(frozen=True)
class ClientProfile:
    name: str
    player_client: str
    format_selector: str
    user_agent: str

    def args(self) -> list[str]:
        return [
            "-f", self.format_selector,
            "--extractor-args", f"youtube:player_client={self.player_client}",
            "--user-agent", self.user_agent,
        ]


PROFILES = {
    "ios": ClientProfile(
        name="ios",
        player_client="ios",
        format_selector="bestaudio[ext=m4a]/bestaudio/best",
        user_agent="com.google.ios.youtube/19.29.1 (iPhone16,2; U; CPU iOS 17_5_1 like Mac OS X;)",
    ),
    "web": ClientProfile(
        name="web",
        player_client="web",
        format_selector="bestaudio[ext=m4a]/bestaudio[ext=webm]/bestaudio/best",
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    ),
    "mweb": ClientProfile(
        name="mweb",
        player_client="mweb",
        format_selector="bestaudio[ext=m4a]/bestaudio/best",
        user_agent="Mozilla/5.0 (iPhone; CPU iPhone OS 17_5 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.5 Mobile/15E148 Safari/604.1",
    ),
    "tv": ClientProfile(
        name="tv",
        player_client="tv",
        format_selector="bestaudio/best",
        user_agent="Mozilla/5.0 (ChromiumStylePlatform) Cobalt/Version",
    ),
}


def get_profiles(names: Iterable[str]) -> list[ClientProfile]:
    profiles = []
    for name in names:
        profile = PROFILES.get(name.strip().lower())
        if profile is None:
            logger.warning(f"⚠️  Unknown yt-dlp client profile {name!r}, skipping")
            continue
        profiles.append(profile)
    return profiles


# ---------- Output parsing ----------
@dataclass(frozen=True)
class ParsedUrl:
    url: str


@dataclass(frozen=True)
class ParseFailure:
    reason: str


def parse_stream_url(lines: Iterable[str]) -> ParsedUrl | ParseFailure:
    """The last non-empty stdout line that starts with http is the stream."""
    non_empty = [line.strip() for line in lines if line and line.strip()]
    if not non_empty:
        return ParseFailure("empty output")
    for line in reversed(non_empty):
        if line.startswith("http"):
            return ParsedUrl(line)
    return ParseFailure(f"no URL in output (last line: {non_empty[-1][:60]!r})")


@dataclass(frozen=True)
class SidecarMeta:
    title: Optional[str]
    duration_seconds: Optional[int]


def parse_sidecar(path: Path) -> SidecarMeta | None:
    """Read title/duration from a yt-dlp .info.json, or None if unusable."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(data, dict):
        return None

    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        title = None

    duration = data.get("duration")
    try:
        duration = int(round(float(duration))) if duration is not None else None
    except (TypeError, ValueError):
        duration = None

    if title is None and duration is None:
        return None
    return SidecarMeta(title=title.strip() if title else None, duration_seconds=duration)


def find_output_file(directory: Path, video_id: str) -> Path | None:
    for ext in ACCEPTED_EXTENSIONS:
        candidate = directory / f"{video_id}{ext}"
        if candidate.is_file() and candidate.stat().st_size > 0:
            return candidate
    return None


def tool_available(command: str | list[str]) -> bool:
    """True if the executable of a tool command line is on PATH."""
    argv = shlex.split(command) if isinstance(command, str) else list(command)
    return bool(argv) and shutil.which(argv[0]) is not None


def _last_line(text: str) -> str:
    lines = [line for line in text.strip().splitlines() if line.strip()]
    return lines[-1][:200] if lines else "no output"


@dataclass
class ProcessOutput:
    returncode: int
    stdout_lines: list[str]
    stderr: str


# ---------- Runner ----------
class YtDlpRunner:
    """Launches yt-dlp with one client profile and enforces a hard timeout."""

    def __init__(
        self,
        command: str | list[str] = "yt-dlp",
        cache: AudioCache | None = None,
        cookie_file: str | None = None,
        ffmpeg_location: str | None = None,
        max_concurrent: int = 4,
    ):
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        self.cache = cache
        self.cookie_file = cookie_file
        self.ffmpeg_location = ffmpeg_location
        self._semaphore = asyncio.Semaphore(max_concurrent)

    def build_command(self, ref: VideoReference, profile: ClientProfile, output_dir: Path | None = None) -> list[str]:
        cmd = [*self.command, "--no-playlist", "--no-warnings", "--no-progress"]

        if output_dir is None:
            cmd.append("-g")
        else:
            cmd += [
                "-x",
                "--audio-format", "mp3",
                "--audio-quality", "192K",
                "--write-info-json",
                "-o", str(output_dir / f"{ref.video_id}.%(ext)s"),
            ]
            if self.ffmpeg_location:
                cmd += ["--ffmpeg-location", self.ffmpeg_location]

        if self.cookie_file and Path(self.cookie_file).exists():
            cmd += ["--cookies", self.cookie_file]

        cmd += profile.args()
        cmd += ["--", watch_url(ref.video_id)]
        return cmd

    async def _communicate(self, proc: asyncio.subprocess.Process) -> tuple[list[str], str, int]:
        lines: list[str] = []

        async def read_stdout():
            while True:
                raw = await proc.stdout.readline()
                if not raw:
                    break
                line = raw.decode(errors="replace").strip()
                if line:
                    lines.append(line)

        # stderr must be drained concurrently or a chatty child blocks on a full pipe
        _, stderr = await asyncio.gather(read_stdout(), proc.stderr.read())
        returncode = await proc.wait()
        return lines, stderr.decode(errors="replace"), returncode

    async def execute(self, cmd: list[str], timeout: float, label: str = "ytdlp") -> ProcessOutput:
        """
        Run the tool and collect its output.

        Raises:
            StrategyFailed: Tool missing or not executable, or timed out.
            FatalLaunchError: The OS could not start a process at all.
        """
        async with self._semaphore:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except (FileNotFoundError, PermissionError) as e:
                raise StrategyFailed(label, f"cannot launch {cmd[0]}: {e.strerror or e}") from e
            except (OSError, NotImplementedError) as e:
                raise FatalLaunchError(f"Could not start extraction process: {e}") from e

            try:
                lines, stderr, returncode = await asyncio.wait_for(self._communicate(proc), timeout)
            except asyncio.TimeoutError:
                raise StrategyFailed(label, f"timed out after {timeout:.1f}s") from None
            finally:
                # Also reached on cancellation from the pipeline; the tool has no graceful stop
                if proc.returncode is None:
                    with contextlib.suppress(ProcessLookupError):
                        proc.kill()
                    await proc.wait()

        return ProcessOutput(returncode=returncode, stdout_lines=lines, stderr=stderr)

    async def run(
        self,
        ref: VideoReference,
        profile: ClientProfile,
        timeout: float,
        download: bool = False,
    ) -> ExtractionResult:
        label = f"ytdlp:{profile.name}"
        if download:
            return await self._run_download(ref, profile, timeout, label)

        output = await self.execute(self.build_command(ref, profile), timeout, label)
        if output.returncode != 0:
            raise StrategyFailed(label, f"exit {output.returncode}: {_last_line(output.stderr)}")

        parsed = parse_stream_url(output.stdout_lines)
        if isinstance(parsed, ParseFailure):
            raise StrategyFailed(label, parsed.reason)

        return ExtractionResult(audio_url=parsed.url, is_direct_stream=True, source_strategy=label)

    async def _run_download(self, ref, profile, timeout, label) -> ExtractionResult:
        if self.cache is None:
            raise StrategyFailed(label, "download mode needs an audio cache")
        if not is_cacheable_id(ref.video_id):
            raise StrategyFailed(label, "video ID cannot be used as a file name")

        staging = self.cache.staging_dir(ref.video_id)
        try:
            output = await self.execute(self.build_command(ref, profile, staging), timeout, label)
            if output.returncode != 0:
                raise StrategyFailed(label, f"exit {output.returncode}: {_last_line(output.stderr)}")

            audio_file = find_output_file(staging, ref.video_id)
            if audio_file is None:
                raise StrategyFailed(label, "no audio file written")

            sidecar = parse_sidecar(staging / f"{ref.video_id}.info.json")
            entry = await asyncio.to_thread(
                self.cache.store,
                ref.video_id,
                audio_file,
                sidecar.title if sidecar else None,
                sidecar.duration_seconds if sidecar else None,
            )
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        return ExtractionResult(
            audio_url=self.cache.url_for(entry),
            is_direct_stream=False,
            source_strategy=label,
            title=entry.title,
            duration_seconds=entry.duration_seconds,
        )


class YtDlpStrategy(ExtractionStrategy):
    """Tries each client profile in order before giving up."""

    name = "ytdlp"

    def __init__(
        self,
        runner: YtDlpRunner,
        profiles: list[ClientProfile],
        profile_timeout: float = 30.0,
        download: bool = False,
    ):
        self.runner = runner
        self.profiles = profiles
        self.profile_timeout = profile_timeout
        self.download = download

    @property
    def timeout(self) -> float:
        return self.profile_timeout * max(1, len(self.profiles)) + KILL_GRACE

    async def attempt(self, ref: VideoReference) -> ExtractionResult:
        reasons = []
        for profile in self.profiles:
            try:
                logger.info(f"🔄 yt-dlp {profile.name} client for {ref.video_id}")
                return await self.runner.run(ref, profile, self.profile_timeout, download=self.download)
            except StrategyFailed as e:
                logger.warning(f"yt-dlp {profile.name} client failed: {e.reason}")
                reasons.append(f"{profile.name}: {e.reason}")
        raise StrategyFailed(self.name, "; ".join(reasons) or "no client profiles configured")
