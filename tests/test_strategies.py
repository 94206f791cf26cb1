from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from backend.errors import StrategyFailed
from backend.strategies import (
    CobaltStrategy,
    ExtractionResult,
    InvidiousStrategy,
    Mp36Strategy,
    PipedStrategy,
    map_cobalt_response,
    map_invidious_response,
    map_mp36_response,
    map_piped_response,
    map_vevioz_response,
)
from backend.urls import VideoReference

REF = VideoReference(source_url="https://youtu.be/abc123", video_id="abc123")


def test_invidious_mapper_picks_highest_bitrate_audio() -> None:
    data = {
        "lengthSeconds": 213,
        "adaptiveFormats": [
            {"type": "video/mp4", "url": "https://v.example/video", "bitrate": "900000"},
            {"type": "audio/webm; codecs=opus", "url": "https://v.example/low", "bitrate": "50000"},
            {"type": "audio/mp4", "url": "https://v.example/high", "bitrate": "130000"},
        ],
    }

    mapped = map_invidious_response(data)

    assert mapped.url == "https://v.example/high"
    assert mapped.duration_seconds == 213


def test_invidious_mapper_rejects_error_and_video_only() -> None:
    assert map_invidious_response({"error": "Video unavailable"}) is None
    assert map_invidious_response({"adaptiveFormats": [{"type": "video/mp4", "url": "https://x"}]}) is None
    assert map_invidious_response([]) is None


def test_piped_mapper_reads_audio_streams() -> None:
    data = {
        "duration": 61,
        "audioStreams": [
            {"url": "https://p.example/a", "bitrate": 48000},
            {"url": "https://p.example/b", "bitrate": 160000},
            {"url": "not-a-url", "bitrate": 999999},
        ],
    }

    mapped = map_piped_response(data)

    assert mapped.url == "https://p.example/b"
    assert mapped.duration_seconds == 61
    assert map_piped_response({"audioStreams": []}) is None


def test_cobalt_mapper_requires_streamable_status() -> None:
    assert map_cobalt_response({"status": "tunnel", "url": "https://c.example/t"}).url == "https://c.example/t"
    assert map_cobalt_response({"status": "redirect", "url": "https://c.example/r"}).url == "https://c.example/r"
    assert map_cobalt_response({"status": "error", "error": {"code": "x"}}) is None
    assert map_cobalt_response({"status": "picker", "url": "https://c.example/p"}) is None


def test_vevioz_and_mp36_mappers() -> None:
    assert map_vevioz_response({"url": "https://vv.example/x.mp3"}).url == "https://vv.example/x.mp3"
    assert map_vevioz_response({"url": ""}) is None
    assert map_mp36_response({"status": "ok", "link": "https://m.example/x.mp3", "duration": 99.6}).duration_seconds == 99
    assert map_mp36_response({"status": "fail", "link": "https://m.example/x.mp3"}) is None


def test_extraction_result_requires_http_url() -> None:
    with pytest.raises(ValueError):
        ExtractionResult(audio_url="file:///etc/passwd", is_direct_stream=True, source_strategy="x")


def test_invidious_strategy_returns_direct_stream() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/videos/abc123"
        return httpx.Response(
            200,
            json={
                "lengthSeconds": "95",
                "adaptiveFormats": [{"type": "audio/mp4", "url": "https://cdn.example/a.m4a", "bitrate": "128000"}],
            },
        )

    strategy = InvidiousStrategy(["https://inv.example/"], 1.0, transport=httpx.MockTransport(handler))
    result = asyncio.run(strategy.attempt(REF))

    assert result.audio_url == "https://cdn.example/a.m4a"
    assert result.is_direct_stream is True
    assert result.source_strategy == "invidious"
    assert result.duration_seconds == 95
    assert result.title is None


def test_remote_strategy_moves_to_next_instance() -> None:
    hosts = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        if request.url.host == "down.example":
            return httpx.Response(503)
        return httpx.Response(200, json={"audioStreams": [{"url": "https://cdn.example/p.webm"}]})

    strategy = PipedStrategy(
        ["https://down.example", "https://up.example"], 1.0, transport=httpx.MockTransport(handler)
    )
    strategy.shuffle_instances = False
    result = asyncio.run(strategy.attempt(REF))

    assert hosts == ["down.example", "up.example"]
    assert result.audio_url == "https://cdn.example/p.webm"


def test_remote_strategy_raises_strategy_failed() -> None:
    strategy = PipedStrategy(
        ["https://piped.example"], 1.0, transport=httpx.MockTransport(lambda request: httpx.Response(500))
    )

    with pytest.raises(StrategyFailed) as exc:
        asyncio.run(strategy.attempt(REF))

    assert exc.value.strategy == "piped"
    assert "HTTP 500" in exc.value.reason


def test_remote_strategy_rejects_malformed_json() -> None:
    strategy = InvidiousStrategy(
        ["https://inv.example"], 1.0, transport=httpx.MockTransport(lambda request: httpx.Response(200, text="{oops"))
    )

    with pytest.raises(StrategyFailed, match="malformed JSON"):
        asyncio.run(strategy.attempt(REF))


def test_cobalt_strategy_posts_watch_url() -> None:
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"status": "tunnel", "url": "https://cobalt.example/tunnel?id=1"})

    strategy = CobaltStrategy(["https://cobalt.example"], 1.0, transport=httpx.MockTransport(handler))
    result = asyncio.run(strategy.attempt(REF))

    assert bodies[0]["url"] == "https://www.youtube.com/watch?v=abc123"
    assert bodies[0]["downloadMode"] == "audio"
    assert result.audio_url == "https://cobalt.example/tunnel?id=1"


def test_mp36_strategy_sends_api_key() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": "ok", "link": "https://mp36.example/abc123.mp3"})

    strategy = Mp36Strategy("secret-key", 1.0, transport=httpx.MockTransport(handler))
    result = asyncio.run(strategy.attempt(REF))

    assert seen[0].headers["X-RapidAPI-Key"] == "secret-key"
    assert seen[0].url.params["id"] == "abc123"
    assert result.audio_url == "https://mp36.example/abc123.mp3"


def test_remote_strategy_timeout_covers_tried_instances() -> None:
    strategy = InvidiousStrategy(["https://a", "https://b", "https://c", "https://d"], 2.0, max_instances=3)

    assert strategy.timeout == 6.0
