from __future__ import annotations

import json

import pytest

from backend.app.services.ai_analyzer import (
    CHANNEL_ANALYSIS_SECTIONS,
    DEMO_MODE_MARKER,
    FALLBACK_NOTICE,
    MAX_VIDEO_IDEAS,
    AIProviderConfig,
    ChannelSummary,
    VideoSample,
    YouTubeAIAnalyzer,
    compute_video_metrics,
    demo_video_ideas,
    split_video_ideas,
)
from backend.app.services.http_retry import (
    HttpRequest,
    HttpResponse,
    RetryPolicy,
    UpstreamTransportError,
)

CHANNEL = ChannelSummary(title="Test Channel", subscribers=1500, total_views=120000)
PROVIDER_ANALYSIS = "### 1. Executive Diagnosis\nSteady growth with room to improve."


def _videos(count: int = 10) -> list[VideoSample]:
    return [
        VideoSample(
            video_title=f"Video {index}",
            views=1000 * (index + 1),
            likes=50,
            comments=10,
            tags=("tech", "review"),
        )
        for index in range(count)
    ]


class _RecordingProvider:
    def __init__(self, *responses: HttpResponse | Exception) -> None:
        self.requests: list[HttpRequest] = []
        self._responses = list(responses)

    def send(self, request: HttpRequest) -> HttpResponse:
        self.requests.append(request)
        outcome = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def body(self, index: int = -1) -> dict[str, object]:
        return json.loads(self.requests[index].body or b"{}")


def _openai_reply(text: str) -> HttpResponse:
    return HttpResponse(
        status_code=200,
        body=json.dumps({"choices": [{"message": {"content": text}}]}).encode("utf-8"),
    )


def _gemini_reply(*parts: str) -> HttpResponse:
    payload = {"candidates": [{"content": {"parts": [{"text": part} for part in parts]}}]}
    return HttpResponse(status_code=200, body=json.dumps(payload).encode("utf-8"))


def _analyzer(config: AIProviderConfig, provider: _RecordingProvider) -> YouTubeAIAnalyzer:
    return YouTubeAIAnalyzer(
        config=config,
        send=provider.send,
        retry_policy=RetryPolicy(max_attempts=2, base_delay_ms=1, network_delay_ms=1),
        sleep=lambda _: None,
    )


def test_provider_resolution() -> None:
    assert AIProviderConfig().resolve_provider() is None
    assert AIProviderConfig(openai_api_key="sk").resolve_provider() == "openai"
    assert AIProviderConfig(gemini_api_key="g").resolve_provider() == "gemini"
    both = {"openai_api_key": "sk", "gemini_api_key": "g"}
    assert AIProviderConfig(**both).resolve_provider() == "openai"
    assert AIProviderConfig(provider="gemini", **both).resolve_provider() == "gemini"
    assert AIProviderConfig(provider="gemini", openai_api_key="sk").resolve_provider() is None


def test_metrics_use_rounded_averages_and_top_three() -> None:
    metrics = compute_video_metrics(_videos(4))

    assert metrics.total_views == 10000
    assert metrics.average_views == 2500
    assert metrics.engagement_rate == 2.4
    assert [video.video_title for video in metrics.top_videos] == ["Video 3", "Video 2", "Video 1"]


def test_metrics_for_no_videos() -> None:
    metrics = compute_video_metrics([])

    assert metrics.average_views == 0
    assert metrics.engagement_rate == 0.0
    assert metrics.top_videos == ()


def test_demo_analysis_without_provider() -> None:
    provider = _RecordingProvider(_openai_reply("unused"))
    analyzer = _analyzer(AIProviderConfig(), provider)

    analysis = analyzer.analyze_channel_performance(_videos(), CHANNEL)

    assert analyzer.provider_name == "demo"
    assert DEMO_MODE_MARKER in analysis
    assert '"Video 9"' in analysis
    assert FALLBACK_NOTICE not in analysis
    assert provider.requests == []


def test_demo_ideas_without_provider() -> None:
    analyzer = _analyzer(AIProviderConfig(), _RecordingProvider(_openai_reply("unused")))

    ideas = analyzer.generate_video_ideas([])

    assert ideas == demo_video_ideas()
    assert len(ideas) == MAX_VIDEO_IDEAS


def test_openai_analysis_is_returned_verbatim() -> None:
    provider = _RecordingProvider(_openai_reply(PROVIDER_ANALYSIS))
    analyzer = _analyzer(AIProviderConfig(openai_api_key="sk-test"), provider)

    analysis = analyzer.analyze_channel_performance(_videos(), CHANNEL)

    assert analysis == PROVIDER_ANALYSIS
    assert analyzer.provider_name == "openai"
    [request] = provider.requests
    assert request.url == "https://api.openai.com/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = provider.body()
    assert body["model"] == "gpt-4o-mini"
    messages = body["messages"]
    assert isinstance(messages, list)
    system_prompt = messages[0]["content"]
    user_prompt = messages[1]["content"]
    for section in CHANNEL_ANALYSIS_SECTIONS:
        assert section in system_prompt
    assert "- Subscribers: 1,500" in user_prompt
    assert "- Recent videos analyzed: 10" in user_prompt
    assert '1. "Video 9" views=10,000' in user_prompt


def test_gemini_analysis_joins_text_parts() -> None:
    provider = _RecordingProvider(_gemini_reply("### 1. Executive ", "Diagnosis\nGood."))
    analyzer = _analyzer(AIProviderConfig(gemini_api_key="g-key"), provider)

    analysis = analyzer.analyze_channel_performance(_videos(3), CHANNEL)

    assert analysis == "### 1. Executive Diagnosis\nGood."
    [request] = provider.requests
    assert request.url == (
        "https://generativelanguage.googleapis.com/v1beta/models/"
        "gemini-1.5-flash:generateContent"
    )
    assert request.headers["x-goog-api-key"] == "g-key"


def test_provider_failure_falls_back_to_demo_with_notice() -> None:
    provider = _RecordingProvider(HttpResponse(status_code=500, body=b"oops"))
    analyzer = _analyzer(AIProviderConfig(openai_api_key="sk-test"), provider)

    analysis = analyzer.analyze_channel_performance(_videos(), CHANNEL)

    assert DEMO_MODE_MARKER in analysis
    assert analysis.endswith(FALLBACK_NOTICE)


def test_channel_analysis_reports_its_origin() -> None:
    failing = _analyzer(
        AIProviderConfig(openai_api_key="sk-test"),
        _RecordingProvider(HttpResponse(status_code=500)),
    )
    answering = _analyzer(
        AIProviderConfig(openai_api_key="sk-test"),
        _RecordingProvider(_openai_reply(PROVIDER_ANALYSIS)),
    )
    demo = _analyzer(AIProviderConfig(), _RecordingProvider(_openai_reply("unused")))

    degraded = failing.analyze_channel(_videos(), CHANNEL)
    written = answering.analyze_channel(_videos(), CHANNEL)
    example = demo.analyze_channel(_videos(), CHANNEL)

    assert (degraded.provider, degraded.degraded, degraded.cacheable) == ("openai", True, False)
    assert (written.provider, written.degraded, written.cacheable) == ("openai", False, True)
    assert (example.provider, example.degraded, example.cacheable) == ("demo", False, False)
    assert written.text == PROVIDER_ANALYSIS


def test_unreachable_provider_falls_back_after_retries() -> None:
    provider = _RecordingProvider(UpstreamTransportError("reset"))
    analyzer = _analyzer(AIProviderConfig(openai_api_key="sk-test"), provider)

    analysis = analyzer.analyze_channel_performance(_videos(), CHANNEL)

    assert analysis.endswith(FALLBACK_NOTICE)
    assert len(provider.requests) == 2


def test_empty_provider_reply_falls_back() -> None:
    provider = _RecordingProvider(HttpResponse(status_code=200, body=b'{"choices": []}'))
    analyzer = _analyzer(AIProviderConfig(openai_api_key="sk-test"), provider)

    assert analyzer.analyze_channel_performance(_videos(), CHANNEL).endswith(FALLBACK_NOTICE)


def test_ideas_prompt_uses_best_video() -> None:
    reply = "\n".join(
        f"**Title**: Idea number {index} #tech\n**Concept**: A long enough concept line here."
        for index in range(1, 4)
    )
    provider = _RecordingProvider(_openai_reply(reply))
    analyzer = _analyzer(AIProviderConfig(openai_api_key="sk-test"), provider)

    ideas = analyzer.generate_video_ideas(_videos())

    assert len(ideas) == 3
    assert ideas[0].startswith("**Title**: Idea number 1")
    messages = provider.body()["messages"]
    assert isinstance(messages, list)
    assert '- Title: "Video 9"' in messages[1]["content"]
    assert "- Tags: tech, review" in messages[1]["content"]


def test_ideas_with_provider_and_no_videos_is_empty() -> None:
    provider = _RecordingProvider(_openai_reply("unused"))
    analyzer = _analyzer(AIProviderConfig(openai_api_key="sk-test"), provider)

    assert analyzer.generate_video_ideas([]) == []
    assert provider.requests == []


def test_ideas_provider_failure_returns_demo_ideas() -> None:
    provider = _RecordingProvider(HttpResponse(status_code=401))
    analyzer = _analyzer(AIProviderConfig(openai_api_key="sk-test"), provider)

    assert analyzer.generate_video_ideas(_videos()) == demo_video_ideas()


def test_split_on_title_marker_drops_preamble_and_short_blocks() -> None:
    text = (
        "Here are your ideas:\n\n"
        "**Title**: First idea with plenty of words #one\n**Concept**: Something useful.\n\n"
        "**Title**: Tiny\n\n"
        "**Title**: Third idea that is also long enough #three\n**Tags**: a, b, c"
    )

    ideas = split_video_ideas(text)

    assert len(ideas) == 2
    assert ideas[0].startswith("**Title**: First idea")
    assert ideas[1].startswith("**Title**: Third idea")


def test_split_on_numbered_items_when_no_title_marker() -> None:
    long_line = "a detailed idea description that is clearly longer than fifty characters"
    text = "\n".join(f"{index}. Idea {index}: {long_line}" for index in range(1, 8))

    ideas = split_video_ideas(text)

    assert len(ideas) == MAX_VIDEO_IDEAS
    assert ideas[0] == f"Idea 1: {long_line}"


@pytest.mark.parametrize("text", ["", "1. short\n2. also short"])
def test_split_without_usable_blocks(text: str) -> None:
    assert split_video_ideas(text) == []
