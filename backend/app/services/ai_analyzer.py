from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, cast

from backend.app.services.http_retry import (
    HttpRequest,
    HttpResponse,
    RetryPolicy,
    UpstreamError,
    send_with_retry,
)
from backend.app.telemetry import elapsed_ms

LOGGER = logging.getLogger("stratly.ai")

DEMO_MODE_MARKER = "DEMO MODE"
FALLBACK_NOTICE = (
    "\n\n---\n*Fallback notice: the AI provider could not be reached, "
    "so an example analysis is shown instead.*"
)
MAX_VIDEO_IDEAS = 5
MIN_IDEA_LENGTH = 50
IDEA_TITLE_MARKER = "**Title**"
_NUMBERED_ITEM_PATTERN = re.compile(r"^\s*\d+[.)]\s+", re.MULTILINE)

CHANNEL_ANALYSIS_SECTIONS: tuple[str, ...] = (
    "### 1. Executive Diagnosis",
    "### 2. Strengths",
    "### 3. Priority Improvements",
    "### 4. Content & SEO Strategy",
    "### 5. Three-Step Action Plan",
)

ProviderName = Literal["openai", "gemini"]


class AIProviderError(Exception):
    pass


@dataclass(frozen=True)
class AIProviderConfig:
    provider: Literal["auto", "openai", "gemini"] = "auto"
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com/v1"
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-1.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    timeout_seconds: float = 30.0

    def resolve_provider(self) -> ProviderName | None:
        if self.provider in {"auto", "openai"} and self.openai_api_key:
            return "openai"
        if self.provider in {"auto", "gemini"} and self.gemini_api_key:
            return "gemini"
        return None


@dataclass(frozen=True)
class VideoSample:
    video_title: str
    views: int
    likes: int
    comments: int
    published_at: str | None = None
    tags: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ChannelSummary:
    title: str
    subscribers: int
    total_views: int


@dataclass(frozen=True)
class ChannelAnalysis:
    text: str
    provider: str
    degraded: bool

    @property
    def cacheable(self) -> bool:
        """True when the text came from a provider rather than the demo template."""
        return self.provider != "demo" and not self.degraded


@dataclass(frozen=True)
class VideoMetrics:
    total_views: int
    average_views: int
    engagement_rate: float
    top_videos: tuple[VideoSample, ...]


def compute_video_metrics(videos: Sequence[VideoSample]) -> VideoMetrics:
    total_views = sum(video.views for video in videos)
    total_engagement = sum(video.likes + video.comments for video in videos)
    average_views = round(total_views / len(videos)) if videos else 0
    engagement_rate = round(total_engagement / total_views * 100, 1) if total_views > 0 else 0.0
    top_videos = tuple(sorted(videos, key=lambda video: video.views, reverse=True)[:3])
    return VideoMetrics(
        total_views=total_views,
        average_views=average_views,
        engagement_rate=engagement_rate,
        top_videos=top_videos,
    )


class YouTubeAIAnalyzer:
    """Turns channel numbers into written recommendations.

    Without a configured provider every method answers with deterministic example text
    marked ``DEMO MODE``. Provider failures degrade to the same text plus a fallback
    notice, so callers never see an exception from here.
    """

    def __init__(
        self,
        *,
        config: AIProviderConfig,
        send: Callable[[HttpRequest], HttpResponse],
        retry_policy: RetryPolicy,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._send = send
        self._retry_policy = retry_policy
        self._sleep = sleep

    @property
    def provider_name(self) -> str:
        return self._config.resolve_provider() or "demo"

    def analyze_channel_performance(
        self,
        videos: Sequence[VideoSample],
        channel_stats: ChannelSummary,
    ) -> str:
        return self.analyze_channel(videos, channel_stats).text

    def analyze_channel(
        self,
        videos: Sequence[VideoSample],
        channel_stats: ChannelSummary,
    ) -> ChannelAnalysis:
        provider = self._config.resolve_provider()
        if provider is None:
            return ChannelAnalysis(
                text=demo_channel_analysis(videos),
                provider="demo",
                degraded=False,
            )

        metrics = compute_video_metrics(videos)
        try:
            text = self._complete(
                provider,
                system_prompt=_channel_system_prompt(),
                user_prompt=_channel_user_prompt(channel_stats, metrics, len(videos)),
            )
        except (AIProviderError, UpstreamError):
            LOGGER.warning("ai channel_analysis failed provider=%s", provider, exc_info=True)
            return ChannelAnalysis(
                text=demo_channel_analysis(videos) + FALLBACK_NOTICE,
                provider=provider,
                degraded=True,
            )
        return ChannelAnalysis(text=text, provider=provider, degraded=False)

    def generate_video_ideas(self, videos: Sequence[VideoSample]) -> list[str]:
        provider = self._config.resolve_provider()
        if provider is None:
            return demo_video_ideas()
        if not videos:
            return []

        best_video = max(videos, key=lambda video: video.views)
        try:
            text = self._complete(
                provider,
                system_prompt=_ideas_system_prompt(),
                user_prompt=_ideas_user_prompt(best_video),
            )
        except (AIProviderError, UpstreamError):
            LOGGER.warning("ai video_ideas failed provider=%s", provider, exc_info=True)
            return demo_video_ideas()
        return split_video_ideas(text)

    def _complete(self, provider: ProviderName, *, system_prompt: str, user_prompt: str) -> str:
        if provider == "openai":
            request = self._openai_request(system_prompt, user_prompt)
            extract = _extract_openai_text
        else:
            request = self._gemini_request(system_prompt, user_prompt)
            extract = _extract_gemini_text

        started_at = time.perf_counter()
        response = send_with_retry(
            lambda: self._send(request),
            policy=self._retry_policy,
            sleep=self._sleep,
            label=f"ai {provider}",
        )
        text = extract(response.json_object())
        if text is None:
            raise AIProviderError(f"{provider} returned no text")
        LOGGER.info(
            "ai completion provider=%s chars=%s duration_ms=%s",
            provider,
            len(text),
            elapsed_ms(started_at),
        )
        return text

    def _openai_request(self, system_prompt: str, user_prompt: str) -> HttpRequest:
        return HttpRequest.json_post(
            f"{self._config.openai_base_url}/chat/completions",
            {
                "model": self._config.openai_model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                "temperature": 0.7,
                "max_tokens": 1024,
            },
            headers={"Authorization": f"Bearer {self._config.openai_api_key}"},
        )

    def _gemini_request(self, system_prompt: str, user_prompt: str) -> HttpRequest:
        return HttpRequest.json_post(
            f"{self._config.gemini_base_url}/models/{self._config.gemini_model}:generateContent",
            {
                "systemInstruction": {"parts": [{"text": system_prompt}]},
                "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
                "generationConfig": {"temperature": 0.7, "maxOutputTokens": 1024},
            },
            headers={"x-goog-api-key": str(self._config.gemini_api_key)},
        )


def split_video_ideas(text: str) -> list[str]:
    if IDEA_TITLE_MARKER in text:
        blocks = [IDEA_TITLE_MARKER + part for part in text.split(IDEA_TITLE_MARKER)[1:]]
    else:
        blocks = _NUMBERED_ITEM_PATTERN.split(text)
    ideas = [block.strip() for block in blocks if len(block.strip()) > MIN_IDEA_LENGTH]
    return ideas[:MAX_VIDEO_IDEAS]


def demo_channel_analysis(videos: Sequence[VideoSample]) -> str:
    best_video = max(videos, key=lambda video: video.views) if videos else None
    best_title = best_video.video_title if best_video is not None else "your most recent upload"
    return f"""## {DEMO_MODE_MARKER}: AI analysis unavailable

This is an example analysis. Configure an OpenAI or Gemini API key to get a personalised
analysis of your channel.

{CHANNEL_ANALYSIS_SECTIONS[0]}
Your channel shows real potential on its strongest topics but struggles to keep viewers on
broader formats. Build on what already works before branching out.

{CHANNEL_ANALYSIS_SECTIONS[1]}
1. **In-demand topics**: "{best_title}" performed well, so you can target popular interests.
2. **Production quality**: your videos are clean and well edited.
3. **Clear niche**: a focused subject helps the algorithm find your audience.

{CHANNEL_ANALYSIS_SECTIONS[2]}
1. **Low engagement**: ask your audience direct questions.
2. **Thumbnails**: stronger contrast and fewer words.
3. **Calls to action**: remind viewers to subscribe.

### Enable real analysis
1. Create an API key with OpenAI or Google AI Studio.
2. Set `STRATLY_OPENAI_API_KEY` or `STRATLY_GEMINI_API_KEY`.
3. Restart the API.
"""


def demo_video_ideas() -> list[str]:
    return [
        (
            f"{IDEA_TITLE_MARKER}: Flagship Phones Compared: The Test Nobody Runs #tech\n"
            "**Concept**: An in-depth comparison focused on features reviewers skip. "
            "It builds anticipation before launch week.\n"
            "**Tags**: smartphone, comparison, tech, review, flagship"
        ),
        (
            f"{IDEA_TITLE_MARKER}: 5 Gadgets Under $50 That Changed My Desk #gadgets #budget\n"
            "**Concept**: A fast, shareable format that reaches viewers beyond your core niche. "
            "Great for discoverability.\n"
            "**Tags**: gadgets, budget tech, desk setup, amazon finds, tech"
        ),
        (
            f"{IDEA_TITLE_MARKER}: Is the Ecosystem Still Worth It in 2025? #ecosystem #opinion\n"
            "**Concept**: An honest critique invites debate, and debate drives comments. "
            "Pin a question to start the thread.\n"
            "**Tags**: ecosystem, opinion, laptop, phone, smartwatch"
        ),
        (
            f"{IDEA_TITLE_MARKER}: I Switched Phones for 30 Days #experiment\n"
            "**Concept**: A personal long-term test builds trust with the audience. "
            "Viewers return for the follow-up.\n"
            "**Tags**: 30 day challenge, long term review, android, switching, honest review"
        ),
        (
            f"{IDEA_TITLE_MARKER}: The Best Phone for Video This Year #filmmaking #cinematic\n"
            "**Concept**: High-value niche content for creators that positions you as an expert. "
            "Side-by-side footage keeps retention high.\n"
            "**Tags**: smartphone video, camera test, filmmaking, 4k, creator tools"
        ),
    ]


def _channel_system_prompt() -> str:
    sections = "\n".join(CHANNEL_ANALYSIS_SECTIONS)
    return (
        "You are Stratly, a YouTube growth strategist and data analyst. Analyze the channel "
        "data and write an actionable growth plan in Markdown. Use exactly these sections, "
        f"in this order:\n{sections}\n"
        f"Begin directly with \"{CHANNEL_ANALYSIS_SECTIONS[0]}\"."
    )


def _channel_user_prompt(channel: ChannelSummary, metrics: VideoMetrics, video_count: int) -> str:
    lines = [
        "## Channel Data",
        f"- Name: {channel.title}",
        f"- Subscribers: {channel.subscribers:,}",
        f"- Total views (recent videos): {metrics.total_views:,}",
        f"- Average views per video: {metrics.average_views:,}",
        f"- Engagement rate (likes+comments/views): {metrics.engagement_rate}%",
        f"- Recent videos analyzed: {video_count}",
        "",
        "## Top 3 videos by views",
    ]
    for index, video in enumerate(metrics.top_videos, start=1):
        lines.append(
            f'{index}. "{video.video_title}" views={video.views:,} '
            f"likes={video.likes:,} comments={video.comments:,}"
        )
    return "\n".join(lines)


def _ideas_system_prompt() -> str:
    return (
        "You generate YouTube video ideas. Based on the channel's best performing video, "
        f"write {MAX_VIDEO_IDEAS} distinct ideas. For each idea give a line starting with "
        f"{IDEA_TITLE_MARKER}: (a catchy title with 2-3 hashtags), a **Concept**: line of two "
        "sentences and a **Tags**: line with 5-7 tags. Start directly with the first idea."
    )


def _ideas_user_prompt(video: VideoSample) -> str:
    tags = ", ".join(video.tags) if video.tags else "N/A"
    return (
        "## Best Performing Video\n"
        f'- Title: "{video.video_title}"\n'
        f"- Stats: {video.views:,} views, {video.likes:,} likes\n"
        f"- Tags: {tags}"
    )


def _extract_openai_text(payload: dict[str, object]) -> str | None:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = cast(list[Any], choices)[0]
    if not isinstance(first, dict):
        return None
    message = cast(dict[str, Any], first).get("message")
    if not isinstance(message, dict):
        return None
    content = cast(dict[str, Any], message).get("content")
    if isinstance(content, str) and content.strip():
        return content
    return None


def _extract_gemini_text(payload: dict[str, object]) -> str | None:
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    first = cast(list[Any], candidates)[0]
    if not isinstance(first, dict):
        return None
    content = cast(dict[str, Any], first).get("content")
    if not isinstance(content, dict):
        return None
    parts = cast(dict[str, Any], content).get("parts")
    if not isinstance(parts, list):
        return None

    texts: list[str] = []
    for part in cast(list[Any], parts):
        if isinstance(part, dict):
            text = cast(dict[str, Any], part).get("text")
            if isinstance(text, str):
                texts.append(text)
    joined = "".join(texts)
    return joined if joined.strip() else None
