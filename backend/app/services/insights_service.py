from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from backend.app.models.youtube_contracts import AnalyzeRequest
from backend.app.repositories.analysis_cache_repository import (
    AnalysisCacheRepository,
    CachedAnalysis,
)
from backend.app.repositories.profile_repository import ProfileRepository
from backend.app.services.ai_analyzer import ChannelSummary, VideoSample, YouTubeAIAnalyzer
from backend.app.services.youtube_oauth_service import YouTubeNotConnectedError
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("stratly.ai.insights")


@dataclass(frozen=True)
class InsightsResult:
    generated_at: datetime
    cached: bool
    analysis: str | None = None
    ideas: list[str] | None = None


def _utc_now() -> datetime:
    return datetime.now(UTC)


class InsightsService:
    """Cache-aside front for the analyzer: channel analyses are kept per user and channel."""

    def __init__(
        self,
        *,
        analyzer: YouTubeAIAnalyzer,
        cache_repository: AnalysisCacheRepository,
        profile_repository: ProfileRepository,
        cache_ttl: timedelta = timedelta(hours=24),
        telemetry: TelemetryClient | None = None,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._analyzer = analyzer
        self._cache_repository = cache_repository
        self._profile_repository = profile_repository
        self._cache_ttl = cache_ttl
        self._telemetry = telemetry or TelemetryClient.disabled()
        self._now = now

    def analyze(self, user_id: str, request: AnalyzeRequest) -> InsightsResult:
        videos = [
            VideoSample(
                video_title=video.video_title,
                views=video.views,
                likes=video.likes,
                comments=video.comments,
                published_at=video.published_at,
                tags=tuple(video.tags),
            )
            for video in request.videos
        ]

        if request.analysis_type == "ideas":
            ideas = self._analyzer.generate_video_ideas(videos)
            self._telemetry.emit(
                "ai.ideas.generated",
                user_id=user_id,
                provider=self._analyzer.provider_name,
                ideas=len(ideas),
            )
            return InsightsResult(generated_at=self._now(), cached=False, ideas=ideas)

        profile = self._profile_repository.get(user_id)
        channel_id = profile.youtube_channel_id if profile is not None else None
        if channel_id is None:
            raise YouTubeNotConnectedError("YouTube channel not connected")

        now = self._now()
        if not request.force_refresh:
            cached = self._cache_repository.get_fresh(
                user_id=user_id,
                channel_id=channel_id,
                now=now,
            )
            if cached is not None:
                LOGGER.info("ai analysis cache_hit user_id=%s channel_id=%s", user_id, channel_id)
                self._telemetry.emit(
                    "ai.analysis.cache_hit",
                    user_id=user_id,
                    channel_id=channel_id,
                )
                return InsightsResult(
                    generated_at=cached.created_at,
                    cached=True,
                    analysis=cached.analysis_text,
                )

        channel = ChannelSummary(
            title=request.channel_stats.title,
            subscribers=request.channel_stats.subscribers,
            total_views=request.channel_stats.total_views,
        )
        analysis = self._analyzer.analyze_channel(videos, channel)
        if analysis.cacheable:
            self._cache_repository.upsert(
                CachedAnalysis(
                    user_id=user_id,
                    channel_id=channel_id,
                    analysis_text=analysis.text,
                    provider=analysis.provider,
                    created_at=now,
                    expires_at=now + self._cache_ttl,
                )
            )
        LOGGER.info(
            "ai analysis generated user_id=%s channel_id=%s provider=%s degraded=%s cached=%s",
            user_id,
            channel_id,
            analysis.provider,
            analysis.degraded,
            analysis.cacheable,
        )
        self._telemetry.emit(
            "ai.analysis.generated",
            user_id=user_id,
            channel_id=channel_id,
            provider=analysis.provider,
            degraded=analysis.degraded,
            force_refresh=request.force_refresh,
        )
        return InsightsResult(generated_at=now, cached=False, analysis=analysis.text)
