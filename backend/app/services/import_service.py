from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime

from backend.app.repositories.analytics_repository import (
    AnalyticsRepository,
    ChannelSnapshot,
    VideoRecord,
)
from backend.app.repositories.profile_repository import ProfileRepository
from backend.app.services.youtube_fetcher import (
    ChannelStatistics,
    FetchedVideo,
    YouTubeChannelFetcher,
)
from backend.app.services.youtube_oauth_service import YouTubeOAuthService
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("stratly.youtube.import")


@dataclass(frozen=True)
class EngagementTotals:
    views: int
    likes: int
    comments: int
    engagement_rate: float


@dataclass(frozen=True)
class ImportSummary:
    success: bool
    channel_id: str
    videos_imported: int
    snapshot_date: date
    statistics: ChannelStatistics


def summarize_engagement(videos: list[FetchedVideo]) -> EngagementTotals:
    views = sum(video.views for video in videos)
    likes = sum(video.likes for video in videos)
    comments = sum(video.comments for video in videos)
    rate = ((likes + comments) / views * 100) if views > 0 else 0.0
    return EngagementTotals(
        views=views,
        likes=likes,
        comments=comments,
        engagement_rate=round(rate, 2),
    )


class YouTubeImportService:
    def __init__(
        self,
        *,
        oauth_service: YouTubeOAuthService,
        fetcher: YouTubeChannelFetcher,
        analytics_repository: AnalyticsRepository,
        profile_repository: ProfileRepository,
        video_limit: int = 30,
        telemetry: TelemetryClient | None = None,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._oauth_service = oauth_service
        self._fetcher = fetcher
        self._analytics_repository = analytics_repository
        self._profile_repository = profile_repository
        self._video_limit = max(1, video_limit)
        self._telemetry = telemetry or TelemetryClient.disabled()
        self._today = today or (lambda: datetime.now(UTC).date())

    def import_channel(self, user_id: str, channel_id: str) -> ImportSummary:
        """Fetch channel statistics and recent uploads, then upsert them.

        Each write is its own statement. A failure part way through leaves the rows
        already written in place; re-running the import converges on the same state.
        """
        statistics = self._oauth_service.call_with_access_token(
            user_id,
            lambda token: self._fetcher.get_channel_statistics(token, channel_id),
        )
        videos = self._oauth_service.call_with_access_token(
            user_id,
            lambda token: self._fetcher.get_recent_videos(
                token,
                channel_id,
                max_results=self._video_limit,
                uploads_playlist_id=statistics.uploads_playlist_id,
            ),
        )

        snapshot_date = self._today()
        totals = summarize_engagement(videos)
        self._analytics_repository.upsert_channel_snapshot(
            ChannelSnapshot(
                channel_id=channel_id,
                snapshot_date=snapshot_date,
                user_id=user_id,
                subscribers=statistics.subscribers,
                total_views=statistics.views,
                total_videos=statistics.videos,
                recent_views=totals.views,
                recent_likes=totals.likes,
                recent_comments=totals.comments,
                engagement_rate=totals.engagement_rate,
            )
        )

        for video in videos:
            self._analytics_repository.upsert_video(
                VideoRecord(
                    video_id=video.video_id,
                    user_id=user_id,
                    channel_id=channel_id,
                    title=video.title,
                    description=video.description,
                    published_at=video.published_at,
                    views=video.views,
                    likes=video.likes,
                    comments=video.comments,
                    duration_seconds=video.duration_seconds,
                    thumbnail_url=video.thumbnail_url,
                    tags=video.tags,
                    category_id=video.category_id,
                )
            )

        self._profile_repository.update_channel_identity(
            user_id,
            channel_title=statistics.title,
            channel_thumbnail=statistics.thumbnail_url,
        )

        LOGGER.info(
            "youtube import completed user_id=%s channel_id=%s videos=%s snapshot_date=%s",
            user_id,
            channel_id,
            len(videos),
            snapshot_date.isoformat(),
        )
        self._telemetry.emit(
            "youtube.import.completed",
            user_id=user_id,
            channel_id=channel_id,
            videos_imported=len(videos),
        )
        return ImportSummary(
            success=True,
            channel_id=channel_id,
            videos_imported=len(videos),
            snapshot_date=snapshot_date,
            statistics=statistics,
        )

    def get_live_channel_statistics(self, user_id: str, channel_id: str) -> ChannelStatistics:
        return self._oauth_service.call_with_access_token(
            user_id,
            lambda token: self._fetcher.get_channel_statistics(token, channel_id),
        )
