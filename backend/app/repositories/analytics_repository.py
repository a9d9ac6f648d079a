from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date

from backend.app.repositories.common import decode_str_list, to_optional_str, utc_now_iso
from backend.app.repositories.database import Database


@dataclass(frozen=True)
class ChannelSnapshot:
    channel_id: str
    snapshot_date: date
    user_id: str
    subscribers: int
    total_views: int
    total_videos: int
    recent_views: int = 0
    recent_likes: int = 0
    recent_comments: int = 0
    engagement_rate: float = 0.0


@dataclass(frozen=True)
class VideoRecord:
    video_id: str
    user_id: str
    channel_id: str
    title: str
    description: str
    published_at: str | None
    views: int
    likes: int
    comments: int
    duration_seconds: int
    thumbnail_url: str | None
    tags: tuple[str, ...]
    category_id: str | None


class AnalyticsRepository:
    """Daily channel snapshots and per-video records, both keyed by natural keys."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def upsert_channel_snapshot(self, snapshot: ChannelSnapshot) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO channel_snapshots (
                    channel_id,
                    snapshot_date,
                    user_id,
                    subscribers,
                    total_views,
                    total_videos,
                    recent_views,
                    recent_likes,
                    recent_comments,
                    engagement_rate,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(channel_id, snapshot_date) DO UPDATE SET
                    user_id = excluded.user_id,
                    subscribers = excluded.subscribers,
                    total_views = excluded.total_views,
                    total_videos = excluded.total_videos,
                    recent_views = excluded.recent_views,
                    recent_likes = excluded.recent_likes,
                    recent_comments = excluded.recent_comments,
                    engagement_rate = excluded.engagement_rate,
                    updated_at = excluded.updated_at
                """,
                (
                    snapshot.channel_id,
                    snapshot.snapshot_date.isoformat(),
                    snapshot.user_id,
                    snapshot.subscribers,
                    snapshot.total_views,
                    snapshot.total_videos,
                    snapshot.recent_views,
                    snapshot.recent_likes,
                    snapshot.recent_comments,
                    snapshot.engagement_rate,
                    utc_now_iso(),
                ),
            )

    def upsert_video(self, video: VideoRecord) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO video_records (
                    video_id,
                    user_id,
                    channel_id,
                    title,
                    description,
                    published_at,
                    views,
                    likes,
                    comments,
                    duration_seconds,
                    thumbnail_url,
                    tags_json,
                    category_id,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(video_id) DO UPDATE SET
                    user_id = excluded.user_id,
                    channel_id = excluded.channel_id,
                    title = excluded.title,
                    description = excluded.description,
                    published_at = excluded.published_at,
                    views = excluded.views,
                    likes = excluded.likes,
                    comments = excluded.comments,
                    duration_seconds = excluded.duration_seconds,
                    thumbnail_url = excluded.thumbnail_url,
                    tags_json = excluded.tags_json,
                    category_id = excluded.category_id,
                    updated_at = excluded.updated_at
                """,
                (
                    video.video_id,
                    video.user_id,
                    video.channel_id,
                    video.title,
                    video.description,
                    video.published_at,
                    video.views,
                    video.likes,
                    video.comments,
                    video.duration_seconds,
                    video.thumbnail_url,
                    json.dumps(list(video.tags)),
                    video.category_id,
                    utc_now_iso(),
                ),
            )

    def list_snapshots(self, channel_id: str, *, limit: int = 30) -> list[ChannelSnapshot]:
        """Return the newest ``limit`` daily snapshots in date order.

        Readback helper for maintenance scripts and tests; no route serves history yet.
        """
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM (
                    SELECT *
                    FROM channel_snapshots
                    WHERE channel_id = ?
                    ORDER BY snapshot_date DESC
                    LIMIT ?
                )
                ORDER BY snapshot_date ASC
                """,
                (channel_id, max(1, limit)),
            ).fetchall()

        return [
            ChannelSnapshot(
                channel_id=str(row["channel_id"]),
                snapshot_date=date.fromisoformat(str(row["snapshot_date"])),
                user_id=str(row["user_id"]),
                subscribers=int(row["subscribers"]),
                total_views=int(row["total_views"]),
                total_videos=int(row["total_videos"]),
                recent_views=int(row["recent_views"]),
                recent_likes=int(row["recent_likes"]),
                recent_comments=int(row["recent_comments"]),
                engagement_rate=float(row["engagement_rate"]),
            )
            for row in rows
        ]

    def list_videos(self, channel_id: str, *, limit: int = 50) -> list[VideoRecord]:
        """Readback helper: stored videos, most recently published first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM video_records
                WHERE channel_id = ?
                ORDER BY published_at DESC
                LIMIT ?
                """,
                (channel_id, max(1, limit)),
            ).fetchall()

        return [
            VideoRecord(
                video_id=str(row["video_id"]),
                user_id=str(row["user_id"]),
                channel_id=str(row["channel_id"]),
                title=str(row["title"]),
                description=str(row["description"]),
                published_at=to_optional_str(row["published_at"]),
                views=int(row["views"]),
                likes=int(row["likes"]),
                comments=int(row["comments"]),
                duration_seconds=int(row["duration_seconds"]),
                thumbnail_url=to_optional_str(row["thumbnail_url"]),
                tags=decode_str_list(row["tags_json"]),
                category_id=to_optional_str(row["category_id"]),
            )
            for row in rows
        ]
