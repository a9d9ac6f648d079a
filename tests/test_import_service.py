from __future__ import annotations

import sqlite3
from datetime import date
from typing import TYPE_CHECKING, Any

import pytest

from backend.app.repositories.import_task_repository import ImportTaskRepository
from backend.app.services.import_service import summarize_engagement
from backend.app.services.import_task_runner import classify_import_error
from backend.app.services.youtube_fetcher import (
    ChannelNotFoundError,
    FetchedVideo,
    YouTubeApiError,
    YouTubeRateLimitedError,
)
from backend.app.services.youtube_oauth_service import (
    InvalidGrantError,
    YouTubeNotConnectedError,
)

if TYPE_CHECKING:
    from conftest import ServiceGraph


def _fetched(views: int, likes: int, comments: int) -> FetchedVideo:
    return FetchedVideo(
        video_id=f"v{views}",
        title="",
        description="",
        published_at=None,
        views=views,
        likes=likes,
        comments=comments,
        duration_seconds=0,
        thumbnail_url=None,
        tags=(),
        category_id=None,
    )


def test_engagement_rate_is_rounded_percentage() -> None:
    totals = summarize_engagement([_fetched(3000, 100, 7), _fetched(0, 0, 0)])

    assert totals.views == 3000
    assert totals.likes == 100
    assert totals.comments == 7
    assert totals.engagement_rate == 3.57


def test_engagement_rate_without_views_is_zero() -> None:
    assert summarize_engagement([]).engagement_rate == 0.0
    assert summarize_engagement([_fetched(0, 5, 5)]).engagement_rate == 0.0


def test_import_writes_snapshot_videos_and_channel_identity(
    services: ServiceGraph,
    make_video: Any,
) -> None:
    services.connect("u1")
    services.youtube.add_videos(make_video("a"), make_video("b"), make_video("c"))

    summary = services.importer.import_channel("u1", "UC123")

    assert summary.success is True
    assert summary.videos_imported == 3
    assert summary.snapshot_date == date(2025, 3, 14)

    [snapshot] = services.analytics.list_snapshots("UC123")
    assert snapshot.user_id == "u1"
    assert snapshot.subscribers == 1500
    assert snapshot.total_views == 120000
    assert snapshot.total_videos == 42
    assert snapshot.recent_views == 3000
    assert snapshot.recent_likes == 150
    assert snapshot.recent_comments == 30
    assert snapshot.engagement_rate == 6.0

    videos = services.analytics.list_videos("UC123")
    assert sorted(video.video_id for video in videos) == ["a", "b", "c"]
    assert videos[0].tags == ("tech", "review")

    profile = services.profiles.get("u1")
    assert profile is not None
    assert profile.youtube_channel_thumbnail == "https://img.example/high.jpg"


def test_import_looks_up_the_channel_once(services: ServiceGraph, make_video: Any) -> None:
    services.connect("u1")
    services.youtube.add_videos(make_video("a"))
    lookups_before = services.youtube.executions.count("channels")

    services.importer.import_channel("u1", "UC123")

    assert services.youtube.executions.count("channels") - lookups_before == 1
    assert services.youtube.executions.count("playlistItems") == 1


def test_import_twice_on_same_day_converges(
    services: ServiceGraph,
    make_channel: Any,
    make_video: Any,
) -> None:
    services.connect("u1")
    services.youtube.add_videos(make_video("a"), make_video("b"))

    services.importer.import_channel("u1", "UC123")
    services.youtube.channels_by_id["UC123"] = make_channel(subscribers="1600")
    services.youtube.videos_by_id["a"] = make_video("a", views="5000")
    services.importer.import_channel("u1", "UC123")

    [snapshot] = services.analytics.list_snapshots("UC123")
    assert snapshot.subscribers == 1600
    videos = {video.video_id: video for video in services.analytics.list_videos("UC123")}
    assert len(videos) == 2
    assert videos["a"].views == 5000


def test_import_on_next_day_adds_snapshot(services: ServiceGraph, make_video: Any) -> None:
    services.connect("u1")
    services.youtube.add_videos(make_video("a"))

    services.importer.import_channel("u1", "UC123")
    services.clock.advance(days=1)
    services.importer.import_channel("u1", "UC123")

    snapshots = services.analytics.list_snapshots("UC123")
    assert [snapshot.snapshot_date for snapshot in snapshots] == [
        date(2025, 3, 14),
        date(2025, 3, 15),
    ]


def test_import_refreshes_rejected_token(services: ServiceGraph, make_video: Any) -> None:
    services.connect("u1")
    services.youtube.rejected_tokens.add("a-stored")
    services.youtube.add_videos(make_video("a"))

    summary = services.importer.import_channel("u1", "UC123")

    assert summary.videos_imported == 1
    assert len(services.token_endpoint.requests) == 1


def test_live_channel_statistics(services: ServiceGraph) -> None:
    services.connect("u1")

    statistics = services.importer.get_live_channel_statistics("u1", "UC123")

    assert statistics.subscribers == 1500
    assert services.analytics.list_snapshots("UC123") == []


def test_task_runner_records_success(services: ServiceGraph, make_video: Any) -> None:
    services.connect("u1")
    services.youtube.add_videos(make_video("a"), make_video("b"))

    submitted = services.runner.submit("u1", "UC123")
    task = services.runner.get(submitted.task_id, "u1")

    assert submitted.task_id.startswith("imp_")
    assert submitted.status == "pending"
    assert task is not None
    assert task.status == "succeeded"
    assert task.videos_imported == 2
    assert task.error_code is None
    assert task.started_at is not None
    assert task.finished_at is not None


def test_task_runner_records_failure_code(services: ServiceGraph) -> None:
    services.connect("u1")

    submitted = services.runner.submit("u1", "UCmissing")
    task = services.runner.get(submitted.task_id, "u1")

    assert task is not None
    assert task.status == "failed"
    assert task.error_code == "channel_not_found"
    assert task.error_message == "Channel UCmissing not found"
    assert task.videos_imported is None


@pytest.mark.parametrize("status_write", ["mark_running", "mark_succeeded"])
def test_task_runner_records_status_write_failures(
    services: ServiceGraph,
    make_video: Any,
    monkeypatch: pytest.MonkeyPatch,
    status_write: str,
) -> None:
    services.connect("u1")
    services.youtube.add_videos(make_video("a"))

    def fail(*_args: object, **_kwargs: object) -> None:
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(ImportTaskRepository, status_write, fail)

    submitted = services.runner.submit("u1", "UC123")
    task = services.runner.get(submitted.task_id, "u1")

    assert task is not None
    assert task.status == "failed"
    assert task.error_code == "database_error"
    assert task.error_message == "database is locked"
    assert task.finished_at is not None

def test_task_runner_for_disconnected_user(services: ServiceGraph) -> None:
    services.profiles.ensure("u2")

    submitted = services.runner.submit("u2", "UC123")
    task = services.runner.get(submitted.task_id, "u2")

    assert task is not None
    assert task.error_code == "youtube_not_connected"


def test_tasks_are_scoped_to_their_owner(services: ServiceGraph) -> None:
    services.connect("u1")
    submitted = services.runner.submit("u1", "UC123")

    assert services.runner.get(submitted.task_id, "someone-else") is None
    assert services.runner.get("imp_unknown", "u1") is None


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (InvalidGrantError("revoked"), "invalid_grant"),
        (YouTubeNotConnectedError("no channel"), "youtube_not_connected"),
        (ChannelNotFoundError("gone"), "channel_not_found"),
        (YouTubeRateLimitedError("slow"), "rate_limited"),
        (YouTubeApiError("boom", status_code=500), "youtube_api_error"),
        (sqlite3.OperationalError("locked"), "database_error"),
        (ValueError("unexpected"), "internal_error"),
    ],
)
def test_classify_import_error(error: Exception, expected: str) -> None:
    assert classify_import_error(error) == expected
